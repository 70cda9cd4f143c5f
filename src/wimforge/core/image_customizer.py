"""
WimForge Image Customizer
Adds an unattended-setup answer file and driver packages to an extracted
installation tree
"""

import os
import uuid
import shutil
import logging
import tempfile
from pathlib import Path
from typing import Callable, Optional, Union

import requests

from wimforge.core.driver_categorizer import (
    DEFAULT_DRIVER_POLICY, DriverClassificationPolicy, categorize_and_copy_drivers
)
from wimforge.core.errors import ProcessFailureError
from wimforge.core.models import ProgressDetail
from wimforge.core.session_guard import ServicingSessionGuard
from wimforge.utils.file_utils import remove_tree


PathLike = Union[str, Path]

ANSWER_FILE_NAME = "autounattend.xml"
DEFAULT_ANSWER_FILE_URL = "https://raw.githubusercontent.com/memstechtips/UnattendedWinstall/main/autounattend.xml"

STORAGE_DRIVER_DIR = Path("sources") / "$WinpeDriver$"
GENERAL_DRIVER_DIR = Path("sources") / "$OEM$" / "$$" / "Drivers"
SETUP_SCRIPTS_DIR = Path("sources") / "$OEM$" / "$$" / "Setup" / "Scripts"

SETUP_COMPLETE_SCRIPT = """@echo off
REM WimForge automatic driver installation
REM Executed by Windows Setup after the first boot

set LOGFILE=C:\\Windows\\Logs\\DriverInstall.log

echo ================================================== > %LOGFILE%
echo WimForge Driver Installation Log >> %LOGFILE%
echo Date: %DATE% %TIME% >> %LOGFILE%
echo ================================================== >> %LOGFILE%
echo. >> %LOGFILE%

echo Installing drivers from C:\\Windows\\Drivers... >> %LOGFILE%
pnputil /add-driver C:\\Windows\\Drivers\\*.inf /subdirs /install >> %LOGFILE% 2>&1

echo. >> %LOGFILE%
echo Driver installation completed >> %LOGFILE%
echo Exit Code: %ERRORLEVEL% >> %LOGFILE%

exit
"""


class ImageCustomizer:
    """Stages customization content inside a working directory"""

    def __init__(self, guard: Optional[ServicingSessionGuard] = None,
                 policy: DriverClassificationPolicy = DEFAULT_DRIVER_POLICY,
                 session: Optional[requests.Session] = None,
                 temp_dir: Optional[PathLike] = None):
        self.logger = logging.getLogger(__name__)
        self.guard = guard or ServicingSessionGuard()
        self.policy = policy
        self.session = session or requests.Session()
        self.temp_dir = Path(temp_dir) if temp_dir else Path(tempfile.gettempdir())

    def inject_answer_file(self, source_xml: PathLike, working_dir: PathLike) -> bool:
        """Copy an answer file to <working_dir>/autounattend.xml"""
        source_xml = Path(source_xml)
        working_dir = Path(working_dir)

        if not source_xml.is_file():
            self.logger.error(f"Answer file not found: {source_xml}")
            return False
        if not working_dir.is_dir():
            self.logger.error(f"Working directory not found: {working_dir}")
            return False

        destination = working_dir / ANSWER_FILE_NAME
        temp_path = None
        try:
            fd, temp_path = tempfile.mkstemp(prefix=".autounattend_", suffix=".tmp", dir=working_dir)
            os.close(fd)
            shutil.copyfile(source_xml, temp_path)
            os.replace(temp_path, destination)
            temp_path = None

            self.logger.info(f"Added {ANSWER_FILE_NAME} to image: {destination}")
            return True
        except Exception as e:
            self.logger.error(f"Error adding answer file {source_xml} to {working_dir}: {e}")
            return False
        finally:
            if temp_path and os.path.exists(temp_path):
                os.remove(temp_path)

    def export_system_drivers(self, destination: PathLike,
                              progress: Optional[Callable[[ProgressDetail], None]] = None) -> bool:
        """Export the drivers of the running system with DISM"""
        destination = Path(destination)
        try:
            destination.mkdir(parents=True, exist_ok=True)
            self.logger.info(f"Exporting drivers from current system to {destination}")
            with self.guard.session() as servicing:
                result = servicing.run(["/Online", "/Export-Driver", f"/Destination:{destination}"], progress)
            if not result.succeeded:
                raise ProcessFailureError("dism /Export-Driver", result.exit_code, result.output)
            return True
        except Exception as e:
            self.logger.error(f"Failed to export system drivers: {e}")
            return False

    def inject_drivers(self, working_dir: PathLike, driver_source: Optional[PathLike] = None,
                       progress: Optional[Callable[[ProgressDetail], None]] = None) -> bool:
        """
        Categorize and copy drivers into the installation tree.

        Storage drivers go to sources/$WinpeDriver$ so Setup loads them before
        disk selection; everything else goes to sources/$OEM$/$$/Drivers and
        is installed by SetupComplete.cmd. With no driver_source the running
        system's drivers are exported first.
        """
        working_dir = Path(working_dir)
        exported_dir: Optional[Path] = None
        try:
            if driver_source is None:
                exported_dir = self.temp_dir / f"WimForgeDrivers_{uuid.uuid4().hex}"
                if not self.export_system_drivers(exported_dir, progress):
                    return False
                source_dir = exported_dir
            else:
                source_dir = Path(driver_source)
                if not source_dir.is_dir():
                    self.logger.error(f"Driver source path does not exist: {source_dir}")
                    return False

            storage_root = working_dir / STORAGE_DRIVER_DIR
            general_root = working_dir / GENERAL_DRIVER_DIR
            self.logger.info(f"Searching for drivers in: {source_dir}")

            copied = categorize_and_copy_drivers(
                source_dir, storage_root, general_root,
                exclude_dir=working_dir, policy=self.policy
            )
            if copied == 0:
                self.logger.warning(f"No drivers were found or copied from: {source_dir}")
                return False

            self._write_setup_complete(working_dir)
            self.logger.info(f"Successfully added {copied} driver(s) - WinPE: {storage_root}, OEM: {general_root}")
            return True
        except Exception as e:
            self.logger.error(f"Error adding drivers to {working_dir}: {e}")
            return False
        finally:
            if exported_dir is not None and exported_dir.exists():
                try:
                    remove_tree(exported_dir)
                except Exception as e:
                    self.logger.warning(f"Could not delete temp directory {exported_dir}: {e}")

    def _write_setup_complete(self, working_dir: Path):
        try:
            scripts_dir = working_dir / SETUP_SCRIPTS_DIR
            scripts_dir.mkdir(parents=True, exist_ok=True)
            script_path = scripts_dir / "SetupComplete.cmd"
            with open(script_path, 'w', encoding='ascii', newline='\r\n') as f:
                f.write(SETUP_COMPLETE_SCRIPT)
            self.logger.info(f"Created SetupComplete.cmd at: {script_path}")
        except Exception as e:
            self.logger.warning(f"Could not create SetupComplete.cmd: {e}")

    def download_answer_file(self, destination: PathLike, url: str = DEFAULT_ANSWER_FILE_URL,
                             timeout: int = 60) -> Optional[str]:
        """Download a published answer file; returns the saved path or None"""
        destination = Path(destination)
        try:
            self.logger.info(f"Downloading answer file from {url}")
            response = self.session.get(url, timeout=timeout)
            response.raise_for_status()

            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_text(response.text, encoding='utf-8')
            self.logger.info(f"Downloaded answer file to: {destination}")
            return str(destination)
        except Exception as e:
            self.logger.error(f"Error downloading answer file from {url}: {e}")
            return None
