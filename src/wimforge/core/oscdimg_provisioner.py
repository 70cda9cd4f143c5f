"""
WimForge oscdimg Provisioner
Finds the ISO mastering tool (oscdimg.exe) and installs it through winget
when it is missing
"""

import os
import logging
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from wimforge.core.models import ProgressDetail, ToolLocation
from wimforge.core.winget import WinGetInstaller


TOOL_NAME = "oscdimg.exe"
PACKAGE_ID = "Microsoft.OSCDIMG"

_ADK_ROOT = r"C:\Program Files (x86)\Windows Kits"
_ADK_SUFFIX = r"Assessment and Deployment Kit\Deployment Tools"


def default_search_paths() -> List[str]:
    """Well-known oscdimg.exe locations: ADK installs first, then winget links"""
    paths = [
        rf"{_ADK_ROOT}\10\{_ADK_SUFFIX}\amd64\Oscdimg\{TOOL_NAME}",
        rf"{_ADK_ROOT}\11\{_ADK_SUFFIX}\amd64\Oscdimg\{TOOL_NAME}",
        rf"{_ADK_ROOT}\10\{_ADK_SUFFIX}\x86\Oscdimg\{TOOL_NAME}",
        rf"C:\Program Files\WinGet\Links\{TOOL_NAME}",
    ]
    local_app_data = os.environ.get("LOCALAPPDATA")
    if local_app_data:
        paths.append(str(Path(local_app_data) / "Microsoft" / "WinGet" / "Links" / TOOL_NAME))
    return paths


def default_package_dirs() -> List[str]:
    """winget Packages roots scanned for Microsoft.OSCDIMG_* folders"""
    dirs = [r"C:\Program Files\WinGet\Packages"]
    local_app_data = os.environ.get("LOCALAPPDATA")
    if local_app_data:
        dirs.append(str(Path(local_app_data) / "Microsoft" / "WinGet" / "Packages"))
    return dirs


class OscdimgProvisioner:
    """
    Locates oscdimg.exe and provisions it on demand.

    The resolved location is cached as a ToolLocation until invalidate() or
    locate(force=True). ensure_tool_available() makes at most one install
    attempt per call and serializes callers on an internal lock.
    """

    def __init__(self, installer: Optional[WinGetInstaller] = None,
                 search_paths: Optional[Sequence[str]] = None,
                 package_dirs: Optional[Sequence[str]] = None,
                 package_id: str = PACKAGE_ID):
        self.logger = logging.getLogger(__name__)
        self.installer = installer or WinGetInstaller()
        self.search_paths = list(search_paths) if search_paths is not None else default_search_paths()
        self.package_dirs = list(package_dirs) if package_dirs is not None else default_package_dirs()
        self.package_id = package_id

        self._location: Optional[ToolLocation] = None
        self._cache_lock = threading.Lock()
        self._install_lock = threading.Lock()

    def _probe(self) -> ToolLocation:
        for candidate in self.search_paths:
            if Path(candidate).is_file():
                return ToolLocation.found(str(candidate))

        for packages_dir in self.package_dirs:
            root = Path(packages_dir)
            if not root.is_dir():
                continue
            try:
                matches = [d for d in root.glob(f"{self.package_id}_*") if d.is_dir()]
                matches.sort(key=lambda d: d.stat().st_mtime, reverse=True)
                for package_dir in matches:
                    candidate = package_dir / TOOL_NAME
                    if candidate.is_file():
                        return ToolLocation.found(str(candidate))
            except OSError as e:
                self.logger.debug(f"Error scanning winget packages directory {packages_dir}: {e}")

        return ToolLocation.missing()

    def locate(self, force: bool = False) -> ToolLocation:
        """Return the cached location, probing the filesystem when needed"""
        with self._cache_lock:
            if self._location is None or force:
                self._location = self._probe()
                if self._location.is_available:
                    self.logger.info(f"{TOOL_NAME} found at: {self._location.path}")
                else:
                    self.logger.info(f"{TOOL_NAME} not found in known locations")
            return self._location

    def invalidate(self):
        with self._cache_lock:
            self._location = None

    def get_tool_path(self) -> str:
        try:
            return self.locate().path
        except Exception as e:
            self.logger.error(f"Error locating {TOOL_NAME}: {e}")
            return ""

    def is_tool_available(self) -> bool:
        return self.get_tool_path() != ""

    def ensure_tool_available(self, progress: Optional[Callable[[ProgressDetail], None]] = None) -> bool:
        """Make oscdimg.exe available, installing it via winget if required"""
        if self.is_tool_available():
            self.logger.info(f"{TOOL_NAME} already available")
            return True

        with self._install_lock:
            try:
                # Another caller may have installed it while we waited
                if self.locate(force=True).is_available:
                    return True

                if not self.installer.is_installed():
                    self.logger.info("winget is required to install oscdimg; bootstrapping it")
                    if not self.installer.bootstrap():
                        self.logger.error("Failed to install winget")
                        return False

                if not self.installer.install_package(self.package_id, progress=progress):
                    self.logger.error(f"Installation of {self.package_id} failed")
                    return False

                location = self.locate(force=True)
                if not location.is_available:
                    self.logger.error(f"{self.package_id} installed but {TOOL_NAME} was not found")
                return location.is_available
            except Exception as e:
                self.logger.error(f"Error provisioning {TOOL_NAME}: {e}")
                return False
