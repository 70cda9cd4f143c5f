"""
WimForge WinGet Integration
Locates the Windows package manager, bootstraps it when missing and installs
packages through it
"""

import os
import shutil
import logging
import tempfile
from pathlib import Path
from typing import Callable, List, Optional

import requests

from wimforge.core.models import ProgressDetail
from wimforge.core.process_runner import ProcessExecutor


APP_INSTALLER_URL = (
    "https://github.com/microsoft/winget-cli/releases/latest/download/"
    "Microsoft.DesktopAppInstaller_8wekyb3d8bbwe.msixbundle"
)


class WinGetInstaller:
    """Thin wrapper over winget.exe"""

    def __init__(self, executor: Optional[ProcessExecutor] = None,
                 session: Optional[requests.Session] = None,
                 bundle_url: str = APP_INSTALLER_URL,
                 download_timeout: int = 300):
        self.logger = logging.getLogger(__name__)
        self.executor = executor or ProcessExecutor()
        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': 'WimForge/1.0'})
        self.bundle_url = bundle_url
        self.download_timeout = download_timeout

    def _candidate_paths(self) -> List[Path]:
        candidates = []
        on_path = shutil.which("winget")
        if on_path:
            candidates.append(Path(on_path))
        local_app_data = os.environ.get("LOCALAPPDATA")
        if local_app_data:
            # MSIX install location, not always on PATH
            candidates.append(Path(local_app_data) / "Microsoft" / "WindowsApps" / "winget.exe")
        return candidates

    def find_winget(self) -> Optional[str]:
        for candidate in self._candidate_paths():
            if candidate.is_file():
                return str(candidate)
        return None

    def is_installed(self) -> bool:
        path = self.find_winget()
        if path:
            self.logger.debug(f"winget found at: {path}")
            return True
        self.logger.info("winget is not installed")
        return False

    def bootstrap(self) -> bool:
        """Download the App Installer bundle and register it with PowerShell"""
        bundle_path = Path(tempfile.gettempdir()) / "Microsoft.DesktopAppInstaller.msixbundle"
        try:
            self.logger.info(f"Downloading App Installer from {self.bundle_url}")
            with self.session.get(self.bundle_url, stream=True, timeout=self.download_timeout) as response:
                response.raise_for_status()
                with open(bundle_path, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=1024 * 1024):
                        if chunk:
                            f.write(chunk)

            result = self.executor.run("powershell.exe", [
                "-NoProfile",
                "-ExecutionPolicy", "Bypass",
                "-Command", f"Add-AppxPackage -Path '{bundle_path}'",
            ])
            if not result.succeeded:
                self.logger.error(f"Add-AppxPackage failed with exit code {result.exit_code}: {result.stderr}")
                return False

            if not self.is_installed():
                self.logger.error("App Installer registered but winget.exe is still missing")
                return False

            self.logger.info("winget installed successfully")
            return True
        except Exception as e:
            self.logger.error(f"Failed to install winget: {e}")
            return False
        finally:
            try:
                if bundle_path.exists():
                    bundle_path.unlink()
            except OSError as e:
                self.logger.debug(f"Could not remove {bundle_path}: {e}")

    def install_package(self, package_id: str, scope: str = "machine",
                        progress: Optional[Callable[[ProgressDetail], None]] = None) -> bool:
        """Run `winget install` for one exact package id"""
        try:
            winget = self.find_winget() or "winget"
            arguments = [
                "install", package_id,
                "--exact",
                "--silent",
                "--scope", scope,
                "--accept-package-agreements",
                "--accept-source-agreements",
            ]
            self.logger.info(f"Installing {package_id} via winget")
            result = self.executor.run_with_progress(winget, arguments, progress=progress)
            if not result.succeeded:
                self.logger.error(f"winget install {package_id} failed with exit code: {result.exit_code}")
                return False

            self.logger.info(f"{package_id} installed successfully")
            return True
        except Exception as e:
            self.logger.error(f"Error installing {package_id} via winget: {e}")
            return False
