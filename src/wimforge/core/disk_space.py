"""
WimForge Disk Space Checker
Free-space checks run immediately before large image writes
"""

import logging
from pathlib import Path
from typing import Union

import psutil

from wimforge.core.errors import InsufficientSpaceError
from wimforge.utils.file_utils import format_size


class DiskSpaceChecker:
    """Checks free space on the volume that will receive a write"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def _nearest_existing(self, path: Path) -> Path:
        # Output folders usually do not exist yet; measure their volume instead
        current = path.resolve()
        while not current.exists() and current.parent != current:
            current = current.parent
        return current

    def get_free_space(self, path: Union[str, Path]) -> int:
        """Free bytes on the volume holding path"""
        probe = self._nearest_existing(Path(path))
        return psutil.disk_usage(str(probe)).free

    def require_space(self, path: Union[str, Path], required_bytes: int, operation: str):
        """Raise InsufficientSpaceError when the volume cannot hold required_bytes"""
        available = self.get_free_space(path)
        if available < required_bytes:
            raise InsufficientSpaceError(operation, str(path), required_bytes, available)

    def has_enough_space(self, path: Union[str, Path], required_bytes: int, operation: str) -> bool:
        """
        Check free space before an operation.

        A volume that cannot be queried is reported as having enough space so
        a flaky probe never blocks a build; the failure is logged.
        """
        try:
            self.require_space(path, required_bytes, operation)
            self.logger.debug(f"{operation}: {format_size(required_bytes)} required at {path}")
            return True
        except InsufficientSpaceError as e:
            self.logger.error(f"Insufficient disk space for {operation}: {e}")
            return False
        except Exception as e:
            self.logger.warning(f"Could not check disk space for {operation} at {path}: {e}")
            return True
