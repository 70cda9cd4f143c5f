"""
WimForge ISO Builder
Validates source ISOs, masters the customized tree into a dual-boot
(BIOS + UEFI) ISO with oscdimg and removes the working directory
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional, Union

from wimforge.core.disk_space import DiskSpaceChecker
from wimforge.core.errors import FilesystemError, InsufficientSpaceError, ProcessFailureError, ValidationError
from wimforge.core.models import ProgressDetail
from wimforge.core.process_runner import ProcessExecutor
from wimforge.utils.file_utils import format_size, get_tree_size, remove_tree


PathLike = Union[str, Path]
SpaceEstimator = Callable[[Path], int]

MIN_ISO_SIZE_BYTES = 1024 * 1024
SPACE_MARGIN_BYTES = 2 * 1024 * 1024 * 1024

BIOS_BOOT_FILE = Path("boot") / "etfsboot.com"
UEFI_BOOT_FILE = Path("efi") / "microsoft" / "boot" / "efisys.bin"


def estimate_iso_space(working_dir: Path, margin_bytes: int = SPACE_MARGIN_BYTES) -> int:
    """Bytes needed to master working_dir: its content plus a fixed margin"""
    return get_tree_size(working_dir) + margin_bytes


def build_oscdimg_arguments(working_dir: Path, output_path: Path) -> str:
    etfsboot = working_dir / BIOS_BOOT_FILE
    efisys = working_dir / UEFI_BOOT_FILE
    return (
        f'-m -o -u2 -udfver102 '
        f'-bootdata:2#p0,e,b"{etfsboot}"#pEF,e,b"{efisys}" '
        f'"{working_dir}" "{output_path}"'
    )


class IsoBuilder:
    """Creates bootable ISOs from an extracted and customized tree"""

    def __init__(self, executor: Optional[ProcessExecutor] = None,
                 disk_checker: Optional[DiskSpaceChecker] = None,
                 space_estimator: Optional[SpaceEstimator] = None,
                 min_iso_size_bytes: int = MIN_ISO_SIZE_BYTES):
        self.logger = logging.getLogger(__name__)
        self.executor = executor or ProcessExecutor()
        self.disk_checker = disk_checker or DiskSpaceChecker()
        self.space_estimator = space_estimator or estimate_iso_space
        self.min_iso_size_bytes = min_iso_size_bytes

    def validate_iso(self, iso_path: PathLike) -> bool:
        """Check that iso_path is an existing .iso file of plausible size"""
        try:
            path = Path(iso_path)
            if not path.is_file():
                raise ValidationError("ISO file not found", str(path))
            if path.suffix.lower() != '.iso':
                raise ValidationError("File is not an ISO", str(path))
            size = path.stat().st_size
            if size < self.min_iso_size_bytes:
                raise ValidationError(f"ISO file is too small ({format_size(size)})", str(path))

            self.logger.info(f"ISO validated: {path} ({format_size(size)})")
            return True
        except ValidationError as e:
            self.logger.error(f"ISO validation failed: {e}")
            return False
        except Exception as e:
            self.logger.error(f"Error validating ISO {iso_path}: {e}")
            return False

    def create_iso(self, working_dir: PathLike, output_path: PathLike, tool_path: str,
                   cancel_event: Optional[threading.Event] = None,
                   progress: Optional[Callable[[ProgressDetail], None]] = None) -> bool:
        """Run oscdimg over working_dir; True when it exits 0 and the ISO exists"""
        working_dir = Path(working_dir)
        output_path = Path(output_path)
        try:
            if not tool_path:
                raise ValidationError("oscdimg.exe is not available")
            for boot_file in (BIOS_BOOT_FILE, UEFI_BOOT_FILE):
                if not (working_dir / boot_file).is_file():
                    raise ValidationError("Boot file not found", str(working_dir / boot_file))

            required = self.space_estimator(working_dir)
            self.disk_checker.require_space(output_path.parent, required, "ISO creation")

            output_path.parent.mkdir(parents=True, exist_ok=True)
            if output_path.exists():
                self.logger.info(f"Removing existing output file: {output_path}")
                output_path.unlink()

            self.logger.info(f"Creating ISO from {working_dir} -> {output_path}")
            result = self.executor.run_with_progress(
                tool_path, build_oscdimg_arguments(working_dir, output_path),
                progress=progress, cancel_event=cancel_event
            )
            if not result.succeeded:
                raise ProcessFailureError(tool_path, result.exit_code, result.output)
            if not output_path.is_file():
                raise FilesystemError("oscdimg reported success but no ISO was written", str(output_path))

            self.logger.info(f"ISO created: {output_path} ({format_size(output_path.stat().st_size)})")
            return True
        except InsufficientSpaceError as e:
            self.logger.error(f"Insufficient disk space for ISO creation: {e}")
            return False
        except Exception as e:
            self.logger.error(f"Error creating ISO {output_path}: {e}")
            return False

    def cleanup_working_directory(self, working_dir: PathLike) -> bool:
        """Remove working_dir; an already missing directory counts as success"""
        path = Path(working_dir)
        try:
            if not path.exists():
                self.logger.debug(f"Working directory already removed: {path}")
                return True

            self.logger.info(f"Cleaning up working directory: {path}")
            remove_tree(path)
            return not path.exists()
        except Exception as e:
            self.logger.error(f"Error cleaning up working directory {path}: {e}")
            return False
