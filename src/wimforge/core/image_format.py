"""
WimForge Image Format Detector
Detects install.wim / install.esd in a working tree, reads edition metadata
through DISM, deletes and converts image containers
"""

import logging
import threading
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from wimforge.core.disk_space import DiskSpaceChecker
from wimforge.core.errors import (
    FilesystemError, InsufficientSpaceError, OperationCancelledError, ProcessFailureError
)
from wimforge.core.localization import StringTable
from wimforge.core.models import DualFormatDetectionResult, ImageFormat, ImageFormatInfo, ProgressDetail
from wimforge.core.process_runner import ProcessExecutor
from wimforge.core.session_guard import ServicingSessionGuard
from wimforge.utils.file_utils import clear_file_attributes, format_size


PathLike = Union[str, Path]


def parse_image_listing(output: str) -> Tuple[int, Tuple[str, ...]]:
    """Parse `dism /Get-ImageInfo` text into (index count, edition names)

    Each `Index : <n>` line opens an entry and the next `Name` line labels it.
    An entry with no usable name is labelled "Index <n>" so names stay aligned
    with their indexes.
    """
    entries: List[List] = []
    for line in output.splitlines():
        key, sep, value = line.strip().partition(':')
        if not sep:
            continue
        key = key.strip().lower()
        value = value.strip()
        if key == 'index':
            if value.isdigit():
                entries.append([int(value), None])
        elif key == 'name' and entries and entries[-1][1] is None:
            entries[-1][1] = value

    names = tuple(name or f"Index {index}" for index, name in entries)
    return len(entries), names


class ImageFormatDetector:
    """Inspects and manipulates the install image under <working_dir>/sources"""

    def __init__(self, guard: Optional[ServicingSessionGuard] = None,
                 executor: Optional[ProcessExecutor] = None,
                 disk_checker: Optional[DiskSpaceChecker] = None,
                 strings: Optional[StringTable] = None,
                 poll_interval: float = 0.5):
        self.logger = logging.getLogger(__name__)
        self.executor = executor or ProcessExecutor()
        self.guard = guard or ServicingSessionGuard(self.executor)
        self.disk_checker = disk_checker or DiskSpaceChecker()
        self.strings = strings or StringTable()
        self.poll_interval = poll_interval

    def _image_path(self, working_dir: PathLike, fmt: ImageFormat) -> Path:
        return Path(working_dir) / "sources" / fmt.file_name

    def _read_image_info(self, image_path: Path, fmt: ImageFormat) -> ImageFormatInfo:
        size_bytes = image_path.stat().st_size
        image_count = 0
        edition_names: Tuple[str, ...] = ()

        try:
            with self.guard.session() as servicing:
                result = servicing.run(["/English", "/Get-ImageInfo", f"/ImageFile:{image_path}"])
            if not result.succeeded:
                raise ProcessFailureError("dism /Get-ImageInfo", result.exit_code, result.output)

            image_count, edition_names = parse_image_listing(result.stdout)
            if image_count == 0:
                self.logger.warning(f"No image indexes listed for {image_path}")
            else:
                self.logger.info(f"Image: {fmt.display_name}, {image_count} edition(s), {format_size(size_bytes)}")
        except Exception as e:
            self.logger.warning(f"Could not get detailed image info for {image_path}: {e}")
            image_count, edition_names = 0, ()

        return ImageFormatInfo(
            format=fmt,
            image_count=image_count,
            edition_names=edition_names,
            size_bytes=size_bytes,
            file_path=str(image_path),
        )

    def _inspect(self, working_dir: PathLike, fmt: ImageFormat) -> Optional[ImageFormatInfo]:
        image_path = self._image_path(working_dir, fmt)
        if not image_path.is_file():
            return None
        return self._read_image_info(image_path, fmt)

    def detect_image_format(self, working_dir: PathLike) -> Optional[ImageFormatInfo]:
        """Return metadata for install.wim, else install.esd, else None"""
        try:
            sources = Path(working_dir) / "sources"
            if not sources.is_dir():
                self.logger.warning(f"Sources directory not found: {sources}")
                return None

            for fmt in (ImageFormat.WIM, ImageFormat.ESD):
                info = self._inspect(working_dir, fmt)
                if info is not None:
                    return info

            self.logger.warning(f"No install.wim or install.esd found in {sources}")
            return None
        except Exception as e:
            self.logger.error(f"Error detecting image format in {working_dir}: {e}")
            return None

    def detect_all_image_formats(self, working_dir: PathLike) -> DualFormatDetectionResult:
        """Probe for both container formats independently"""
        try:
            sources = Path(working_dir) / "sources"
            if not sources.is_dir():
                self.logger.warning(f"Sources directory not found: {sources}")
                return DualFormatDetectionResult()
        except Exception as e:
            self.logger.error(f"Error detecting image formats in {working_dir}: {e}")
            return DualFormatDetectionResult()

        wim_info = self._inspect_safely(working_dir, ImageFormat.WIM)
        esd_info = self._inspect_safely(working_dir, ImageFormat.ESD)

        result = DualFormatDetectionResult(wim_info=wim_info, esd_info=esd_info)
        if result.both_exist:
            self.logger.warning("Both install.wim and install.esd found - only one should exist")
        elif result.neither_exists:
            self.logger.info(f"No install image found in {working_dir}")
        else:
            self.logger.info(f"Found {result.single.format.display_name} format")
        return result

    def _inspect_safely(self, working_dir: PathLike, fmt: ImageFormat) -> Optional[ImageFormatInfo]:
        try:
            return self._inspect(working_dir, fmt)
        except Exception as e:
            self.logger.error(f"Error detecting {fmt.file_name} in {working_dir}: {e}")
            return None

    def delete_image_file(self, working_dir: PathLike, fmt: ImageFormat) -> bool:
        """Delete sources/install.<fmt>; True only if the file is gone afterwards"""
        image_path = self._image_path(working_dir, fmt)
        try:
            if not image_path.exists():
                self.logger.warning(f"File not found for deletion: {image_path}")
                return False

            self.logger.info(f"Deleting {fmt.file_name} ({format_size(image_path.stat().st_size)})")
            clear_file_attributes(image_path)
            image_path.unlink()
        except Exception as e:
            self.logger.error(f"Error deleting image file {image_path}: {e}")

        deleted = not image_path.exists()
        if deleted:
            self.logger.info(f"Successfully deleted {fmt.file_name}")
        return deleted

    def convert_image(self, working_dir: PathLike, target_format: ImageFormat,
                      cancel_event: Optional[threading.Event] = None,
                      progress: Optional[Callable[[ProgressDetail], None]] = None) -> bool:
        """
        Re-export every edition of the current image into target_format.

        The source container is removed after a successful export and a
        partial target is removed after a failed or cancelled one.
        """
        target_path: Optional[Path] = None
        finished = threading.Event()
        try:
            current = self.detect_image_format(working_dir)
            if current is None:
                self.logger.error(f"Could not detect current image format in {working_dir}")
                return False

            if current.format == target_format:
                self.logger.info(f"Image is already in {target_format.display_name} format")
                return True

            source_path = Path(current.file_path)
            target_path = self._image_path(working_dir, target_format)

            self.disk_checker.require_space(working_dir, current.size_bytes * 2, "Image conversion")

            compression = "recovery" if target_format == ImageFormat.ESD else "max"
            image_count = current.image_count if current.image_count > 0 else 1
            self.logger.info(
                f"Converting {image_count} image(s): {current.format.display_name} -> {target_format.display_name}"
            )

            if cancel_event is not None:
                watcher = threading.Thread(target=self._watch_cancel, args=(cancel_event, finished), daemon=True)
                watcher.start()

            with self.guard.session(cancel_event) as servicing:
                for index in range(1, image_count + 1):
                    if cancel_event is not None and cancel_event.is_set():
                        raise OperationCancelledError("Image conversion was cancelled")

                    edition = (current.edition_names[index - 1]
                               if len(current.edition_names) >= index else f"Index {index}")
                    if progress is not None:
                        progress(ProgressDetail(
                            status_text=self.strings.get("Progress_ConvertingEdition", index, image_count),
                            terminal_output=edition,
                        ))

                    result = servicing.run([
                        "/Export-Image",
                        f"/SourceImageFile:{source_path}",
                        f"/SourceIndex:{index}",
                        f"/DestinationImageFile:{target_path}",
                        f"/Compress:{compression}",
                        "/CheckIntegrity",
                    ], progress)

                    if cancel_event is not None and cancel_event.is_set():
                        raise OperationCancelledError("Image conversion was cancelled")
                    if not result.succeeded:
                        raise ProcessFailureError("dism /Export-Image", result.exit_code, result.output)

            if not target_path.exists():
                raise FilesystemError("Converted image was not created", str(target_path))

            if not self.delete_image_file(working_dir, current.format):
                self.logger.warning(f"Conversion succeeded but {source_path} could not be deleted")

            self.logger.info(f"Conversion successful: {current.format.display_name} -> "
                             f"{target_format.display_name}, new size {format_size(target_path.stat().st_size)}")
            return True
        except OperationCancelledError as e:
            self.logger.info(f"{e}")
            self._remove_partial(target_path)
            return False
        except InsufficientSpaceError as e:
            self.logger.error(f"Insufficient disk space for image conversion: {e}")
            return False
        except Exception as e:
            self.logger.error(f"Error converting image in {working_dir}: {e}")
            self._remove_partial(target_path)
            return False
        finally:
            finished.set()

    def _watch_cancel(self, cancel_event: threading.Event, finished: threading.Event):
        while not finished.is_set():
            if cancel_event.wait(self.poll_interval):
                if not finished.is_set():
                    self.logger.info("Cancellation requested - killing DISM processes")
                    self.executor.kill_processes_by_name("dism")
                return

    def _remove_partial(self, target_path: Optional[Path]):
        if target_path is None or not target_path.exists():
            return
        try:
            self.logger.info(f"Cleaning up incomplete target file: {target_path}")
            clear_file_attributes(target_path)
            target_path.unlink()
        except Exception as e:
            self.logger.warning(f"Could not delete incomplete target file {target_path}: {e}")
