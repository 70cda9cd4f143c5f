"""
WimForge Image Format Detector Tests
"""

import logging
import sys
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from wimforge.core.errors import InsufficientSpaceError
from wimforge.core.image_format import ImageFormatDetector, parse_image_listing
from wimforge.core.models import ImageFormat, ProcessResult


LISTING = """Deployment Image Servicing and Management tool
Version: 10.0.22621.1

Details for image : D:\\sources\\install.wim

Index : 1
Name : Windows 11 Home
Description : Windows 11 Home
Size : 18,000,000,000 bytes

Index : 2
Name : Windows 11 Pro
Description : Windows 11 Pro
Size : 18,500,000,000 bytes

The operation completed successfully.
"""


@pytest.fixture
def detector(guard):
    disk_checker = MagicMock()
    return ImageFormatDetector(guard=guard, executor=MagicMock(), disk_checker=disk_checker)


class TestParseImageListing:
    """Parsing of dism /Get-ImageInfo output"""

    def test_indexes_and_names(self):
        count, names = parse_image_listing(LISTING)
        assert count == 2
        assert names == ("Windows 11 Home", "Windows 11 Pro")

    def test_no_space_before_colon(self):
        count, names = parse_image_listing("Index: 1\nName: Windows 10 Pro\n")
        assert count == 1
        assert names == ("Windows 10 Pro",)

    def test_empty_output(self):
        assert parse_image_listing("") == (0, ())

    def test_empty_name_keeps_alignment(self):
        count, names = parse_image_listing("Index : 1\nName : \nIndex : 2\nName : Pro\n")
        assert count == 2
        assert names == ("Index 1", "Pro")

    def test_non_numeric_index_ignored(self):
        count, names = parse_image_listing("Index : all\nName : Bogus\nIndex : 3\nName : Education\n")
        assert count == 1
        assert names == ("Education",)


class TestDetectImageFormat:
    """Single-format detection"""

    def test_missing_sources(self, detector, tmp_path):
        assert detector.detect_image_format(tmp_path) is None

    def test_no_image(self, detector, working_dir):
        assert detector.detect_image_format(working_dir) is None

    def test_wim_preferred(self, detector, working_dir, servicing):
        (working_dir / "sources" / "install.wim").write_bytes(b"w" * 100)
        (working_dir / "sources" / "install.esd").write_bytes(b"e" * 50)
        servicing.run.return_value = ProcessResult(0, LISTING)

        info = detector.detect_image_format(working_dir)

        assert info.format == ImageFormat.WIM
        assert info.size_bytes == 100
        assert info.image_count == 2
        assert info.edition_names == ("Windows 11 Home", "Windows 11 Pro")
        args = servicing.run.call_args[0][0]
        assert "/English" in args
        assert "/Get-ImageInfo" in args

    def test_esd_only(self, detector, working_dir, servicing):
        (working_dir / "sources" / "install.esd").write_bytes(b"e" * 50)
        servicing.run.return_value = ProcessResult(0, LISTING)

        info = detector.detect_image_format(working_dir)

        assert info.format == ImageFormat.ESD
        assert info.file_path.endswith("install.esd")

    def test_failed_listing_yields_zero_count(self, detector, working_dir, servicing):
        (working_dir / "sources" / "install.wim").write_bytes(b"w" * 10)
        servicing.run.return_value = ProcessResult(87, "", "Error: 87")

        info = detector.detect_image_format(working_dir)

        assert info.format == ImageFormat.WIM
        assert info.image_count == 0
        assert info.edition_names == ()
        assert info.size_bytes == 10


class TestDetectAllImageFormats:
    """Dual-format detection"""

    def test_absent_without_containers(self, detector, working_dir):
        result = detector.detect_all_image_formats(working_dir)
        assert result.neither_exists
        assert not result.both_exist

    def test_missing_sources(self, detector, tmp_path):
        assert detector.detect_all_image_formats(tmp_path).neither_exists

    def test_both_exist_warns_once(self, detector, working_dir, servicing, caplog):
        (working_dir / "sources" / "install.wim").write_bytes(b"w")
        (working_dir / "sources" / "install.esd").write_bytes(b"e")
        servicing.run.return_value = ProcessResult(0, LISTING)

        with caplog.at_level(logging.WARNING, logger="wimforge.core.image_format"):
            result = detector.detect_all_image_formats(working_dir)

        assert result.both_exist
        assert not result.neither_exists
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert servicing.run.call_count == 2

    def test_single(self, detector, working_dir, servicing):
        (working_dir / "sources" / "install.esd").write_bytes(b"e")
        servicing.run.return_value = ProcessResult(0, LISTING)

        result = detector.detect_all_image_formats(working_dir)

        assert result.exactly_one_exists
        assert result.single.format == ImageFormat.ESD

    def test_wim_error_does_not_skip_esd(self, detector, working_dir, servicing, monkeypatch):
        (working_dir / "sources" / "install.wim").write_bytes(b"w")
        (working_dir / "sources" / "install.esd").write_bytes(b"e")
        servicing.run.return_value = ProcessResult(0, LISTING)
        original = detector._inspect

        def failing_wim(path, fmt):
            if fmt == ImageFormat.WIM:
                raise PermissionError("access denied")
            return original(path, fmt)

        monkeypatch.setattr(detector, "_inspect", failing_wim)
        result = detector.detect_all_image_formats(working_dir)

        assert result.wim_info is None
        assert result.esd_info.format == ImageFormat.ESD


class TestDeleteImageFile:
    """Deleting a container"""

    def test_missing_file(self, detector, working_dir):
        assert not detector.delete_image_file(working_dir, ImageFormat.WIM)

    def test_deletes_read_only_file(self, detector, working_dir):
        image = working_dir / "sources" / "install.esd"
        image.write_bytes(b"e")
        image.chmod(0o444)

        assert detector.delete_image_file(working_dir, ImageFormat.ESD)
        assert not image.exists()


class TestConvertImage:
    """WIM <-> ESD export"""

    def test_already_in_target_format(self, detector, working_dir, servicing):
        (working_dir / "sources" / "install.wim").write_bytes(b"w")
        servicing.run.return_value = ProcessResult(0, LISTING)

        assert detector.convert_image(working_dir, ImageFormat.WIM)
        assert servicing.run.call_count == 1

    def test_exports_every_index(self, detector, working_dir, servicing):
        source = working_dir / "sources" / "install.wim"
        source.write_bytes(b"w" * 10)
        target = working_dir / "sources" / "install.esd"

        def fake_run(args, progress=None):
            if "/Export-Image" in args:
                target.write_bytes(b"e")
            return ProcessResult(0, LISTING)

        servicing.run.side_effect = fake_run

        assert detector.convert_image(working_dir, ImageFormat.ESD)

        exports = [c[0][0] for c in servicing.run.call_args_list if "/Export-Image" in c[0][0]]
        assert len(exports) == 2
        assert "/SourceIndex:1" in exports[0]
        assert "/SourceIndex:2" in exports[1]
        assert "/Compress:recovery" in exports[0]
        assert not source.exists()
        assert target.exists()

    def test_failed_export_removes_partial_target(self, detector, working_dir, servicing):
        source = working_dir / "sources" / "install.esd"
        source.write_bytes(b"e")
        target = working_dir / "sources" / "install.wim"

        def fake_run(args, progress=None):
            if "/Export-Image" in args:
                target.write_bytes(b"partial")
                return ProcessResult(2, "", "failure")
            return ProcessResult(0, LISTING)

        servicing.run.side_effect = fake_run

        assert not detector.convert_image(working_dir, ImageFormat.WIM)
        assert not target.exists()
        assert source.exists()

    def test_insufficient_space(self, detector, working_dir, servicing):
        (working_dir / "sources" / "install.wim").write_bytes(b"w" * 10)
        servicing.run.return_value = ProcessResult(0, LISTING)
        detector.disk_checker.require_space.side_effect = InsufficientSpaceError(
            "Image conversion", str(working_dir), 20, 1
        )

        assert not detector.convert_image(working_dir, ImageFormat.ESD)
        assert detector.disk_checker.require_space.call_args[0][1] == 20

    def test_cancelled_before_export(self, detector, working_dir, servicing):
        (working_dir / "sources" / "install.wim").write_bytes(b"w")
        servicing.run.return_value = ProcessResult(0, LISTING)
        cancel = threading.Event()
        cancel.set()

        assert not detector.convert_image(working_dir, ImageFormat.ESD, cancel_event=cancel)
        assert (working_dir / "sources" / "install.wim").exists()
