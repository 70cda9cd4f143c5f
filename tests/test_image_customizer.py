"""
WimForge Image Customizer Tests
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from wimforge.core.image_customizer import ImageCustomizer
from wimforge.core.models import ProcessResult


@pytest.fixture
def customizer(guard, tmp_path):
    return ImageCustomizer(guard=guard, session=MagicMock(), temp_dir=tmp_path / "temp")


def make_driver_source(root: Path) -> Path:
    (root / "net").mkdir(parents=True)
    (root / "net" / "net.inf").write_text("[Version]\nClass=Net\n", encoding="utf-8")
    (root / "storage").mkdir()
    (root / "storage" / "storage.inf").write_text("[Version]\nClass=SCSIAdapter\n", encoding="utf-8")
    return root


class TestInjectAnswerFile:
    """Copying autounattend.xml into the tree"""

    def test_copies_verbatim(self, customizer, working_dir, tmp_path):
        xml = tmp_path / "answers.xml"
        content = '<?xml version="1.0" encoding="utf-8"?>\r\n<unattend xmlns="urn:schemas-microsoft-com:unattend"/>\r\n'
        xml.write_bytes(content.encode("utf-8"))

        assert customizer.inject_answer_file(xml, working_dir)
        assert (working_dir / "autounattend.xml").read_bytes() == content.encode("utf-8")
        assert not list(working_dir.glob(".autounattend_*"))

    def test_copies_utf16_with_bom(self, customizer, working_dir, tmp_path):
        xml = tmp_path / "answers.xml"
        content = '<?xml version="1.0" encoding="utf-16"?>\r\n<unattend/>\r\n'.encode("utf-16")
        xml.write_bytes(content)

        assert customizer.inject_answer_file(xml, working_dir)
        assert (working_dir / "autounattend.xml").read_bytes() == content

    def test_missing_source_creates_nothing(self, customizer, working_dir, tmp_path, caplog):
        assert not customizer.inject_answer_file(tmp_path / "missing.xml", working_dir)
        assert not (working_dir / "autounattend.xml").exists()
        assert "Answer file not found" in caplog.text

    def test_missing_working_dir(self, customizer, tmp_path, caplog):
        xml = tmp_path / "answers.xml"
        xml.write_text("<unattend/>")
        missing = tmp_path / "nowhere"

        assert not customizer.inject_answer_file(xml, missing)
        assert not missing.exists()
        assert "Working directory not found" in caplog.text

    def test_replaces_existing(self, customizer, working_dir, tmp_path):
        (working_dir / "autounattend.xml").write_text("old")
        xml = tmp_path / "answers.xml"
        xml.write_text("new")

        assert customizer.inject_answer_file(xml, working_dir)
        assert (working_dir / "autounattend.xml").read_text() == "new"


class TestInjectDrivers:
    """Driver staging"""

    def test_missing_source(self, customizer, working_dir, tmp_path):
        assert not customizer.inject_drivers(working_dir, tmp_path / "missing")

    def test_routes_drivers_and_writes_script(self, customizer, working_dir, tmp_path):
        source = make_driver_source(tmp_path / "drivers")

        assert customizer.inject_drivers(working_dir, source)

        assert (working_dir / "sources" / "$WinpeDriver$" / "storage" / "storage.inf").exists()
        assert (working_dir / "sources" / "$OEM$" / "$$" / "Drivers" / "net" / "net.inf").exists()
        script = working_dir / "sources" / "$OEM$" / "$$" / "Setup" / "Scripts" / "SetupComplete.cmd"
        text = script.read_bytes().decode("ascii")
        assert "pnputil /add-driver C:\\Windows\\Drivers\\*.inf /subdirs /install" in text
        assert "\r\n" in text

    def test_no_drivers_found(self, customizer, working_dir, tmp_path):
        empty = tmp_path / "drivers"
        empty.mkdir()

        assert not customizer.inject_drivers(working_dir, empty)
        assert not (working_dir / "sources" / "$OEM$" / "$$" / "Setup").exists()

    def test_exports_system_drivers(self, customizer, working_dir, servicing, tmp_path):
        def fake_export(args, progress=None):
            destination = Path(next(a for a in args if a.startswith("/Destination:")).split(":", 1)[1])
            make_driver_source(destination)
            return ProcessResult(0, "The operation completed successfully.")

        servicing.run.side_effect = fake_export

        assert customizer.inject_drivers(working_dir, None)

        args = servicing.run.call_args[0][0]
        assert "/Online" in args and "/Export-Driver" in args
        assert (working_dir / "sources" / "$WinpeDriver$" / "storage").exists()
        assert not list((tmp_path / "temp").glob("WimForgeDrivers_*"))

    def test_export_failure(self, customizer, working_dir, servicing, tmp_path):
        servicing.run.return_value = ProcessResult(5, "", "Access is denied.")

        assert not customizer.inject_drivers(working_dir, None)
        assert not list((tmp_path / "temp").glob("WimForgeDrivers_*"))


class TestDownloadAnswerFile:
    """Fetching a published answer file"""

    def test_download(self, customizer, tmp_path):
        response = MagicMock()
        response.text = "<unattend/>"
        customizer.session.get.return_value = response
        destination = tmp_path / "downloads" / "autounattend.xml"

        saved = customizer.download_answer_file(destination, "https://example.invalid/autounattend.xml")

        assert saved == str(destination)
        assert destination.read_text(encoding="utf-8") == "<unattend/>"
        response.raise_for_status.assert_called_once()

    def test_http_error(self, customizer, tmp_path):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("404 Client Error")
        customizer.session.get.return_value = response
        destination = tmp_path / "autounattend.xml"

        assert customizer.download_answer_file(destination) is None
        assert not destination.exists()
