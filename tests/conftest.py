"""
Shared fixtures for WimForge tests
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from wimforge.core.models import ProcessResult


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep ~/.wimforge writes inside the test's temp directory"""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    return home


@pytest.fixture
def servicing():
    """A servicing session whose run() succeeds with empty output"""
    session = MagicMock()
    session.run.return_value = ProcessResult(0, "", "")
    return session


@pytest.fixture
def guard(servicing):
    """Session guard double yielding the servicing fixture"""
    mock_guard = MagicMock()
    mock_guard.session.return_value.__enter__.return_value = servicing
    mock_guard.session.return_value.__exit__.return_value = False
    return mock_guard


@pytest.fixture
def working_dir(tmp_path):
    """Extracted ISO tree with boot files and an empty sources folder"""
    root = tmp_path / "work"
    (root / "sources").mkdir(parents=True)
    (root / "boot").mkdir()
    (root / "boot" / "etfsboot.com").write_bytes(b"\x00" * 16)
    (root / "efi" / "microsoft" / "boot").mkdir(parents=True)
    (root / "efi" / "microsoft" / "boot" / "efisys.bin").write_bytes(b"\x00" * 16)
    return root
