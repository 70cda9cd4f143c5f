"""
WimForge File Utilities
Attribute handling and tree helpers for media extracted from read-only discs
"""

import ctypes
import logging
import os
import platform
import shutil
import stat
import sys
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

FILE_ATTRIBUTE_NORMAL = 0x80

PathLike = Union[str, Path]


def clear_file_attributes(path: PathLike) -> None:
    """Drop read-only, hidden and system attributes so the file can be deleted"""
    path = Path(path)
    os.chmod(path, stat.S_IREAD | stat.S_IWRITE)
    if platform.system() == "Windows":
        if not ctypes.windll.kernel32.SetFileAttributesW(str(path), FILE_ATTRIBUTE_NORMAL):
            raise ctypes.WinError()


def _remove_readonly(func, path, _exc):
    """rmtree error hook: clear attributes and retry once"""
    clear_file_attributes(path)
    func(path)


def remove_tree(path: PathLike) -> None:
    """Recursively delete a directory, clearing read-only attributes on the way"""
    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_remove_readonly)
    else:
        shutil.rmtree(path, onerror=_remove_readonly)


def get_tree_size(path: PathLike) -> int:
    """Total size in bytes of every file below path"""
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.path.getsize(os.path.join(root, name))
            except OSError as e:
                logger.debug(f"Skipping unreadable file {name}: {e}")
    return total


def format_size(size_bytes: int) -> str:
    if size_bytes >= 1024 ** 3:
        return f"{size_bytes / (1024 ** 3):.2f} GB"
    if size_bytes >= 1024 ** 2:
        return f"{size_bytes / (1024 ** 2):.1f} MB"
    return f"{size_bytes:,} bytes"
