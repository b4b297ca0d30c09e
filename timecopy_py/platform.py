"""
Platform detection helpers for Timecopy.

Centralizes macOS, Linux and Windows differences so the rest of the codebase
can call simple functions instead of scattering ``sys.platform`` checks.
"""

import os
import stat
import sys
from pathlib import Path
from typing import Optional

HIDDEN_PREFIX = "."


def is_macos() -> bool:
    """Return True when running on macOS."""
    return sys.platform == "darwin"


def is_linux() -> bool:
    """Return True when running on Linux."""
    return sys.platform.startswith("linux")


def is_windows() -> bool:
    """Return True when running on Windows."""
    return sys.platform == "win32"


def is_hidden(name: str, st: Optional[os.stat_result] = None) -> bool:
    """Return True when a directory child should be treated as hidden.

    Names starting with ``.`` are hidden everywhere. On Windows the
    ``FILE_ATTRIBUTE_HIDDEN`` bit of *st* is honoured as well.
    """
    if name.startswith(HIDDEN_PREFIX):
        return True
    if is_windows() and st is not None:
        attrs = getattr(st, "st_file_attributes", 0)
        return bool(attrs & getattr(stat, "FILE_ATTRIBUTE_HIDDEN", 0x2))
    return False


def default_destination_root() -> Path:
    """Return the platform-appropriate default destination root."""
    if is_macos():
        return Path.home() / "Backups" / "Timecopy"
    if is_windows():
        return Path.home() / "Documents" / "Timecopy Backups"
    return Path.home() / ".local" / "share" / "timecopy" / "backups"
