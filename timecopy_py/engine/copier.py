"""
Copy engine implementation for Timecopy.

This module copies one file's bytes from a source path to a destination path
in bounded-size chunks, so memory use does not depend on file size.
"""

import logging
import os
from pathlib import Path

from timecopy_py.engine import CopyFailure, PathLike

logger = logging.getLogger("timecopy.engine.copier")

DEFAULT_CHUNK_SIZE = 1024 * 1024


class CopyEngine:
    """Byte-exact, chunked file copier."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        """
        Initialize the copy engine.

        Args:
            chunk_size: Number of bytes read and written per iteration
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be a positive number of bytes")
        self.chunk_size = chunk_size

    def copy(self, source_path: PathLike, dest_path: PathLike) -> bool:
        """
        Copy a file.

        Missing parent directories of ``dest_path`` are created first. On
        error the destination is left as-is, possibly holding a partial file.

        Args:
            source_path: File to read
            dest_path: File to (over)write

        Returns:
            True if successful, False otherwise
        """
        try:
            self.copy_or_raise(source_path, dest_path)
            return True
        except CopyFailure as e:
            logger.error(f"Copy failed: {e}")
            return False

    def copy_or_raise(self, source_path: PathLike, dest_path: PathLike) -> int:
        """
        Copy a file, raising ``CopyFailure`` on any read or write error.

        Returns:
            Number of bytes written
        """
        source = Path(source_path)
        dest = Path(dest_path)
        logger.debug(f"Copying {source} -> {dest}")

        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CopyFailure(source, dest, f"cannot create parent: {e}") from e

        written = 0
        try:
            with open(source, "rb") as src, open(dest, "wb") as dst:
                while True:
                    chunk = src.read(self.chunk_size)
                    if not chunk:
                        break
                    dst.write(chunk)
                    written += len(chunk)
        except OSError as e:
            raise CopyFailure(source, dest, e.strerror or str(e)) from e

        logger.debug(f"Copied {written} bytes to {dest}")
        return written

    def link_or_copy(self, existing: PathLike, dest_path: PathLike) -> bool:
        """
        Hard-link ``existing`` at ``dest_path``, falling back to a byte copy.

        Used to carry an unchanged file forward from a previous version.

        Returns:
            True if ``dest_path`` now holds the content, False otherwise
        """
        existing = Path(existing)
        dest = Path(dest_path)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            if dest.exists():
                dest.unlink()
            os.link(existing, dest)
            return True
        except OSError as e:
            logger.debug(f"Hard link {existing} -> {dest} failed ({e}); copying")
        return self.copy(existing, dest)
