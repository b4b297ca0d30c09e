"""
Per-version file manifest for Timecopy.

Each version records, for every relative path it holds, the source path and
the source's modification time and size at backup time. Incremental runs
compare the next traversal against the latest version's manifest.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePath
from typing import Dict, Optional

import orjson  # High-performance JSON parser

from timecopy_py.engine import METADATA_DIR_NAME, BackupVersion, FileEntry

logger = logging.getLogger("timecopy.manifest")

MANIFEST_FILE_NAME = "manifest.json"
MANIFEST_FORMAT = 1


@dataclass
class ManifestRecord:
    """What a version knows about one file."""

    source: str
    mtime: float
    size: int

    @classmethod
    def from_entry(cls, entry: FileEntry) -> "ManifestRecord":
        return cls(
            source=str(entry.source_path),
            mtime=entry.modified_time,
            size=entry.size_bytes,
        )

    def matches(self, entry: FileEntry) -> bool:
        """True if *entry* looks unchanged since this record was written."""
        return self.mtime == entry.modified_time and self.size == entry.size_bytes


@dataclass
class Manifest:
    """File records of one version, keyed by POSIX-style relative path."""

    version: str
    created: Optional[datetime] = None
    files: Dict[str, ManifestRecord] = field(default_factory=dict)

    @staticmethod
    def key(relative_path: PurePath) -> str:
        return relative_path.as_posix()

    def add(self, entry: FileEntry) -> None:
        self.files[self.key(entry.relative_path)] = ManifestRecord.from_entry(entry)

    def get(self, relative_path: PurePath) -> Optional[ManifestRecord]:
        return self.files.get(self.key(relative_path))

    def to_bytes(self) -> bytes:
        data = {
            "format": MANIFEST_FORMAT,
            "version": self.version,
            "created": self.created.isoformat() if self.created else None,
            "files": {
                rel: {"source": r.source, "mtime": r.mtime, "size": r.size}
                for rel, r in self.files.items()
            },
        }
        return orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS)

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Manifest":
        """Parse a manifest; raises ``ValueError`` on malformed content."""
        data = orjson.loads(raw)
        if not isinstance(data, dict) or not isinstance(data.get("files"), dict):
            raise ValueError("manifest is missing its files table")

        created = data.get("created")
        manifest = cls(
            version=str(data.get("version", "")),
            created=datetime.fromisoformat(created) if created else None,
        )
        for rel, rec in data["files"].items():
            try:
                manifest.files[rel] = ManifestRecord(
                    source=str(rec["source"]),
                    mtime=float(rec["mtime"]),
                    size=int(rec["size"]),
                )
            except (KeyError, TypeError, ValueError):
                logger.debug(f"Ignoring malformed manifest record for {rel}")
        return manifest


def manifest_path(version: BackupVersion) -> Path:
    return version.path / METADATA_DIR_NAME / MANIFEST_FILE_NAME


def load_manifest(version: BackupVersion) -> Optional[Manifest]:
    """
    Load the manifest of *version*.

    Returns:
        The manifest, or None if it is missing or unreadable
    """
    path = manifest_path(version)
    try:
        return Manifest.from_bytes(path.read_bytes())
    except FileNotFoundError:
        logger.debug(f"No manifest in version {version.name}")
    except (OSError, ValueError) as e:
        # orjson.JSONDecodeError is a ValueError subclass
        logger.debug(f"Unreadable manifest {path}: {e}")
    return None


def save_manifest(version: BackupVersion, manifest: Manifest) -> Path:
    """Write *manifest* into *version*'s metadata directory."""
    path = manifest_path(version)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(manifest.to_bytes())
    logger.debug(f"Wrote manifest with {len(manifest.files)} entries to {path}")
    return path
