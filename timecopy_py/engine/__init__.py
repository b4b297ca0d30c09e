"""
Engine package for Timecopy.

This module provides the data model shared by the backup engine components,
the error taxonomy, and the base class for progress reporters.
"""

import abc
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path, PurePath
from typing import Iterable, Iterator, Optional, Tuple, Union

PathLike = Union[str, Path]

# Per-version directory holding the manifest and session log.
METADATA_DIR_NAME = ".timecopy"


class BackupError(Exception):
    """Base class for run-level backup errors."""


class VersionCreateError(BackupError):
    """Raised when a new version directory cannot be allocated."""


class RunInProgressError(BackupError):
    """Raised when ``run`` is invoked while another run is active."""


class CopyFailure(BackupError):
    """A single file could not be read or written."""

    def __init__(self, source: Path, destination: Path, reason: str):
        super().__init__(f"{source} -> {destination}: {reason}")
        self.source = source
        self.destination = destination
        self.reason = reason


@dataclass(frozen=True)
class BackupWarning:
    """A non-fatal condition reported during a run."""

    path: Path
    reason: str

    kind = "warning"

    def __str__(self) -> str:
        return f"{self.kind}: {self.path}: {self.reason}"


@dataclass(frozen=True)
class TraversalWarning(BackupWarning):
    """A subtree (or root) could not be read and was skipped."""

    kind = "traversal"


@dataclass(frozen=True)
class RotationWarning(BackupWarning):
    """A stale version could not be deleted and was left in place."""

    kind = "rotation"


class RunState(Enum):
    """Lifecycle states of a single backup run."""

    IDLE = "idle"
    PREPARING = "preparing"
    COPYING = "copying"
    ROTATING = "rotating"
    COMPLETED = "completed"
    FAILED = "failed"


class CopyOutcome(Enum):
    """Per-file outcome recorded in the session log."""

    COPIED = "COPIED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class TraversalConfig:
    """Recursion and hidden-file policy for one run."""

    recurse_subfolders: bool = True
    include_hidden: bool = False


@dataclass(frozen=True)
class BackupSettings:
    """Immutable snapshot of the backup settings for one run."""

    destination_root: Path
    max_versions: int = 5
    incremental_enabled: bool = False
    workers: int = 1

    def __post_init__(self) -> None:
        if self.max_versions < 1:
            raise ValueError(f"max_versions must be >= 1, got {self.max_versions}")
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        object.__setattr__(
            self, "destination_root", Path(self.destination_root).expanduser()
        )


@dataclass(frozen=True)
class BackupSelection:
    """Ordered root paths chosen by the caller. Duplicates are kept."""

    roots: Tuple[Path, ...] = ()

    @classmethod
    def from_paths(cls, paths: Iterable[PathLike]) -> "BackupSelection":
        """Build a selection of absolute roots with ``~`` and ``..`` expanded."""
        return cls(tuple(Path(os.path.abspath(Path(p).expanduser())) for p in paths))

    def __len__(self) -> int:
        return len(self.roots)

    def __iter__(self) -> Iterator[Path]:
        return iter(self.roots)


@dataclass(frozen=True)
class FileEntry:
    """A concrete file produced by traversal."""

    source_path: Path
    relative_path: PurePath
    modified_time: float
    size_bytes: int


@dataclass(frozen=True)
class BackupVersion:
    """A timestamped version directory under the destination root."""

    name: str
    path: Path
    created: datetime

    @property
    def metadata_dir(self) -> Path:
        return self.path / METADATA_DIR_NAME


@dataclass(frozen=True)
class BackupResult:
    """Aggregated outcome of one run."""

    files_total: int
    files_succeeded: int
    files_failed: int
    output_directory: Optional[Path]
    files_skipped: int = 0
    warnings: Tuple[str, ...] = field(default_factory=tuple)
    message: str = ""
    state: RunState = RunState.COMPLETED
    log_path: Optional[Path] = None

    @property
    def ok(self) -> bool:
        """True when every file ended up backed up."""
        return self.files_failed == 0


class ProgressReporter(abc.ABC):
    """Observer notified after each file attempt."""

    @abc.abstractmethod
    def notify(self, filename: str, current: int, total: int) -> None:
        """
        Report progress.

        Args:
            filename: Source path of the file just attempted
            current: 1-based index of the attempt
            total: Number of files in the run
        """
        pass
