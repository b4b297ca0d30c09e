"""
Version management and retention for Timecopy.

This module allocates the timestamped version directory for a run and
enforces the retention limit by deleting the oldest surplus versions.
"""

import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from timecopy_py.engine import (
    BackupVersion,
    PathLike,
    RotationWarning,
    VersionCreateError,
)

logger = logging.getLogger("timecopy.retention")

VERSION_FORMAT = "%Y%m%d_%H%M%S"
VERSION_PATTERN = re.compile(r"^\d{8}_\d{6}(?:_\d{2})?$")
MAX_COLLISION_SUFFIX = 99


def is_version_name(name: str) -> bool:
    """Return True if *name* follows the version naming scheme."""
    return VERSION_PATTERN.match(name) is not None


def parse_version_time(name: str) -> datetime:
    """Return the creation time encoded in a version name."""
    return datetime.strptime(name[:15], VERSION_FORMAT)


@dataclass
class RotationReport:
    """Outcome of one rotation pass."""

    deleted: List[str] = field(default_factory=list)
    retained: List[str] = field(default_factory=list)
    warnings: List[RotationWarning] = field(default_factory=list)


class VersionManager:
    """Allocates and rotates version directories under a destination root."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        """
        Initialize the manager.

        Args:
            clock: Returns the current local time; injectable for tests
        """
        self.clock = clock

    def list_versions(self, destination_root: PathLike) -> List[BackupVersion]:
        """
        List existing versions, oldest first.

        Lexical order of the names equals chronological order, so sorting
        by name is sufficient. Entries that are not version directories are
        ignored.
        """
        root = Path(destination_root)
        try:
            children = list(root.iterdir())
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning(f"Cannot list versions in {root}: {e}")
            return []

        versions = []
        for child in children:
            if not is_version_name(child.name):
                continue
            try:
                if not child.is_dir():
                    continue
            except OSError:
                continue
            try:
                created = parse_version_time(child.name)
            except ValueError:
                logger.debug(f"Ignoring {child.name}: not a valid timestamp")
                continue
            versions.append(BackupVersion(name=child.name, path=child, created=created))
        versions.sort(key=lambda v: v.name)
        return versions

    def latest_version(self, destination_root: PathLike) -> Optional[BackupVersion]:
        """Return the most recent version, or None if there is none."""
        versions = self.list_versions(destination_root)
        return versions[-1] if versions else None

    def begin_version(self, destination_root: PathLike) -> BackupVersion:
        """
        Allocate a new timestamped version directory.

        When the timestamp name already exists, a two-digit counter is
        appended so the lexical order of names still matches creation order.

        Raises:
            VersionCreateError: If the directory cannot be created
        """
        root = Path(destination_root)
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise VersionCreateError(
                f"Cannot create destination root {root}: {e}"
            ) from e

        created = self.clock()
        base = created.strftime(VERSION_FORMAT)
        for n in range(self._next_suffix(root, base), MAX_COLLISION_SUFFIX + 1):
            name = f"{base}_{n:02d}" if n else base
            path = root / name
            try:
                path.mkdir()
            except FileExistsError:
                logger.debug(f"Version name {name} already taken")
                continue
            except OSError as e:
                raise VersionCreateError(
                    f"Cannot create version directory {path}: {e}"
                ) from e
            logger.info(f"Created version {name} in {root}")
            return BackupVersion(name=name, path=path, created=created)

        raise VersionCreateError(
            f"No free version name for {base} in {root} "
            f"after {MAX_COLLISION_SUFFIX} attempts"
        )

    @staticmethod
    def _next_suffix(root: Path, base: str) -> int:
        """
        Return the first collision counter above every existing name for *base*.

        Zero stands for the bare timestamp. Counting up from the highest
        taken counter, rather than filling gaps left by rotation, keeps a new
        version sorting after every older one.
        """
        try:
            names = [child.name for child in root.iterdir()]
        except OSError as e:
            raise VersionCreateError(
                f"Cannot list destination root {root}: {e}"
            ) from e

        highest = -1
        for name in names:
            if name == base:
                highest = max(highest, 0)
            elif name.startswith(f"{base}_") and is_version_name(name):
                highest = max(highest, int(name[len(base) + 1:]))
        return highest + 1

    def rotate(
        self,
        destination_root: PathLike,
        max_versions: int,
        protect: Optional[BackupVersion] = None,
    ) -> RotationReport:
        """
        Delete the oldest versions beyond ``max_versions``.

        Deletion is best-effort per version: a version that cannot be removed
        is reported as a warning and left in place. A version that has
        already disappeared counts as deleted.

        Args:
            destination_root: Directory holding the versions
            max_versions: Number of most recent versions to retain
            protect: Version that must never be deleted (the current run's)

        Returns:
            RotationReport describing what happened
        """
        if max_versions < 1:
            raise ValueError(f"max_versions must be >= 1, got {max_versions}")

        report = RotationReport()
        kept: List[str] = []
        versions = self.list_versions(destination_root)
        surplus = versions[:-max_versions] if len(versions) > max_versions else []
        report.retained = [v.name for v in versions[len(surplus):]]

        for version in surplus:
            if protect is not None and version.name == protect.name:
                logger.warning(
                    f"Current version {version.name} sorts before newer versions; "
                    "keeping it"
                )
                kept.append(version.name)
                continue
            try:
                shutil.rmtree(version.path)
            except FileNotFoundError:
                if version.path.exists():
                    # Something under the version vanished mid-delete; retry.
                    shutil.rmtree(version.path, ignore_errors=True)
                logger.debug(f"Version {version.name} disappeared during rotation")
            except OSError as e:
                warning = RotationWarning(path=version.path, reason=str(e))
                logger.warning(f"Failed to delete version {version.name}: {e}")
                report.warnings.append(warning)
                kept.append(version.name)
                continue
            report.deleted.append(version.name)

        report.retained = kept + report.retained

        logger.info(
            f"Retention: keeping {len(report.retained)} versions, "
            f"deleted {len(report.deleted)}"
        )
        return report
