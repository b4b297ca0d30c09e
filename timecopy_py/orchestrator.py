"""
Backup orchestration for Timecopy.

``BackupOrchestrator`` composes traversal, copying, version management and
reporting into a single ``run`` operation::

    Idle -> Preparing -> Copying -> Rotating -> Completed | Failed

Only ``VersionCreateError`` and ``RunInProgressError`` escape ``run``. Every
other problem is absorbed into the per-file counters or reported as a
warning in the returned ``BackupResult`` and the session log.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Tuple, Union

from timecopy_py.engine import (
    BackupResult,
    BackupSelection,
    BackupSettings,
    BackupVersion,
    BackupWarning,
    CopyOutcome,
    FileEntry,
    PathLike,
    ProgressReporter,
    RunInProgressError,
    RunState,
    TraversalConfig,
    VersionCreateError,
)
from timecopy_py.engine.copier import CopyEngine
from timecopy_py.manifest import Manifest, load_manifest, save_manifest
from timecopy_py.results import (
    SESSION_LOG_NAME,
    CallbackProgressReporter,
    LoggingProgressReporter,
    ResultLogger,
)
from timecopy_py.retention import VersionManager
from timecopy_py.traversal import TraversalEngine

logger = logging.getLogger("timecopy.orchestrator")

ReporterLike = Union[ProgressReporter, Callable[[str, int, int], None]]
Attempt = Tuple[FileEntry, Path, CopyOutcome]


def _as_reporter(reporter: Optional[ReporterLike]) -> ProgressReporter:
    if reporter is None:
        return LoggingProgressReporter()
    if isinstance(reporter, ProgressReporter):
        return reporter
    return CallbackProgressReporter(reporter)


class BackupOrchestrator:
    """Facade running one backup at a time."""

    def __init__(
        self,
        traversal: Optional[TraversalEngine] = None,
        copier: Optional[CopyEngine] = None,
        versions: Optional[VersionManager] = None,
        reporter: Optional[ReporterLike] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            traversal: Traversal engine (default: ``TraversalEngine()``)
            copier: Copy engine (default: ``CopyEngine()``)
            versions: Version manager (default: ``VersionManager()``)
            reporter: Default progress reporter or ``(name, current, total)``
                callback (default: log each step at DEBUG level)
        """
        self.traversal = traversal or TraversalEngine()
        self.copier = copier or CopyEngine()
        self.versions = versions or VersionManager()
        self.reporter = _as_reporter(reporter)
        self._guard = threading.Lock()
        self._state = RunState.IDLE

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def running(self) -> bool:
        return self._guard.locked()

    def run(
        self,
        selection: Union[BackupSelection, Iterable[PathLike]],
        config: TraversalConfig,
        settings: BackupSettings,
        reporter: Optional[ReporterLike] = None,
    ) -> BackupResult:
        """
        Run one backup.

        Args:
            selection: Roots to back up (paths are made absolute)
            config: Recursion and hidden-file policy
            settings: Destination, retention and incremental settings
            reporter: Overrides the orchestrator's reporter for this run

        Returns:
            BackupResult with aggregated counts

        Raises:
            RunInProgressError: If another run is active on this instance
            VersionCreateError: If no version directory could be created
        """
        if not self._guard.acquire(blocking=False):
            raise RunInProgressError("A backup run is already in progress")
        try:
            if not isinstance(selection, BackupSelection):
                selection = BackupSelection.from_paths(selection)
            return self._run(
                selection,
                config,
                settings,
                _as_reporter(reporter) if reporter is not None else self.reporter,
            )
        except BaseException:
            self._state = RunState.FAILED
            raise
        finally:
            self._guard.release()

    def _run(
        self,
        selection: BackupSelection,
        config: TraversalConfig,
        settings: BackupSettings,
        reporter: ProgressReporter,
    ) -> BackupResult:
        self._state = RunState.PREPARING
        root = settings.destination_root

        if not selection:
            logger.info("Nothing selected; no version created")
            self._state = RunState.COMPLETED
            return BackupResult(
                files_total=0,
                files_succeeded=0,
                files_failed=0,
                output_directory=None,
                message="Nothing selected to back up.",
            )

        previous: Optional[BackupVersion] = None
        previous_manifest: Optional[Manifest] = None
        if settings.incremental_enabled:
            previous = self.versions.latest_version(root)
            if previous is not None:
                previous_manifest = load_manifest(previous)
                logger.info(f"Incremental run against version {previous.name}")

        try:
            version = self.versions.begin_version(root)
        except VersionCreateError as e:
            logger.error(f"Backup aborted: {e}")
            raise

        session = self._open_session(version)
        warnings: List[str] = []

        def on_warning(warning: BackupWarning) -> None:
            session.warning(warning)
            warnings.append(str(warning))

        try:
            self._state = RunState.COPYING
            entries = list(
                self.traversal.traverse(
                    selection,
                    config,
                    on_warning=on_warning,
                    exclude_dirs=[root],
                )
            )
            total = len(entries)
            logger.info(f"Backing up {total} files into {version.path}")

            manifest = Manifest(version=version.name, created=version.created)
            succeeded = failed = skipped = 0
            attempts = self._attempt_all(
                entries, version, previous, previous_manifest, settings.workers
            )
            for index, (entry, dest, outcome) in enumerate(attempts, start=1):
                if outcome is CopyOutcome.FAILED:
                    failed += 1
                else:
                    succeeded += 1
                    if outcome is CopyOutcome.SKIPPED:
                        skipped += 1
                    manifest.add(entry)
                session.record(entry.source_path, dest, outcome)
                reporter.notify(str(entry.source_path), index, total)

            try:
                save_manifest(version, manifest)
            except OSError as e:
                logger.warning(f"Could not write manifest for {version.name}: {e}")

            self._state = RunState.ROTATING
            report = self.versions.rotate(root, settings.max_versions, protect=version)
            for warning in report.warnings:
                on_warning(warning)

            result = BackupResult(
                files_total=total,
                files_succeeded=succeeded,
                files_failed=failed,
                output_directory=version.path,
                files_skipped=skipped,
                warnings=tuple(warnings),
                message=self._message(total, failed, skipped),
                log_path=session.path,
            )
            session.close(result)
        finally:
            session.close()

        self._state = RunState.COMPLETED
        return result

    @staticmethod
    def _open_session(version: BackupVersion) -> ResultLogger:
        session = ResultLogger(version.metadata_dir / SESSION_LOG_NAME)
        try:
            return session.open()
        except OSError as e:
            logger.warning(
                f"Cannot write session log for {version.name}: {e}; "
                "keeping records in memory"
            )
            return ResultLogger().open()

    def _attempt_all(
        self,
        entries: List[FileEntry],
        version: BackupVersion,
        previous: Optional[BackupVersion],
        previous_manifest: Optional[Manifest],
        workers: int,
    ) -> Iterator[Attempt]:
        def attempt(entry: FileEntry) -> Attempt:
            return self._attempt(entry, version, previous, previous_manifest)

        # Entries sharing a destination must not be written concurrently.
        distinct = len({e.relative_path for e in entries}) == len(entries)
        if workers <= 1 or len(entries) <= 1 or not distinct:
            for entry in entries:
                yield attempt(entry)
            return

        # map() yields in submission order, keeping reporting sequential.
        with ThreadPoolExecutor(max_workers=workers) as pool:
            yield from pool.map(attempt, entries)

    def _attempt(
        self,
        entry: FileEntry,
        version: BackupVersion,
        previous: Optional[BackupVersion],
        previous_manifest: Optional[Manifest],
    ) -> Attempt:
        dest = version.path / entry.relative_path

        if previous is not None and previous_manifest is not None:
            record = previous_manifest.get(entry.relative_path)
            if record is not None and record.matches(entry):
                earlier = previous.path / entry.relative_path
                if earlier.is_file() and self.copier.link_or_copy(earlier, dest):
                    return entry, dest, CopyOutcome.SKIPPED
                logger.debug(f"Previous copy of {entry.relative_path} unusable")

        if self.copier.copy(entry.source_path, dest):
            return entry, dest, CopyOutcome.COPIED
        return entry, dest, CopyOutcome.FAILED

    @staticmethod
    def _message(total: int, failed: int, skipped: int) -> str:
        if total == 0:
            return "No files found to back up."
        if failed:
            return f"Backup completed with {failed} of {total} files failed."
        if skipped:
            return f"Backup completed: {total} files ({skipped} unchanged)."
        return f"Backup completed: {total} files."
