"""
Result logging and progress reporting for Timecopy.

``ResultLogger`` writes the per-run session log. Its on-disk format is a
stable contract: one tab-separated line per record, with the summary last::

    WARNING<TAB>traversal<TAB>/home/me/private<TAB>Permission denied
    /home/me/docs/a.txt<TAB>/backups/20240101_120000/docs/a.txt<TAB>COPIED
    SUMMARY<TAB>total=1<TAB>succeeded=1<TAB>failed=0<TAB>skipped=0

Every record is mirrored to the ``timecopy.results`` logger.
"""

import logging
from pathlib import Path
from typing import IO, Callable, List, Optional

from timecopy_py.engine import (
    BackupResult,
    BackupWarning,
    CopyOutcome,
    PathLike,
    ProgressReporter,
)

logger = logging.getLogger("timecopy.results")

SESSION_LOG_NAME = "session.log"


def format_file_record(
    source: PathLike, destination: PathLike, outcome: CopyOutcome
) -> str:
    return f"{source}\t{destination}\t{outcome.value}"


def format_warning_record(warning: BackupWarning) -> str:
    return f"WARNING\t{warning.kind}\t{warning.path}\t{warning.reason}"


def format_summary_record(result: BackupResult) -> str:
    return (
        f"SUMMARY\ttotal={result.files_total}"
        f"\tsucceeded={result.files_succeeded}"
        f"\tfailed={result.files_failed}"
        f"\tskipped={result.files_skipped}"
    )


class ResultLogger:
    """Append-only session record: open, write records, close with a summary."""

    def __init__(self, path: Optional[PathLike] = None):
        """
        Initialize the logger.

        Args:
            path: Session log file. When None, records go to logging only.
        """
        self.path = Path(path) if path is not None else None
        self._fh: Optional[IO[str]] = None
        self._closed = False
        self.records: List[str] = []

    def open(self) -> "ResultLogger":
        """Open the session. Parent directories are created as needed."""
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self.path, "w", encoding="utf-8")
        self._closed = False
        logger.debug(f"Session log opened: {self.path or '<memory>'}")
        return self

    def _write(self, line: str) -> None:
        if self._closed:
            raise ValueError("session log is closed")
        self.records.append(line)
        if self._fh is not None:
            self._fh.write(line + "\n")
            self._fh.flush()

    def record(
        self, source: PathLike, destination: PathLike, outcome: CopyOutcome
    ) -> None:
        """Append one per-file outcome."""
        self._write(format_file_record(source, destination, outcome))
        if outcome is CopyOutcome.FAILED:
            logger.error(f"FAILED {source} -> {destination}")
        else:
            logger.debug(f"{outcome.value} {source} -> {destination}")

    def warning(self, warning: BackupWarning) -> None:
        """Append a non-fatal warning."""
        self._write(format_warning_record(warning))
        logger.warning(str(warning))

    def close(self, result: Optional[BackupResult] = None) -> None:
        """Write the summary line (if a result is given) and close the file."""
        if self._closed:
            return
        try:
            if result is not None:
                self._write(format_summary_record(result))
                logger.info(
                    f"Backup summary: {result.files_total} files, "
                    f"{result.files_succeeded} succeeded "
                    f"({result.files_skipped} skipped), "
                    f"{result.files_failed} failed"
                )
        finally:
            if self._fh is not None:
                self._fh.close()
                self._fh = None
            self._closed = True

    def __enter__(self) -> "ResultLogger":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class LoggingProgressReporter(ProgressReporter):
    """Reporter that logs each step at DEBUG level."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def notify(self, filename: str, current: int, total: int) -> None:
        self.log.debug(f"[{current}/{total}] {filename}")


class CallbackProgressReporter(ProgressReporter):
    """Adapts a plain ``callback(filename, current, total)`` to a reporter."""

    def __init__(self, callback: Callable[[str, int, int], None]):
        self.callback = callback

    def notify(self, filename: str, current: int, total: int) -> None:
        self.callback(filename, current, total)
