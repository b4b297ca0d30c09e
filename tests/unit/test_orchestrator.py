"""
Tests for the backup orchestrator.
"""

import datetime
import logging
import threading
from pathlib import Path
from typing import Iterator, List, Tuple
from unittest.mock import MagicMock, patch

import pytest

from timecopy_py.engine import (
    BackupSettings,
    ProgressReporter,
    RunInProgressError,
    RunState,
    TraversalConfig,
    VersionCreateError,
)
from timecopy_py.engine.copier import CopyEngine
from timecopy_py.orchestrator import BackupOrchestrator
from timecopy_py.retention import VersionManager


class Ticker:
    """Clock that advances one second per call."""

    def __init__(self, start: datetime.datetime = datetime.datetime(2024, 1, 1)):
        self.now = start

    def __call__(self) -> datetime.datetime:
        current = self.now
        self.now += datetime.timedelta(seconds=1)
        return current


class RecordingReporter(ProgressReporter):
    def __init__(self) -> None:
        self.calls: List[Tuple[str, int, int]] = []

    def notify(self, filename: str, current: int, total: int) -> None:
        self.calls.append((filename, current, total))


@pytest.fixture
def orchestrator() -> BackupOrchestrator:
    return BackupOrchestrator(versions=VersionManager(clock=Ticker()))


@pytest.fixture
def source(tmp_path: Path) -> Path:
    """A directory with 2 visible files, 1 hidden file and 1 nested file."""
    src = tmp_path / "src"
    (src / "sub").mkdir(parents=True)
    (src / "one.txt").write_bytes(b"one")
    (src / "two.bin").write_bytes(bytes(range(256)) * 10)
    (src / ".secret").write_bytes(b"hidden")
    (src / "sub" / "three.txt").write_bytes(b"three")
    return src


def settings_for(tmp_path: Path, **kwargs) -> BackupSettings:
    return BackupSettings(destination_root=tmp_path / "dest", **kwargs)


def session_lines(result) -> List[str]:
    return result.log_path.read_text(encoding="utf-8").splitlines()


def test_single_file_scenario(
    orchestrator: BackupOrchestrator, tmp_path: Path
) -> None:
    f = tmp_path / "abc.txt"
    f.write_bytes(b"abc")

    result = orchestrator.run(
        [f], TraversalConfig(), settings_for(tmp_path, max_versions=2)
    )

    assert result.files_total == 1
    assert result.files_succeeded == 1
    assert result.files_failed == 0
    assert result.state is RunState.COMPLETED
    assert (result.output_directory / "abc.txt").read_bytes() == b"abc"
    assert orchestrator.state is RunState.COMPLETED


def test_non_recursive_directory_scenario(
    orchestrator: BackupOrchestrator, source: Path, tmp_path: Path
) -> None:
    result = orchestrator.run(
        [source],
        TraversalConfig(recurse_subfolders=False, include_hidden=False),
        settings_for(tmp_path),
    )

    assert result.files_total == 2
    out = result.output_directory / "src"
    assert (out / "one.txt").read_bytes() == b"one"
    assert (out / "two.bin").read_bytes() == bytes(range(256)) * 10
    assert not (out / ".secret").exists()
    assert not (out / "sub").exists()


def test_recursive_directory_with_hidden(
    orchestrator: BackupOrchestrator, source: Path, tmp_path: Path
) -> None:
    result = orchestrator.run(
        [source],
        TraversalConfig(recurse_subfolders=True, include_hidden=True),
        settings_for(tmp_path),
    )

    assert result.files_total == 4
    assert (result.output_directory / "src" / "sub" / "three.txt").exists()
    assert (result.output_directory / "src" / ".secret").exists()


def test_progress_is_strictly_increasing(
    orchestrator: BackupOrchestrator, source: Path, tmp_path: Path
) -> None:
    reporter = RecordingReporter()
    orchestrator.run(
        [source], TraversalConfig(), settings_for(tmp_path), reporter=reporter
    )

    assert [c[1] for c in reporter.calls] == [1, 2, 3]
    assert {c[2] for c in reporter.calls} == {3}
    assert [Path(c[0]).name for c in reporter.calls] == [
        "one.txt",
        "three.txt",
        "two.bin",
    ]


def test_plain_callable_reporter(
    orchestrator: BackupOrchestrator, source: Path, tmp_path: Path
) -> None:
    callback = MagicMock()
    orchestrator.run([source], TraversalConfig(), settings_for(tmp_path), callback)
    assert callback.call_count == 3


def test_session_log(
    orchestrator: BackupOrchestrator, source: Path, tmp_path: Path
) -> None:
    result = orchestrator.run(
        [source, tmp_path / "missing"],
        TraversalConfig(recurse_subfolders=False),
        settings_for(tmp_path),
    )

    lines = session_lines(result)
    assert lines[0].startswith("WARNING\ttraversal\t")
    assert lines[1] == (
        f"{source / 'one.txt'}\t{result.output_directory / 'src' / 'one.txt'}\tCOPIED"
    )
    assert lines[2].endswith("\tCOPIED")
    assert lines[-1] == "SUMMARY\ttotal=2\tsucceeded=2\tfailed=0\tskipped=0"
    assert result.log_path == (
        result.output_directory / ".timecopy" / "session.log"
    )
    assert len(result.warnings) == 1
    assert result.files_failed == 0


def test_copy_failures_are_counted(
    orchestrator: BackupOrchestrator, source: Path, tmp_path: Path
) -> None:
    real_copy = CopyEngine.copy

    def failing_copy(self, src, dest):
        if Path(src).name == "one.txt":
            return False
        return real_copy(self, src, dest)

    with patch.object(CopyEngine, "copy", failing_copy):
        result = orchestrator.run(
            [source], TraversalConfig(), settings_for(tmp_path)
        )

    assert result.state is RunState.COMPLETED
    assert result.files_total == 3
    assert result.files_failed == 1
    assert result.files_succeeded == 2
    assert result.files_total == result.files_succeeded + result.files_failed
    assert not result.ok
    assert f"{source / 'one.txt'}" in session_lines(result)[0]
    assert session_lines(result)[0].endswith("\tFAILED")


def test_empty_selection(orchestrator: BackupOrchestrator, tmp_path: Path) -> None:
    result = orchestrator.run([], TraversalConfig(), settings_for(tmp_path))

    assert (result.files_total, result.files_succeeded, result.files_failed) == (
        0,
        0,
        0,
    )
    assert result.output_directory is None
    assert result.message
    assert not (tmp_path / "dest").exists()


def test_version_create_error_fails_run(
    orchestrator: BackupOrchestrator, source: Path, tmp_path: Path
) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("x")
    settings = BackupSettings(destination_root=blocker / "dest")

    with pytest.raises(VersionCreateError):
        orchestrator.run([source], TraversalConfig(), settings)

    assert orchestrator.state is RunState.FAILED
    assert not orchestrator.running


def test_rotation_keeps_latest_version(
    orchestrator: BackupOrchestrator, source: Path, tmp_path: Path
) -> None:
    settings = settings_for(tmp_path, max_versions=1)
    first = orchestrator.run([source], TraversalConfig(), settings)
    second = orchestrator.run([source], TraversalConfig(), settings)

    remaining = [p.name for p in (tmp_path / "dest").iterdir()]
    assert remaining == [second.output_directory.name]
    assert not first.output_directory.exists()


def test_rotation_runs_after_failed_copies(
    orchestrator: BackupOrchestrator, tmp_path: Path
) -> None:
    settings = settings_for(tmp_path, max_versions=1)
    f = tmp_path / "a"
    f.write_text("a")
    orchestrator.run([f], TraversalConfig(), settings)

    with patch.object(CopyEngine, "copy", return_value=False):
        result = orchestrator.run([f], TraversalConfig(), settings)

    assert result.files_failed == 1
    assert [p.name for p in (tmp_path / "dest").iterdir()] == [
        result.output_directory.name
    ]


def test_incremental_second_run_skips_everything(
    orchestrator: BackupOrchestrator, source: Path, tmp_path: Path
) -> None:
    settings = settings_for(tmp_path, incremental_enabled=True, max_versions=1)

    first = orchestrator.run([source], TraversalConfig(), settings)
    second = orchestrator.run([source], TraversalConfig(), settings)

    assert first.files_skipped == 0
    assert second.files_failed == 0
    assert second.files_skipped == second.files_total == 3
    assert second.files_succeeded == 3
    file_lines = [l for l in session_lines(second) if not l.startswith("SUMMARY")]
    assert all(l.endswith("\tSKIPPED") for l in file_lines)
    # The surviving version is self-contained after the first one was rotated.
    out = second.output_directory / "src"
    assert (out / "one.txt").read_bytes() == b"one"
    assert (out / "sub" / "three.txt").read_bytes() == b"three"


def test_incremental_copies_changed_files(
    orchestrator: BackupOrchestrator, source: Path, tmp_path: Path
) -> None:
    settings = settings_for(tmp_path, incremental_enabled=True)
    orchestrator.run([source], TraversalConfig(), settings)

    (source / "one.txt").write_bytes(b"one, but longer")
    second = orchestrator.run([source], TraversalConfig(), settings)

    assert second.files_skipped == 2
    assert (second.output_directory / "src" / "one.txt").read_bytes() == (
        b"one, but longer"
    )


def test_full_mode_never_skips(
    orchestrator: BackupOrchestrator, source: Path, tmp_path: Path
) -> None:
    settings = settings_for(tmp_path, incremental_enabled=False)
    orchestrator.run([source], TraversalConfig(), settings)
    second = orchestrator.run([source], TraversalConfig(), settings)
    assert second.files_skipped == 0


def test_destination_inside_source_is_not_copied(
    orchestrator: BackupOrchestrator, source: Path
) -> None:
    settings = BackupSettings(destination_root=source / "backups")
    result = orchestrator.run(
        [source], TraversalConfig(recurse_subfolders=True), settings
    )
    assert result.files_total == 3


def test_parallel_workers_match_sequential(
    orchestrator: BackupOrchestrator, source: Path, tmp_path: Path
) -> None:
    sequential = RecordingReporter()
    parallel = RecordingReporter()

    a = orchestrator.run(
        [source], TraversalConfig(), settings_for(tmp_path), reporter=sequential
    )
    b = orchestrator.run(
        [source],
        TraversalConfig(),
        settings_for(tmp_path, workers=4),
        reporter=parallel,
    )

    assert sequential.calls == parallel.calls
    assert (a.files_total, a.files_succeeded) == (b.files_total, b.files_succeeded)
    def source_and_outcome(lines: List[str]) -> List[Tuple[str, str]]:
        return [(line.split("\t")[0], line.split("\t")[-1]) for line in lines]

    assert source_and_outcome(session_lines(a)) == source_and_outcome(
        session_lines(b)
    )


def test_reentrant_run_is_rejected(
    orchestrator: BackupOrchestrator, tmp_path: Path
) -> None:
    f = tmp_path / "a"
    f.write_text("a")
    errors: List[Exception] = []

    def reenter(filename: str, current: int, total: int) -> None:
        try:
            orchestrator.run([f], TraversalConfig(), settings_for(tmp_path))
        except RunInProgressError as e:
            errors.append(e)

    result = orchestrator.run(
        [f], TraversalConfig(), settings_for(tmp_path), reporter=reenter
    )

    assert len(errors) == 1
    assert result.files_succeeded == 1
    assert len(list((tmp_path / "dest").iterdir())) == 1


def test_concurrent_run_from_another_thread(
    orchestrator: BackupOrchestrator, tmp_path: Path
) -> None:
    f = tmp_path / "a"
    f.write_text("a")
    entered = threading.Event()
    release = threading.Event()
    outcome: List[object] = []

    def blocking(filename: str, current: int, total: int) -> None:
        entered.set()
        release.wait(timeout=10)

    def first_run() -> None:
        outcome.append(
            orchestrator.run(
                [f], TraversalConfig(), settings_for(tmp_path), reporter=blocking
            )
        )

    worker = threading.Thread(target=first_run)
    worker.start()
    try:
        assert entered.wait(timeout=10)
        assert orchestrator.running
        with pytest.raises(RunInProgressError):
            orchestrator.run([f], TraversalConfig(), settings_for(tmp_path))
    finally:
        release.set()
        worker.join(timeout=10)

    assert outcome[0].files_succeeded == 1
    assert not orchestrator.running


def test_rotation_warning_is_reported(
    orchestrator: BackupOrchestrator, tmp_path: Path
) -> None:
    f = tmp_path / "a"
    f.write_text("a")
    settings = settings_for(tmp_path, max_versions=1)
    orchestrator.run([f], TraversalConfig(), settings)

    with patch(
        "timecopy_py.retention.shutil.rmtree", side_effect=PermissionError("denied")
    ):
        result = orchestrator.run([f], TraversalConfig(), settings)

    assert result.files_failed == 0
    assert any(w.startswith("rotation:") for w in result.warnings)
    lines = session_lines(result)
    assert lines[-2].startswith("WARNING\trotation\t")
    assert lines[-1].startswith("SUMMARY\t")
    assert len(list((tmp_path / "dest").iterdir())) == 2


def test_traversal_is_drained_before_copying(
    orchestrator: BackupOrchestrator, source: Path, tmp_path: Path
) -> None:
    seen: List[str] = []
    real_traverse = orchestrator.traversal.traverse

    def tracking(*args, **kwargs) -> Iterator:
        for entry in real_traverse(*args, **kwargs):
            seen.append(entry.relative_path.as_posix())
            yield entry

    totals: List[int] = []

    def reporter(filename: str, current: int, total: int) -> None:
        totals.append(len(seen))

    with patch.object(orchestrator.traversal, "traverse", side_effect=tracking):
        orchestrator.run(
            [source], TraversalConfig(), settings_for(tmp_path), reporter=reporter
        )

    assert totals == [3, 3, 3]


def test_destination_spelled_through_parent_is_not_copied(
    orchestrator: BackupOrchestrator, source: Path
) -> None:
    f = source / "one.txt"
    settings = BackupSettings(
        destination_root=source / ".." / source.name / "backups"
    )

    orchestrator.run([source], TraversalConfig(recurse_subfolders=True), settings)
    second = orchestrator.run(
        [source], TraversalConfig(recurse_subfolders=True), settings
    )

    assert second.files_total == 3
    assert (second.output_directory / "src" / f.name).read_bytes() == b"one"


@pytest.mark.parametrize("incremental", [False, True])
def test_impossible_timestamp_in_destination_is_ignored(
    orchestrator: BackupOrchestrator, tmp_path: Path, incremental: bool
) -> None:
    f = tmp_path / "a"
    f.write_text("a")
    settings = settings_for(
        tmp_path, max_versions=1, incremental_enabled=incremental
    )
    (tmp_path / "dest" / "20241399_000000").mkdir(parents=True)
    (tmp_path / "dest" / "99999999_999999").mkdir()

    result = orchestrator.run([f], TraversalConfig(), settings)

    assert result.state is RunState.COMPLETED
    assert result.files_succeeded == 1
    assert session_lines(result)[-1].startswith("SUMMARY\t")
    assert (tmp_path / "dest" / "20241399_000000").is_dir()
    assert (tmp_path / "dest" / "99999999_999999").is_dir()


def test_unwritable_session_log_keeps_run_going(tmp_path: Path) -> None:
    class BlockedMetadata(VersionManager):
        def begin_version(self, destination_root):
            version = super().begin_version(destination_root)
            version.metadata_dir.write_text("not a directory")
            return version

    orchestrator = BackupOrchestrator(versions=BlockedMetadata(clock=Ticker()))
    f = tmp_path / "a"
    f.write_text("a")

    result = orchestrator.run([f], TraversalConfig(), settings_for(tmp_path))

    assert result.state is RunState.COMPLETED
    assert result.files_succeeded == 1
    assert result.log_path is None
    assert (result.output_directory / "a").read_text() == "a"
    assert orchestrator.state is RunState.COMPLETED


def test_default_reporter_logs_progress(
    orchestrator: BackupOrchestrator, tmp_path: Path, caplog
) -> None:
    f = tmp_path / "a"
    f.write_text("a")

    with caplog.at_level(logging.DEBUG, logger="timecopy.results"):
        orchestrator.run([f], TraversalConfig(), settings_for(tmp_path))

    assert f"[1/1] {f}" in caplog.text
