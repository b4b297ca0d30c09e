"""
Command-line interface for Timecopy.

This module provides the command-line entry point for the Timecopy backup
application.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Annotated, List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table

from timecopy_py import __version__
from timecopy_py.config import TimecopyConfig
from timecopy_py.engine import (
    BackupResult,
    BackupSelection,
    BackupSettings,
    ProgressReporter,
    TraversalConfig,
    VersionCreateError,
)
from timecopy_py.engine.copier import CopyEngine
from timecopy_py.manifest import load_manifest
from timecopy_py.orchestrator import BackupOrchestrator
from timecopy_py.retention import VersionManager

# Set up the console and logger
console = Console()
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(console=console, rich_tracebacks=True)],
)
logger = logging.getLogger("timecopy")

# Create the Typer app
app = typer.Typer(
    help="Point-in-time, versioned backups of your files and folders.",
    add_completion=False,
)

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help="Path to config file. Defaults to ~/.config/timecopy/config.yaml.",
    ),
]
DestOption = Annotated[
    Optional[str],
    typer.Option(
        "--dest",
        "-d",
        help="Destination root. Uses TIMECOPY_DEST env var or the config file "
        "if not set.",
    ),
]


def log_error(message: str) -> None:
    """Log an error message to both logger and console."""
    logger.error(message)
    console.print(f"[red]{message}[/red]")
    return None


def resolve_destination(dest: Optional[str], cfg: TimecopyConfig) -> Path:
    """Command-line flag first, then environment, config file and default."""
    if dest:
        return Path(dest).expanduser()
    return cfg.destination_root()


class RichProgressReporter(ProgressReporter):
    """Drives a rich progress bar from engine notifications."""

    def __init__(self, progress: Progress):
        self.progress = progress
        self.task_id = None

    def notify(self, filename: str, current: int, total: int) -> None:
        if self.task_id is None:
            self.task_id = self.progress.add_task("Backing up", total=total)
        self.progress.update(
            self.task_id, completed=current, description=Path(filename).name
        )


def print_result(result: BackupResult) -> None:
    """Render a run summary."""
    table = Table(title="Backup Summary", show_header=False)
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Version", str(result.output_directory or "-"))
    table.add_row("Files", str(result.files_total))
    table.add_row("Succeeded", str(result.files_succeeded))
    table.add_row("Unchanged", str(result.files_skipped))
    failed_style = "red" if result.files_failed else "green"
    table.add_row("Failed", f"[{failed_style}]{result.files_failed}[/{failed_style}]")
    table.add_row("Warnings", str(len(result.warnings)))
    if result.log_path:
        table.add_row("Log", str(result.log_path))
    console.print(table)
    console.print(result.message)


@app.callback()
def callback(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose output."
    ),
    json: bool = typer.Option(False, "--json", help="Output logs in JSON format."),
    version: bool = typer.Option(
        False, "--version", help="Show the application version and exit."
    ),
) -> None:
    """
    Timecopy: point-in-time, versioned copies of what matters.
    """
    if version:
        console.print(f"Timecopy version: {__version__}")
        raise typer.Exit()

    # Configure logging level based on verbosity
    if verbose:
        logger.setLevel(logging.DEBUG)
        logger.debug("Verbose logging enabled")

    # Configure JSON logging if requested
    if json:
        # Reconfigure logging for JSON output
        for handler in logging.root.handlers[:]:
            logging.root.removeHandler(handler)
        logging.basicConfig(
            level=logging.INFO if not verbose else logging.DEBUG,
            format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"message": "%(message)s"}',
            datefmt="%Y-%m-%dT%H:%M:%S",
            stream=sys.stdout,
        )
        logger.debug("JSON logging enabled")


@app.command()
def backup(
    paths: Annotated[
        Optional[List[str]],
        typer.Argument(
            help="Files or folders to back up. Uses the config file's sources "
            "if not specified."
        ),
    ] = None,
    dest: DestOption = None,
    max_versions: Annotated[
        Optional[int],
        typer.Option(
            "--max-versions", "-n", min=1, help="Number of versions to keep."
        ),
    ] = None,
    incremental: Annotated[
        Optional[bool],
        typer.Option(
            "--incremental/--full",
            help="Skip files unchanged since the previous version.",
        ),
    ] = None,
    recursive: Annotated[
        Optional[bool],
        typer.Option("--recursive/--no-recursive", help="Descend into subfolders."),
    ] = None,
    hidden: Annotated[
        Optional[bool],
        typer.Option("--hidden/--no-hidden", help="Include hidden files."),
    ] = None,
    workers: Annotated[
        Optional[int],
        typer.Option("--workers", "-w", min=1, help="Parallel copy workers."),
    ] = None,
    config_path: ConfigOption = None,
) -> None:
    """
    Copy the selection into a new version, then rotate old versions.
    """
    cfg = TimecopyConfig.load(config_path)

    selection = BackupSelection.from_paths(paths) if paths else cfg.selection()
    if not selection:
        log_error(
            "Nothing to back up. Pass paths or list sources in the config file."
        )
        raise typer.Exit(1)

    settings = BackupSettings(
        destination_root=resolve_destination(dest, cfg),
        max_versions=max_versions if max_versions is not None else cfg.max_versions,
        incremental_enabled=cfg.incremental if incremental is None else incremental,
        workers=workers if workers is not None else cfg.workers,
    )
    traversal = TraversalConfig(
        recurse_subfolders=cfg.recurse_subfolders if recursive is None else recursive,
        include_hidden=cfg.include_hidden if hidden is None else hidden,
    )

    logger.info(
        f"Backing up {len(selection)} paths to {settings.destination_root} "
        f"(keep {settings.max_versions}, "
        f"{'incremental' if settings.incremental_enabled else 'full'})"
    )

    orchestrator = BackupOrchestrator()
    try:
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=console,
            transient=True,
        ) as progress:
            result = orchestrator.run(
                selection, traversal, settings, reporter=RichProgressReporter(progress)
            )
    except VersionCreateError as e:
        log_error(f"Backup failed: {e}")
        raise typer.Exit(1)

    print_result(result)
    # Per-file failures are reported, not escalated to the exit code.
    if result.files_failed:
        logger.warning(f"{result.files_failed} files could not be backed up")


@app.command()
def copy(
    source: Annotated[Path, typer.Argument(help="File to copy.")],
    destination: Annotated[Path, typer.Argument(help="Destination file.")],
) -> None:
    """
    Copy a single file byte for byte.
    """
    if not CopyEngine().copy(source, destination):
        log_error(f"Backup failed from {source} to {destination}")
        raise typer.Exit(1)
    console.print(f"Backup successful from {source} to {destination}")


@app.command(name="versions")
def list_versions(
    dest: DestOption = None,
    json_output: bool = typer.Option(
        False, "--json", help="Output versions in JSON format."
    ),
    config_path: ConfigOption = None,
) -> None:
    """
    List backup versions, oldest first.
    """
    cfg = TimecopyConfig.load(config_path)
    root = resolve_destination(dest, cfg)
    versions = VersionManager().list_versions(root)

    if not versions:
        logger.info(f"No versions found in {root}")
        return

    if json_output:
        version_data = [
            {
                "name": v.name,
                "path": str(v.path),
                "created": v.created.isoformat(),
            }
            for v in versions
        ]
        typer.echo(json.dumps(version_data, indent=2))
        return

    table = Table(title=f"Versions in {root}")
    table.add_column("Name")
    table.add_column("Created")
    table.add_column("Files", justify="right")
    for v in versions:
        manifest = load_manifest(v)
        table.add_row(
            v.name,
            str(v.created),
            str(len(manifest.files)) if manifest else "?",
        )
    console.print(table)


@app.command()
def rotate(
    dest: DestOption = None,
    max_versions: Annotated[
        Optional[int],
        typer.Option(
            "--max-versions", "-n", min=1, help="Number of versions to keep."
        ),
    ] = None,
    config_path: ConfigOption = None,
) -> None:
    """
    Delete the oldest versions beyond the retention limit.
    """
    cfg = TimecopyConfig.load(config_path)
    root = resolve_destination(dest, cfg)
    keep = max_versions if max_versions is not None else cfg.max_versions

    report = VersionManager().rotate(root, keep)
    for name in report.deleted:
        console.print(f"Deleted version {name}")
    for warning in report.warnings:
        console.print(f"[yellow]{warning}[/yellow]")
    console.print(f"Keeping {len(report.retained)} versions in {root}")


@app.command()
def version() -> None:
    """Show the application version and exit."""
    console.print(f"Timecopy version: {__version__}")


if __name__ == "__main__":
    app()
