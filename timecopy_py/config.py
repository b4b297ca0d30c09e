"""
Configuration file support for Timecopy.

Loads settings from ``~/.config/timecopy/config.yaml`` (or
``$XDG_CONFIG_HOME/timecopy/config.yaml``) and exposes them as a typed
dataclass that the CLI merges with command-line flags. The engine itself
never reads this file; it receives immutable snapshots built from it.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from timecopy_py.engine import BackupSelection, BackupSettings, TraversalConfig
from timecopy_py.platform import default_destination_root

logger = logging.getLogger("timecopy.config")

DEST_ENV_VAR = "TIMECOPY_DEST"
DEFAULT_MAX_VERSIONS = 5


def default_config_path() -> Path:
    """Return the default configuration file path.

    Uses ``$XDG_CONFIG_HOME/timecopy/config.yaml`` when set, otherwise
    falls back to ``~/.config/timecopy/config.yaml``.
    """
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "timecopy" / "config.yaml"
    return Path.home() / ".config" / "timecopy" / "config.yaml"


def _positive_int(data: Dict[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        logger.warning("Ignoring invalid %s: %r (using %d)", key, value, default)
        return default
    return value


def _flag(data: Dict[str, Any], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        logger.warning("Ignoring invalid %s: %r (using %s)", key, value, default)
        return default
    return value


@dataclass
class TimecopyConfig:
    """Top-level configuration loaded from the YAML file."""

    destination: Optional[str] = None
    max_versions: int = DEFAULT_MAX_VERSIONS
    incremental: bool = False
    recurse_subfolders: bool = True
    include_hidden: bool = False
    workers: int = 1
    sources: List[Path] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimecopyConfig":
        """Construct a ``TimecopyConfig`` from a parsed YAML dictionary."""
        if not isinstance(data, dict):
            return cls()

        sources: List[Path] = []
        for entry in data.get("sources") or []:
            if isinstance(entry, dict):
                entry = entry.get("path")
            if not isinstance(entry, str) or not entry:
                logger.warning("Skipping invalid sources entry: %s", entry)
                continue
            sources.append(Path(entry).expanduser())

        destination = data.get("destination")
        if destination is not None and not isinstance(destination, str):
            logger.warning("Ignoring invalid destination: %r", destination)
            destination = None

        return cls(
            destination=destination,
            max_versions=_positive_int(data, "max_versions", DEFAULT_MAX_VERSIONS),
            incremental=_flag(data, "incremental", False),
            recurse_subfolders=_flag(data, "recurse_subfolders", True),
            include_hidden=_flag(data, "include_hidden", False),
            workers=_positive_int(data, "workers", 1),
            sources=sources,
        )

    @classmethod
    def from_file(cls, path: Path) -> "TimecopyConfig":
        """Read a YAML file and return a ``TimecopyConfig``.

        Returns an empty default config on any error.
        """
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f.read())
            if data is None:
                return cls()
            return cls.from_dict(data)
        except (IOError, yaml.YAMLError) as e:
            logger.error("Failed to load config from %s: %s", path, e)
            return cls()

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "TimecopyConfig":
        """Main entry point: load config from *config_path* or the default location.

        Returns an empty config if the file does not exist.
        """
        path = config_path or default_config_path()
        if not path.exists():
            return cls()
        return cls.from_file(path)

    def destination_root(self) -> Path:
        """Resolve the destination: environment, then file, then default."""
        env = os.environ.get(DEST_ENV_VAR)
        if env:
            return Path(env).expanduser()
        if self.destination:
            return Path(self.destination).expanduser()
        return default_destination_root()

    def settings(self) -> BackupSettings:
        """Snapshot the backup settings for one run."""
        return BackupSettings(
            destination_root=self.destination_root(),
            max_versions=self.max_versions,
            incremental_enabled=self.incremental,
            workers=self.workers,
        )

    def traversal(self) -> TraversalConfig:
        return TraversalConfig(
            recurse_subfolders=self.recurse_subfolders,
            include_hidden=self.include_hidden,
        )

    def selection(self) -> BackupSelection:
        return BackupSelection.from_paths(self.sources)
