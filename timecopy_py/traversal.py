"""
Traversal of a backup selection into concrete file entries.

Roots are expanded lazily in selection order. Directory children are visited
in lexical order by name so progress counts and logs are reproducible across
runs over an unchanged tree.
"""

import logging
import os
from pathlib import Path, PurePath
from typing import Callable, Collection, Iterable, Iterator, Optional

from timecopy_py.engine import (
    BackupSelection,
    FileEntry,
    TraversalConfig,
    TraversalWarning,
)
from timecopy_py.platform import is_hidden

logger = logging.getLogger("timecopy.traversal")

WarningHandler = Callable[[TraversalWarning], None]


class TraversalEngine:
    """Enumerates a selection according to a ``TraversalConfig``."""

    def traverse(
        self,
        selection: BackupSelection,
        config: TraversalConfig,
        on_warning: Optional[WarningHandler] = None,
        exclude_dirs: Iterable[Path] = (),
    ) -> Iterator[FileEntry]:
        """
        Yield file entries for every root in the selection.

        The filesystem is re-read on every call. Unreadable roots and
        subtrees yield nothing and are passed to ``on_warning``.

        Args:
            selection: Ordered root paths
            config: Recursion and hidden-file policy
            on_warning: Called once per skipped root or subtree
            exclude_dirs: Directories never descended into, such as the
                destination root when it lies inside a source. Compared by
                resolved path, so any spelling of the same directory matches

        Yields:
            FileEntry for each file, in deterministic order
        """
        excluded = frozenset(Path(d).resolve() for d in exclude_dirs)
        for root in selection:
            yield from self._walk_root(Path(root), config, on_warning, excluded)

    def _walk_root(
        self,
        root: Path,
        config: TraversalConfig,
        on_warning: Optional[WarningHandler],
        excluded: Collection[Path],
    ) -> Iterator[FileEntry]:
        try:
            st = root.stat()
        except OSError as e:
            self._warn(on_warning, root, e.strerror or str(e))
            return

        if os.path.isdir(root):
            # A filesystem root has no name, so its children land at the top.
            prefix = PurePath(root.name) if root.name else PurePath()
            yield from self._walk_dir(root, prefix, config, on_warning, excluded)
        else:
            yield FileEntry(
                source_path=root,
                relative_path=PurePath(root.name),
                modified_time=st.st_mtime,
                size_bytes=st.st_size,
            )

    def _walk_dir(
        self,
        directory: Path,
        prefix: PurePath,
        config: TraversalConfig,
        on_warning: Optional[WarningHandler],
        excluded: Collection[Path],
    ) -> Iterator[FileEntry]:
        try:
            with os.scandir(directory) as it:
                children = sorted(it, key=lambda e: e.name)
        except OSError as e:
            self._warn(on_warning, directory, e.strerror or str(e))
            return

        for child in children:
            child_path = Path(child.path)
            try:
                # Directory symlinks are not followed to avoid cycles.
                is_dir = child.is_dir(follow_symlinks=False)
                st = child.stat()
            except OSError as e:
                self._warn(on_warning, child_path, e.strerror or str(e))
                continue

            if not config.include_hidden and is_hidden(child.name, st):
                logger.debug(f"Skipping hidden entry {child_path}")
                continue

            if is_dir:
                if excluded and child_path.resolve() in excluded:
                    logger.debug(f"Not descending into excluded {child_path}")
                elif config.recurse_subfolders:
                    yield from self._walk_dir(
                        child_path, prefix / child.name, config, on_warning, excluded
                    )
                continue

            if not child.is_file():
                logger.debug(f"Skipping special file {child_path}")
                continue

            yield FileEntry(
                source_path=child_path,
                relative_path=prefix / child.name,
                modified_time=st.st_mtime,
                size_bytes=st.st_size,
            )

    @staticmethod
    def _warn(
        on_warning: Optional[WarningHandler], path: Path, reason: str
    ) -> None:
        warning = TraversalWarning(path=path, reason=reason)
        logger.warning(f"Skipping unreadable path {path}: {reason}")
        if on_warning is not None:
            on_warning(warning)
