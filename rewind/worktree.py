"""Synchronization between stored trees and a live directory.

``capture`` turns the live directory into a stored tree. ``materialize``
makes the live directory match a stored tree:

- non-ignored entries absent from the tree are deleted
- files whose content differs are rewritten through a temp file, identical
  files are left alone apart from fixing a changed executable bit
- missing files and directories are created

Ignored paths are never read, written or deleted in either direction.
Symlinks and special files are handled the same way as ignored paths,
unless the tree has an entry with exactly their name, in which case they
are replaced. A directory that still holds ignored entries after cleanup is
kept even when the tree no longer lists it.

Before touching anything, materialize checks that every object the target
tree needs is present, so a damaged store fails without modifying the
working tree.
"""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path

from rewind.atomic import atomic_write_bytes
from rewind.errors import NotFoundError, StorageIOError
from rewind.store import hash_bytes
from rewind.tree import Tree, TreeBuilder, TreeEntry, is_executable_mode
from rewind.types import ObjectHash

logger = logging.getLogger(__name__)

FILE_MODE = 0o644
EXECUTABLE_MODE = 0o755


@dataclass
class SyncReport:
    """What materialize did."""

    written: int = 0
    deleted: int = 0
    unchanged: int = 0


def _is_regular(entry: os.DirEntry) -> bool:
    """True for real files and directories, False for symlinks and specials."""
    if entry.is_symlink():
        return False
    return entry.is_dir(follow_symlinks=False) or entry.is_file(follow_symlinks=False)


def _file_mode(current: int | None, executable: bool) -> int:
    """Permission bits for a written file.

    An existing file keeps its bits unless the executable flag changed, in
    which case the x bits follow the r bits.
    """
    if current is None:
        return EXECUTABLE_MODE if executable else FILE_MODE
    perms = stat.S_IMODE(current)
    if is_executable_mode(perms) == executable:
        return perms
    if executable:
        return perms | ((perms & 0o444) >> 2)
    return perms & ~0o111


class WorkingTreeSync:
    def __init__(self, builder: TreeBuilder) -> None:
        self.builder = builder
        self.store = builder.store
        self.ignore = builder.ignore

    def capture(self, live_dir: Path) -> ObjectHash:
        """Store the current contents of ``live_dir`` and return the tree hash."""
        return self.builder.build(Path(live_dir))

    def materialize(self, tree_hash: ObjectHash, live_dir: Path, verify: bool = True) -> SyncReport:
        """Overwrite the non-ignored contents of ``live_dir`` with a stored tree.

        Raises:
            NotFoundError / CorruptError: the tree or one of its blobs is
                missing or damaged (nothing has been modified yet)
            StorageIOError: a filesystem operation failed part way
        """
        live_dir = Path(live_dir)
        if verify:
            self.verify(tree_hash)
        root = self.builder.read(tree_hash)

        report = SyncReport()
        try:
            live_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError("materialize", str(e), context={"path": str(live_dir)}) from e

        self._sync_dir(root, live_dir, "", report)
        logger.info(
            f"Materialized {tree_hash[:8]} into {live_dir}: "
            f"{report.written} written, {report.deleted} deleted, {report.unchanged} unchanged"
        )
        return report

    def verify(self, tree_hash: ObjectHash) -> None:
        """Check a stored tree, its sub-trees and all its blobs are present.

        Raises:
            NotFoundError: a tree or blob is missing
            CorruptError: a tree is damaged
        """
        self._verify(self.builder.read(tree_hash))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _verify(self, tree: Tree) -> None:
        for entry in tree:
            if entry.is_dir:
                self._verify(self.builder.read(entry.hash))
            elif not self.store.has(entry.hash):
                raise NotFoundError(
                    f"Object {entry.hash} for '{entry.name}' is missing from the store",
                    context={"hash": entry.hash},
                )

    def _child_rel(self, rel: str, name: str) -> str:
        return f"{rel}/{name}" if rel else name

    def _sync_dir(self, tree: Tree, path: Path, rel: str, report: SyncReport) -> None:
        wanted = tree.by_name()

        try:
            with os.scandir(path) as it:
                live_entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            raise StorageIOError("materialize", str(e), context={"path": str(path)}) from e

        # Pass 1: remove what the tree does not want
        for entry in live_entries:
            child_rel = self._child_rel(rel, entry.name)
            target = wanted.get(entry.name)

            if not _is_regular(entry):
                if target is not None and not self.ignore.matches(child_rel, target.is_dir):
                    self._unlink(Path(entry.path), report)
                continue

            is_dir = entry.is_dir(follow_symlinks=False)
            if self.ignore.matches(child_rel, is_dir):
                continue

            if target is None or target.is_dir != is_dir:
                if is_dir:
                    self._remove_dir(Path(entry.path), child_rel, report)
                else:
                    self._unlink(Path(entry.path), report)

        # Pass 2: write what the tree wants
        for entry in tree:
            child = path / entry.name
            child_rel = self._child_rel(rel, entry.name)
            if self.ignore.matches(child_rel, entry.is_dir):
                continue

            if entry.is_dir:
                self._ensure_dir(child)
                self._sync_dir(self.builder.read(entry.hash), child, child_rel, report)
            else:
                self._write_file(child, entry, report)

    def _remove_dir(self, path: Path, rel: str, report: SyncReport) -> bool:
        """Delete a directory's non-ignored contents, then the directory if empty."""
        try:
            with os.scandir(path) as it:
                children = list(it)
        except OSError as e:
            raise StorageIOError("materialize", str(e), context={"path": str(path)}) from e

        kept = False
        for entry in children:
            child_rel = self._child_rel(rel, entry.name)
            if not _is_regular(entry):
                kept = True
                continue
            is_dir = entry.is_dir(follow_symlinks=False)
            if self.ignore.matches(child_rel, is_dir):
                kept = True
                continue
            if is_dir:
                if not self._remove_dir(Path(entry.path), child_rel, report):
                    kept = True
            else:
                self._unlink(Path(entry.path), report)

        if kept:
            logger.debug(f"Keeping {rel}/: holds ignored entries")
            return False

        try:
            path.rmdir()
        except OSError as e:
            raise StorageIOError("remove directory", str(e), context={"path": str(path)}) from e
        report.deleted += 1
        return True

    def _unlink(self, path: Path, report: SyncReport) -> None:
        try:
            path.unlink()
        except OSError as e:
            raise StorageIOError("remove file", str(e), context={"path": str(path)}) from e
        report.deleted += 1

    def _ensure_dir(self, path: Path) -> None:
        if path.is_dir() and not path.is_symlink():
            return
        try:
            if path.exists() or path.is_symlink():
                path.unlink()
            path.mkdir()
        except OSError as e:
            raise StorageIOError("create directory", str(e), context={"path": str(path)}) from e

    def _write_file(self, path: Path, entry: TreeEntry, report: SyncReport) -> None:
        if path.is_dir() and not path.is_symlink():
            # Survived pass 1 because it holds ignored entries
            raise StorageIOError(
                "write file",
                f"{path} is a directory containing ignored entries",
                context={"path": str(path)},
            )

        try:
            current = path.stat().st_mode if path.is_file() else None
            mode = _file_mode(current, entry.executable)
            if current is not None and hash_bytes(path.read_bytes()) == entry.hash:
                if stat.S_IMODE(current) == mode:
                    report.unchanged += 1
                    return
                path.chmod(mode)
                report.written += 1
                return
        except OSError as e:
            raise StorageIOError("write file", str(e), context={"path": str(path)}) from e

        # Replaced through a temp file, so read-only files are rewritten too
        result = atomic_write_bytes(path, self.store.get(entry.hash), mode=mode)
        if result.is_err():
            raise result.unwrap_err()
        report.written += 1
