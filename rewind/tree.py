"""Tree objects and the directory scanner that builds them.

A tree is one directory level: a name-sorted list of entries, each either a
file (pointing at a blob) or a directory (pointing at another tree). Its
canonical form is compact UTF-8 JSON::

    [["README.md","file","<sha256>"],["run.sh","file","<sha256>",true],
     ["src","directory","<sha256>"]]

and it is stored in the ContentStore like any other blob, so two directories
with the same post-filter contents always get the same hash wherever they
appear in history. The optional fourth column marks an executable file; it
is omitted for plain files.

Symlinks and special files (FIFOs, sockets, devices) are skipped: they are
never captured and WorkingTreeSync leaves them alone.
"""

from __future__ import annotations

import json
import logging
import os
import stat
from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from rewind.errors import CorruptError, StorageIOError
from rewind.ignore import IgnorePredicate, IgnoreRules
from rewind.store import ContentStore, is_valid_hash
from rewind.types import ObjectHash

logger = logging.getLogger(__name__)

FILE = "file"
DIRECTORY = "directory"
_KINDS = (FILE, DIRECTORY)

DEFAULT_MAX_WORKERS = 8


def is_executable_mode(st_mode: int) -> bool:
    return bool(st_mode & stat.S_IXUSR)


@dataclass(frozen=True)
class TreeEntry:
    name: str
    kind: str  # "file" | "directory"
    hash: ObjectHash
    executable: bool = False

    @property
    def is_dir(self) -> bool:
        return self.kind == DIRECTORY


@dataclass(frozen=True)
class Tree:
    """One directory level, entries sorted by name."""

    entries: tuple[TreeEntry, ...] = ()

    @classmethod
    def of(cls, entries: list[TreeEntry]) -> Tree:
        return cls(tuple(sorted(entries, key=lambda e: e.name)))

    def by_name(self) -> dict[str, TreeEntry]:
        return {entry.name: entry for entry in self.entries}

    def __iter__(self) -> Iterator[TreeEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def serialize(self) -> bytes:
        """Canonical bytes; the tree's identity is their SHA-256."""
        rows = [_row(e) for e in sorted(self.entries, key=lambda e: e.name)]
        text = json.dumps(rows, separators=(",", ":"), ensure_ascii=False)
        # Undecodable file names survive as surrogate escapes
        return text.encode("utf-8", "surrogateescape")

    @classmethod
    def parse(cls, data: bytes, digest: str = "") -> Tree:
        """Parse canonical bytes back into a Tree.

        Raises:
            CorruptError: the bytes are not a well-formed tree
        """
        try:
            rows = json.loads(data.decode("utf-8", "surrogateescape"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptError(f"Object {digest} is not a tree: {e}", context={"hash": digest}) from e

        if not isinstance(rows, list):
            raise CorruptError(f"Object {digest} is not a tree", context={"hash": digest})

        entries = []
        for row in rows:
            if (
                not isinstance(row, list)
                or len(row) not in (3, 4)
                or not all(isinstance(v, str) for v in row[:3])
                or row[1] not in _KINDS
                or not is_valid_hash(row[2])
                or (len(row) == 4 and (row[3] is not True or row[1] != FILE))
            ):
                raise CorruptError(f"Malformed entry in tree {digest}: {row!r}", context={"hash": digest})
            entries.append(TreeEntry(row[0], row[1], ObjectHash(row[2]), executable=len(row) == 4))
        return cls.of(entries)


def _row(entry: TreeEntry) -> list:
    if entry.executable:
        return [entry.name, entry.kind, entry.hash, True]
    return [entry.name, entry.kind, entry.hash]


class TreeBuilder:
    """Turns a filtered directory into stored tree objects."""

    def __init__(
        self,
        store: ContentStore,
        ignore: IgnorePredicate | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self.store = store
        self.ignore = ignore if ignore is not None else IgnoreRules()
        self.max_workers = max_workers

    # -------------------------------------------------------------------------
    # Writing
    # -------------------------------------------------------------------------

    def write_tree(self, tree: Tree) -> ObjectHash:
        return self.store.put(tree.serialize())

    def build(self, directory: Path) -> ObjectHash:
        """Scan a directory recursively and return its root tree hash.

        File contents are hashed and stored on a thread pool; results are
        gathered in name order, so the tree is identical to a sequential
        build.

        Raises:
            StorageIOError: a directory or file could not be read
        """
        directory = Path(directory)
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            return self._build_dir(directory, "", executor)

    def _build_dir(self, path: Path, rel: str, executor: ThreadPoolExecutor) -> ObjectHash:
        files, dirs = self._scan(path, rel)

        pending: list[tuple[str, Future[tuple[ObjectHash, bool]]]] = [
            (name, executor.submit(self._put_file, full)) for name, full in files
        ]

        entries: list[TreeEntry] = []
        for name, full in dirs:
            child_rel = f"{rel}/{name}" if rel else name
            entries.append(TreeEntry(name, DIRECTORY, self._build_dir(full, child_rel, executor)))

        for name, future in pending:
            digest, executable = future.result()
            entries.append(TreeEntry(name, FILE, digest, executable))

        return self.write_tree(Tree.of(entries))

    def _scan(self, path: Path, rel: str) -> tuple[list[tuple[str, Path]], list[tuple[str, Path]]]:
        """List the non-ignored regular files and directories of one level."""
        files: list[tuple[str, Path]] = []
        dirs: list[tuple[str, Path]] = []

        try:
            with os.scandir(path) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            logger.error(f"Cannot list {path}: {e}")
            raise StorageIOError("scan directory", str(e), context={"path": str(path)}) from e

        for entry in entries:
            child_rel = f"{rel}/{entry.name}" if rel else entry.name
            if entry.is_symlink():
                logger.debug(f"Skipping symlink: {child_rel}")
                continue
            if entry.is_dir(follow_symlinks=False):
                if not self.ignore.matches(child_rel, True):
                    dirs.append((entry.name, Path(entry.path)))
            elif entry.is_file(follow_symlinks=False):
                if not self.ignore.matches(child_rel, False):
                    files.append((entry.name, Path(entry.path)))
            else:
                logger.debug(f"Skipping special file: {child_rel}")

        return files, dirs

    def _put_file(self, path: Path) -> tuple[ObjectHash, bool]:
        try:
            data = path.read_bytes()
            executable = is_executable_mode(path.stat().st_mode)
        except OSError as e:
            logger.error(f"Cannot read {path}: {e}")
            raise StorageIOError("read file", str(e), context={"path": str(path)}) from e
        return self.store.put(data), executable

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    def read(self, digest: str) -> Tree:
        """Load a stored tree.

        Raises:
            NotFoundError: no such object
            CorruptError: the object is damaged or not a tree
        """
        return Tree.parse(self.store.get(digest), digest)

    def iter_leaves(self, digest: str, prefix: str = "") -> Iterator[tuple[str, TreeEntry]]:
        """Yield ``(path, entry)`` for every file and every empty directory."""
        tree = self.read(digest)
        for entry in tree:
            path = f"{prefix}/{entry.name}" if prefix else entry.name
            if entry.is_dir:
                subtree_leaves = self.iter_leaves(entry.hash, path)
                first = next(subtree_leaves, None)
                if first is None:
                    yield path, entry
                    continue
                yield first
                yield from subtree_leaves
            else:
                yield path, entry
