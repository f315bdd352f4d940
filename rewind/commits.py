"""Append-only commit graph.

Each commit records one tree, at most one parent, a message and a UTC
timestamp. The commit id is the SHA-256 of the commit's canonical JSON::

    {"message":"...","parent":null,"timestamp":"...","tree":"<sha256>"}

so appending the same inputs twice yields the same id and writes nothing
new. Commits are stored sharded under ``commits/<sha2>/<sha62>``, separate
from blobs, which lets short-id resolution scan commits only.

With at most one parent per commit, history is a linked list: ``walk``
follows parent links and that order (newest first) is authoritative.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from rewind.atomic import atomic_write_bytes
from rewind.errors import AmbiguousError, CorruptError, NotFoundError, StorageIOError
from rewind.store import hash_bytes, is_valid_hash, iter_sharded, sharded_path
from rewind.types import CommitId, ObjectHash

logger = logging.getLogger(__name__)

_PREFIX_RE = re.compile(r"^[0-9a-f]+$")


@dataclass(frozen=True)
class Commit:
    id: CommitId
    tree: ObjectHash
    parent: CommitId | None
    message: str
    timestamp: str  # ISO-8601 UTC

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def time(self) -> datetime:
        return datetime.fromisoformat(self.timestamp)


def serialize_commit(tree: str, parent: str | None, message: str, timestamp: str) -> bytes:
    """Canonical commit bytes; the commit id is their SHA-256."""
    body = {"tree": tree, "parent": parent, "message": message, "timestamp": timestamp}
    text = json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return text.encode("utf-8")


class CommitGraph:
    """Stores commits and navigates parent links."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path(self, commit_id: str) -> Path:
        return sharded_path(self.root, commit_id)

    def append(
        self,
        tree: ObjectHash,
        parent: CommitId | None,
        message: str,
        timestamp: datetime,
    ) -> CommitId:
        """Store a commit and return its id.

        The id is a pure function of the arguments. Callers must have written
        the tree (and the parent commit) before calling this.

        Raises:
            StorageIOError: the commit could not be written
        """
        stamp = timestamp.isoformat(timespec="microseconds")
        data = serialize_commit(tree, parent, message, stamp)
        commit_id = CommitId(hash_bytes(data))

        path = self._path(commit_id)
        if not path.exists():
            result = atomic_write_bytes(path, data, mode=0o444)
            if result.is_err():
                raise result.unwrap_err()
            logger.debug(f"Appended commit {commit_id[:8]} (parent {parent[:8] if parent else 'none'})")

        return commit_id

    def read(self, commit_id: str) -> Commit:
        """Load a commit.

        Raises:
            NotFoundError: unknown commit id
            CorruptError: stored bytes fail verification or do not parse
        """
        if not is_valid_hash(commit_id):
            raise NotFoundError(f"Checkpoint {commit_id} not found", context={"id": commit_id})

        path = self._path(commit_id)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise NotFoundError(f"Checkpoint {commit_id} not found", context={"id": commit_id}) from None
        except OSError as e:
            raise StorageIOError("read commit", str(e), context={"id": commit_id}) from e

        if hash_bytes(data) != commit_id:
            raise CorruptError(f"Commit {commit_id} failed verification", context={"id": commit_id})

        try:
            body = json.loads(data.decode("utf-8"))
            return Commit(
                id=CommitId(commit_id),
                tree=ObjectHash(body["tree"]),
                parent=CommitId(body["parent"]) if body["parent"] else None,
                message=body["message"],
                timestamp=body["timestamp"],
            )
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError) as e:
            raise CorruptError(f"Commit {commit_id} is malformed: {e}", context={"id": commit_id}) from e

    def walk(self, start: CommitId | None, limit: int | None = None) -> list[Commit]:
        """Follow parent links from ``start``, newest first.

        ``start=None`` (no history yet) returns an empty list.
        """
        commits: list[Commit] = []
        seen: set[str] = set()
        current = start

        while current is not None and (limit is None or len(commits) < limit):
            if current in seen:
                # Only reachable through a hand-edited store
                raise CorruptError(f"Cycle in commit history at {current}", context={"id": current})
            seen.add(current)
            commit = self.read(current)
            commits.append(commit)
            current = commit.parent

        return commits

    def ids(self, prefix: str = "") -> Iterator[CommitId]:
        """Iterate over all stored commit ids (reachable or not)."""
        for digest in iter_sharded(self.root, prefix):
            yield CommitId(digest)

    def resolve_prefix(self, short_id: str) -> CommitId:
        """Expand a (possibly abbreviated) commit id.

        Raises:
            NotFoundError: nothing starts with ``short_id``
            AmbiguousError: two or more commits start with ``short_id``
        """
        prefix = short_id.strip().lower()
        if not prefix or not _PREFIX_RE.match(prefix):
            raise NotFoundError(f"Checkpoint {short_id} not found", context={"id": short_id})

        matches = list(self.ids(prefix))
        if not matches:
            raise NotFoundError(f"Checkpoint {short_id} not found", context={"id": short_id})
        if len(matches) > 1:
            raise AmbiguousError(short_id, sorted(matches))
        return matches[0]
