"""Snapshot engine: create, list, restore, cancel, diff and status.

State machine over two refs:

- ``HEAD`` moves on create (to the new commit) and on restore (to the
  target). It is the parent of the next checkpoint.
- ``ORIG_HEAD`` is the single undo slot. restore() writes it before moving
  HEAD or touching the working tree; cancel_restore() consumes it.

Sequencing rules:

- objects, trees and commits are durable before any ref moves
- the target tree is verified complete before any ref moves
- create() leaves ORIG_HEAD alone, so a pending undo survives later
  checkpoints (hook-driven checkpoints run before every prompt)

Checkpoint metadata lives in the commit message. A session is encoded as
``Session: <session-id> - <text>``; anything else reads back as the
``manual`` session.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterator
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import yaml

from rewind.atomic import atomic_write_yaml
from rewind.commits import Commit, CommitGraph
from rewind.config import RewindConfig, get_projects_dir
from rewind.errors import NoPendingRestoreError, NotFoundError, RewindError, format_error
from rewind.project import ProjectContext
from rewind.refs import HEAD, ORIG_HEAD, RefStore
from rewind.storage import directory_size
from rewind.store import ContentStore
from rewind.tree import DEFAULT_MAX_WORKERS, TreeBuilder, TreeEntry
from rewind.types import CommitId, ObjectHash
from rewind.worktree import WorkingTreeSync

logger = logging.getLogger(__name__)

MANUAL_SESSION = "manual"
SESSION_MESSAGE_RE = re.compile(r"^Session: ([A-Za-z0-9_-]+) - (.*)$", re.DOTALL)
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

PROJECT_META_FILENAME = "project.yaml"
ALL_PROJECTS_DEPTH = 50
ALL_PROJECTS_LIMIT = 50
UNKNOWN_PROJECT = "unknown"

ADDED = "added"
DELETED = "deleted"
MODIFIED = "modified"


@dataclass(frozen=True)
class Checkpoint:
    """A user-facing snapshot record derived from a commit."""

    id: CommitId
    session_id: str
    prompt_index: int | None
    message: str
    timestamp: str
    project_path: str

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class DiffEntry:
    type: str  # added | deleted | modified
    path: str


@dataclass(frozen=True)
class StatusInfo:
    project_path: str
    total_checkpoints: int
    latest: Checkpoint | None
    storage_bytes: int


def encode_message(message: str, session_id: str | None) -> str:
    """Fold a session id into a commit message.

    Messages already in session form, and the manual session, are stored
    as given.
    """
    if not session_id or session_id == MANUAL_SESSION or SESSION_MESSAGE_RE.match(message):
        return message
    if not _SESSION_ID_RE.match(session_id):
        raise ValueError(f"Invalid session id {session_id!r}: use letters, digits, '-' or '_'")
    return f"Session: {session_id} - {message}"


def parse_checkpoint(commit: Commit, project_path: str, prompt_index: int | None = None) -> Checkpoint:
    """Rebuild a Checkpoint from a commit's message."""
    match = SESSION_MESSAGE_RE.match(commit.message)
    if match:
        session_id, text = match.group(1), match.group(2)
    else:
        session_id, text = MANUAL_SESSION, commit.message

    return Checkpoint(
        id=commit.id,
        session_id=session_id,
        prompt_index=prompt_index,
        message=text,
        timestamp=commit.timestamp,
        project_path=project_path,
    )


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _read_project_path(namespace_dir: Path) -> str:
    meta_path = namespace_dir / PROJECT_META_FILENAME
    try:
        with open(meta_path) as f:
            meta = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return UNKNOWN_PROJECT
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Unreadable {meta_path}: {e}")
        return UNKNOWN_PROJECT
    path = meta.get("path") if isinstance(meta, dict) else None
    return path if isinstance(path, str) else UNKNOWN_PROJECT


class SnapshotEngine:
    """Undoable snapshots of one project directory."""

    def __init__(
        self,
        context: ProjectContext,
        clock: Callable[[], datetime] | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self.context = context
        self.clock = clock or _utcnow

        namespace = context.namespace_dir
        self.store = ContentStore(namespace / "objects")
        self.builder = TreeBuilder(self.store, context.ignore, max_workers=max_workers)
        self.commits = CommitGraph(namespace / "commits")
        self.refs = RefStore(namespace / "refs")
        self.sync = WorkingTreeSync(self.builder)

    @classmethod
    def for_project(
        cls,
        project_root: Path | str,
        config: RewindConfig,
        storage_root: Path | None = None,
    ) -> SnapshotEngine:
        """Build an engine from user configuration."""
        context = ProjectContext.create(
            project_root,
            storage_root=storage_root,
            ignore_patterns=config.all_ignore_patterns(),
        )
        return cls(context)

    @property
    def project_root(self) -> Path:
        return self.context.project_root

    @property
    def project_path(self) -> str:
        return str(self.context.project_root)

    # -------------------------------------------------------------------------
    # Create / read
    # -------------------------------------------------------------------------

    def create(
        self,
        message: str,
        session_id: str | None = None,
        prompt_index: int | None = None,
    ) -> Checkpoint:
        """Capture the project tree as a new checkpoint on top of HEAD.

        Raises:
            StorageIOError: the tree could not be read or stored
        """
        stored_message = encode_message(message, session_id)

        tree = self.sync.capture(self.project_root)
        parent = self.refs.get(HEAD)
        commit_id = self.commits.append(tree, parent, stored_message, self.clock())
        self._ensure_project_meta()
        self.refs.set(HEAD, commit_id)

        checkpoint = parse_checkpoint(self.commits.read(commit_id), self.project_path, prompt_index)
        logger.info(f"Created checkpoint {checkpoint.short_id}: {checkpoint.message}")
        return checkpoint

    def _ensure_project_meta(self) -> None:
        meta_path = self.context.namespace_dir / PROJECT_META_FILENAME
        if meta_path.exists():
            return
        meta = {"path": self.project_path, "created": self.clock().isoformat()}
        result = atomic_write_yaml(meta_path, meta)
        if result.is_err():
            raise result.unwrap_err()

    def get_current(self) -> CommitId | None:
        return self.refs.get(HEAD)

    def list(
        self,
        session_prefix: str | None = None,
        limit: int | None = None,
        all_projects: bool = False,
    ) -> list[Checkpoint]:
        """Checkpoints reachable from HEAD, newest first.

        Order is the parent-link order, never a timestamp sort, so
        checkpoints created within the same clock tick keep their order.
        """
        if all_projects:
            return self._list_all_projects(session_prefix, limit)

        # Filtering happens after the walk, so only bound it when unfiltered
        depth = limit if session_prefix is None else None
        commits = self.commits.walk(self.refs.get(HEAD), depth)
        checkpoints = [parse_checkpoint(c, self.project_path) for c in commits]
        return _filter(checkpoints, session_prefix, limit)

    def _list_all_projects(self, session_prefix: str | None, limit: int | None) -> list[Checkpoint]:
        projects_dir = get_projects_dir(self.context.storage_root)
        if not projects_dir.is_dir():
            return []

        checkpoints: list[Checkpoint] = []
        for namespace in sorted(p for p in projects_dir.iterdir() if p.is_dir()):
            graph = CommitGraph(namespace / "commits")
            try:
                head = RefStore(namespace / "refs").get(HEAD)
                commits = graph.walk(head, ALL_PROJECTS_DEPTH)
            except RewindError as e:
                logger.warning(f"Skipping unreadable project {namespace.name}: {format_error(e)}")
                continue
            project_path = _read_project_path(namespace)
            checkpoints.extend(parse_checkpoint(c, project_path) for c in commits)

        # Stable: equal timestamps keep each project's walk order
        checkpoints.sort(key=lambda cp: cp.timestamp, reverse=True)
        return _filter(checkpoints, session_prefix, limit or ALL_PROJECTS_LIMIT)

    # -------------------------------------------------------------------------
    # Restore / cancel
    # -------------------------------------------------------------------------

    def restore(self, id_or_prefix: str) -> None:
        """Reset HEAD and the working tree to a checkpoint.

        The previous HEAD is saved to ORIG_HEAD first, so cancel_restore()
        can undo this.

        Raises:
            NotFoundError: no checkpoint matches
            AmbiguousError: the short id matches several checkpoints
        """
        target_id = self.commits.resolve_prefix(id_or_prefix)
        target = self.commits.read(target_id)
        self.sync.verify(target.tree)

        current = self.refs.get(HEAD)
        if current is not None:
            self.refs.set(ORIG_HEAD, current)
        else:
            self.refs.delete(ORIG_HEAD)
        self.refs.set(HEAD, target_id)

        self.sync.materialize(target.tree, self.project_root, verify=False)
        logger.info(f"Restored checkpoint {target_id[:8]}")

    def cancel_restore(self) -> None:
        """Undo the most recent restore.

        Single level: the undo slot is cleared afterwards, so a second call
        fails until another restore happens.

        Raises:
            NoPendingRestoreError: there is no restore to undo
        """
        original = self.refs.get(ORIG_HEAD)
        if original is None:
            raise NoPendingRestoreError()

        commit = self.commits.read(original)
        self.sync.verify(commit.tree)

        self.refs.set(HEAD, original)
        self.sync.materialize(commit.tree, self.project_root, verify=False)
        self.refs.delete(ORIG_HEAD)
        logger.info(f"Cancelled restore, back at {original[:8]}")

    # -------------------------------------------------------------------------
    # Diff / status
    # -------------------------------------------------------------------------

    def diff(self, id_or_prefix: str) -> list[DiffEntry]:
        """Path-level changes from a checkpoint to HEAD.

        ``deleted``: only in the checkpoint. ``added``: only in HEAD.
        ``modified``: in both with different content. Stored trees only;
        the working tree is not read.

        Raises:
            NotFoundError: no checkpoint matches, or there is no HEAD
            AmbiguousError: the short id matches several checkpoints
        """
        target = self.commits.read(self.commits.resolve_prefix(id_or_prefix))
        head = self.refs.get(HEAD)
        if head is None:
            raise NotFoundError("No current checkpoint (HEAD is not set)", context={"ref": HEAD})
        current = self.commits.read(head)
        return list(self._diff_trees(target.tree, current.tree, ""))

    def _diff_trees(self, old: ObjectHash, new: ObjectHash, prefix: str) -> Iterator[DiffEntry]:
        if old == new:
            return

        old_entries = self.builder.read(old).by_name()
        new_entries = self.builder.read(new).by_name()

        for name in sorted(old_entries.keys() | new_entries.keys()):
            path = f"{prefix}/{name}" if prefix else name
            a = old_entries.get(name)
            b = new_entries.get(name)

            if b is None:
                yield from self._expand(a, path, DELETED)
            elif a is None:
                yield from self._expand(b, path, ADDED)
            elif a.is_dir and b.is_dir:
                yield from self._diff_trees(a.hash, b.hash, path)
            elif not a.is_dir and not b.is_dir:
                if a.hash != b.hash or a.executable != b.executable:
                    yield DiffEntry(MODIFIED, path)
            else:
                # File replaced by a directory or the other way round
                yield from self._expand(a, path, DELETED)
                yield from self._expand(b, path, ADDED)

    def _expand(self, entry: TreeEntry, path: str, change: str) -> Iterator[DiffEntry]:
        """One entry per file below ``entry`` (or the entry itself)."""
        if not entry.is_dir:
            yield DiffEntry(change, path)
            return
        leaves = list(self.builder.iter_leaves(entry.hash, path))
        if not leaves:
            yield DiffEntry(change, path)
        for leaf_path, _leaf in leaves:
            yield DiffEntry(change, leaf_path)

    def status(self) -> StatusInfo:
        commits = self.commits.walk(self.refs.get(HEAD))
        latest = parse_checkpoint(commits[0], self.project_path) if commits else None
        return StatusInfo(
            project_path=self.project_path,
            total_checkpoints=len(commits),
            latest=latest,
            storage_bytes=directory_size(self.context.namespace_dir),
        )

    def count_older_than(self, days: int) -> int:
        """Count reachable checkpoints older than ``days`` days.

        Report only: nothing is deleted. Removing history would mean
        rewriting parent links, which this engine never does.
        """
        cutoff = self.clock() - timedelta(days=days)
        return sum(1 for c in self.commits.walk(self.refs.get(HEAD)) if c.time < cutoff)


def _filter(checkpoints: list[Checkpoint], session_prefix: str | None, limit: int | None) -> list[Checkpoint]:
    if session_prefix:
        checkpoints = [cp for cp in checkpoints if cp.session_id.startswith(session_prefix)]
    if limit is not None:
        checkpoints = checkpoints[:limit]
    return checkpoints
