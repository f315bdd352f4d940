"""Named, mutable pointers to commits.

Only two refs exist:

- ``HEAD``: the checkpoint the working tree currently corresponds to
- ``ORIG_HEAD``: the single undo slot, written just before a restore

Each ref is a one-line text file under ``refs/``. Writes go through the
atomic temp + rename helper, so a ref is never observed half-written.
"""

from __future__ import annotations

import logging
from pathlib import Path

from rewind.atomic import atomic_write_text
from rewind.errors import CorruptError, StorageIOError
from rewind.store import is_valid_hash
from rewind.types import CommitId

logger = logging.getLogger(__name__)

HEAD = "HEAD"
ORIG_HEAD = "ORIG_HEAD"
REF_NAMES = (HEAD, ORIG_HEAD)


def _check_name(name: str) -> None:
    if name not in REF_NAMES:
        raise ValueError(f"Unknown ref {name!r}; expected one of {REF_NAMES}")


class RefStore:
    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path(self, name: str) -> Path:
        _check_name(name)
        return self.root / name

    def get(self, name: str) -> CommitId | None:
        """Return the commit id a ref points to, or None if unset."""
        path = self._path(name)
        try:
            value = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageIOError(f"read ref {name}", str(e), context={"path": str(path)}) from e

        if not is_valid_hash(value):
            raise CorruptError(f"Ref {name} holds an invalid id: {value!r}", context={"ref": name})
        return CommitId(value)

    def set(self, name: str, commit_id: CommitId) -> None:
        """Point a ref at a commit, replacing any previous value."""
        if not is_valid_hash(commit_id):
            raise ValueError(f"Not a commit id: {commit_id!r}")

        result = atomic_write_text(self._path(name), commit_id + "\n")
        if result.is_err():
            raise result.unwrap_err()
        logger.debug(f"{name} -> {commit_id[:8]}")

    def delete(self, name: str) -> None:
        """Remove a ref. Deleting an unset ref is a no-op."""
        path = self._path(name)
        try:
            path.unlink()
            logger.debug(f"{name} deleted")
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageIOError(f"delete ref {name}", str(e), context={"path": str(path)}) from e
