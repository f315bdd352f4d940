"""Content-addressed object store.

Objects (file blobs and serialized trees) are stored under their SHA-256
digest using a two-character sharded layout::

    objects/<sha2>/<sha62>

The store is append-only: writing the same bytes twice is a no-op, and an
object is never modified once written. Every read re-hashes the bytes, so
on-disk corruption surfaces as CorruptError instead of a wrong restore.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Iterator
from pathlib import Path

from rewind.atomic import atomic_write_bytes
from rewind.errors import CorruptError, NotFoundError, StorageIOError
from rewind.types import ObjectHash

logger = logging.getLogger(__name__)

_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


def hash_bytes(data: bytes) -> ObjectHash:
    """SHA-256 hex digest of raw bytes."""
    return ObjectHash(hashlib.sha256(data).hexdigest())


def is_valid_hash(value: str) -> bool:
    return bool(_HASH_RE.match(value))


def sharded_path(root: Path, digest: str) -> Path:
    """Return ``root/<first 2>/<remaining 62>`` for a digest."""
    return root / digest[:2] / digest[2:]


def iter_sharded(root: Path, prefix: str = "") -> Iterator[str]:
    """Yield every digest stored in a sharded directory.

    Narrows the scan to a single shard when the prefix has 2+ characters.
    Temp files left by interrupted writes are skipped.
    """
    if not root.is_dir():
        return

    if len(prefix) >= 2:
        shards = [root / prefix[:2]]
    else:
        shards = sorted(p for p in root.iterdir() if p.is_dir() and p.name.startswith(prefix))

    for shard in shards:
        if not shard.is_dir():
            continue
        for entry in sorted(shard.iterdir()):
            digest = shard.name + entry.name
            if is_valid_hash(digest) and digest.startswith(prefix):
                yield digest


class ContentStore:
    """Immutable blobs addressed by the SHA-256 of their bytes."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path(self, digest: str) -> Path:
        return sharded_path(self.root, digest)

    def has(self, digest: str) -> bool:
        return is_valid_hash(digest) and self._path(digest).is_file()

    def put(self, data: bytes) -> ObjectHash:
        """Store bytes and return their digest.

        Idempotent: if the object already exists nothing is written.

        Raises:
            StorageIOError: the object could not be written
        """
        digest = hash_bytes(data)
        path = self._path(digest)
        if path.exists():
            return digest

        result = atomic_write_bytes(path, data, mode=0o444)
        if result.is_err():
            raise result.unwrap_err()

        logger.debug(f"Stored object {digest[:12]} ({len(data)} bytes)")
        return digest

    def get(self, digest: str) -> bytes:
        """Read an object back, verifying its digest.

        Raises:
            NotFoundError: no object with this digest
            CorruptError: stored bytes no longer match the digest
            StorageIOError: the object exists but could not be read
        """
        if not is_valid_hash(digest):
            raise NotFoundError(f"Object {digest!r} not found", context={"hash": digest})

        path = self._path(digest)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise NotFoundError(f"Object {digest} not found", context={"hash": digest}) from None
        except OSError as e:
            raise StorageIOError("read object", str(e), context={"hash": digest}) from e

        actual = hash_bytes(data)
        if actual != digest:
            logger.error(f"Object {digest} is corrupt (hashes to {actual})")
            raise CorruptError(
                f"Object {digest} failed verification",
                context={"hash": digest, "actual": actual, "path": str(path)},
            )
        return data

