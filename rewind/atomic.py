"""Atomic file write utilities for Rewind.

Every persisted write in the storage layer (objects, commits, refs, config)
and every file materialize writes into a project goes through here. Uses
the temp file + fsync + rename pattern, which is atomic on POSIX systems: a
reader sees either the old file or the complete new one, never a partial
write.

All functions return Result types; the storage layer converts an Err into
a raised StorageIOError.

Security:
- Files are created with 0o600 permissions by default
- Parent directories are created with 0o700 permissions
- Temp files are cleaned up on failure
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from rewind.errors import Err, Ok, Result, StorageIOError

logger = logging.getLogger(__name__)


def atomic_write_bytes(
    path: Path,
    data: bytes,
    mode: int = 0o600,
) -> Result[Path, StorageIOError]:
    """Atomically write bytes to a file.

    Creates parent directories if they don't exist. The temp file lives in
    the target directory so the final rename never crosses filesystems.

    Args:
        path: Target file path
        data: Bytes to write
        mode: File permissions (default 0o600 - owner read/write only)

    Returns:
        Ok(path) on success, Err(StorageIOError) on failure
    """
    path = Path(path)
    temp_path: str | None = None

    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.name}_",
            suffix=".tmp",
        )

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())

            os.chmod(temp_path, mode)
            os.replace(temp_path, path)

            logger.debug(f"Atomic write complete: {path}")
            return Ok(path)

        except Exception:
            _cleanup_temp(temp_path)
            raise

    except PermissionError as e:
        logger.error(f"Permission denied writing {path}: {e}")
        return Err(
            StorageIOError(
                "atomic write",
                f"Permission denied writing to {path}",
                context={"path": str(path)},
            )
        )

    except OSError as e:
        logger.error(f"OS error writing {path}: {e}")
        return Err(
            StorageIOError(
                "atomic write",
                f"Failed to write {path}: {e}",
                context={"path": str(path), "error": str(e)},
            )
        )


def atomic_write_text(
    path: Path,
    content: str,
    mode: int = 0o600,
) -> Result[Path, StorageIOError]:
    """Atomically write UTF-8 text to a file.

    Example:
        result = atomic_write_text(Path("/path/to/HEAD"), commit_id + "\\n")
        if result.is_err():
            raise result.unwrap_err()
    """
    return atomic_write_bytes(path, content.encode("utf-8"), mode)


def atomic_write_json(
    path: Path,
    data: Any,
    mode: int = 0o600,
    indent: int | None = 2,
) -> Result[Path, StorageIOError]:
    """Atomically write JSON data to a file."""
    try:
        content = json.dumps(data, indent=indent, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        logger.error(f"JSON serialization failed: {e}")
        return Err(
            StorageIOError(
                "serialize json",
                f"Failed to serialize data to JSON: {e}",
                context={"path": str(path)},
            )
        )

    return atomic_write_text(path, content + "\n", mode)


def atomic_write_yaml(
    path: Path,
    data: Any,
    mode: int = 0o600,
) -> Result[Path, StorageIOError]:
    """Atomically write YAML data to a file.

    Uses yaml.safe_dump (no arbitrary Python objects).
    """
    try:
        content = yaml.safe_dump(
            data,
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )
    except yaml.YAMLError as e:
        logger.error(f"YAML serialization failed: {e}")
        return Err(
            StorageIOError(
                "serialize yaml",
                f"Failed to serialize data to YAML: {e}",
                context={"path": str(path)},
            )
        )

    return atomic_write_text(path, content, mode)


def _cleanup_temp(temp_path: str | None) -> None:
    """Remove a leftover temp file, ignoring errors."""
    if temp_path is None:
        return

    try:
        os.unlink(temp_path)
        logger.debug(f"Cleaned up temp file: {temp_path}")
    except OSError:
        # Already gone
        pass
