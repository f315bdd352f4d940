"""Storage root inspection and maintenance.

Works on whole project namespaces under ``<storage root>/projects/``; never
on individual objects inside a namespace (the engine never deletes those).
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

from rewind.config import get_config_path, get_projects_dir

logger = logging.getLogger(__name__)

_UNITS = ["B", "KB", "MB", "GB", "TB"]


def directory_size(path: Path) -> int:
    """Total size in bytes of the regular files below ``path``.

    Missing or unreadable directories count as 0.
    """
    path = Path(path)
    if not path.is_dir():
        return 0

    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for name in filenames:
            try:
                st = os.lstat(os.path.join(dirpath, name))
            except OSError:
                continue
            if stat.S_ISREG(st.st_mode):
                total += st.st_size
    return total


def format_bytes(num_bytes: int) -> str:
    """Human-readable size: ``0 B``, ``512 B``, ``1.5 KB``, ``2.25 MB``."""
    if num_bytes <= 0:
        return "0 B"
    index = 0
    value = float(num_bytes)
    while value >= 1024 and index < len(_UNITS) - 1:
        value /= 1024
        index += 1
    value = round(value, 2)
    return f"{value:g} {_UNITS[index]}"


@dataclass(frozen=True)
class StorageInfo:
    base_dir: Path
    total_projects: int
    total_bytes: int
    config_exists: bool


@dataclass(frozen=True)
class CleanupResult:
    removed_projects: int
    freed_bytes: int


@dataclass
class ValidationResult:
    issues: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.issues


def _project_dirs(rewind_dir: Path) -> list[Path]:
    projects_dir = get_projects_dir(rewind_dir)
    if not projects_dir.is_dir():
        return []
    return sorted(p for p in projects_dir.iterdir())


def storage_info(rewind_dir: Path) -> StorageInfo:
    """Summarize the storage root."""
    projects = [p for p in _project_dirs(rewind_dir) if p.is_dir()]
    return StorageInfo(
        base_dir=rewind_dir,
        total_projects=len(projects),
        total_bytes=sum(directory_size(p) for p in projects),
        config_exists=get_config_path(rewind_dir).exists(),
    )


def _last_activity(project_dir: Path) -> float:
    mtimes = [project_dir.stat().st_mtime]
    refs_dir = project_dir / "refs"
    if refs_dir.is_dir():
        mtimes.append(refs_dir.stat().st_mtime)
    return max(mtimes)


def remove_stale_projects(rewind_dir: Path, days: int, now: float | None = None) -> CleanupResult:
    """Delete whole project namespaces not modified in ``days`` days.

    Activity is the latest mtime of the namespace and its refs directory;
    every create or restore rewrites a ref, so this removes projects that
    have not been checkpointed or restored for a while.
    """
    cutoff = (now if now is not None else time.time()) - days * 86400
    removed = 0
    freed = 0

    for project_dir in _project_dirs(rewind_dir):
        if not project_dir.is_dir():
            continue
        if _last_activity(project_dir) >= cutoff:
            continue

        size = directory_size(project_dir)
        shutil.rmtree(project_dir)
        logger.info(f"Removed stale project namespace {project_dir.name} ({format_bytes(size)})")
        removed += 1
        freed += size

    return CleanupResult(removed_projects=removed, freed_bytes=freed)


def validate_storage(rewind_dir: Path) -> ValidationResult:
    """Check the storage root exists, is writable and is well-formed."""
    result = ValidationResult()

    if not rewind_dir.is_dir():
        result.issues.append("Base directory does not exist")
        result.suggestions.append("Run 'rewind create' or 'rewind setup' to initialize")
        return result

    try:
        with tempfile.TemporaryFile(dir=rewind_dir):
            pass
    except OSError:
        result.issues.append("No write permission to storage directory")
        result.suggestions.append("Check directory permissions or run with appropriate privileges")

    invalid = [p for p in _project_dirs(rewind_dir) if not p.is_dir()]
    if invalid:
        result.issues.append(f"Found {len(invalid)} invalid project entries")
        result.suggestions.append("Remove the non-directory entries under projects/")

    return result
