"""Project identity and the per-call context handed to the engine.

A project is identified by a short digest of its resolved absolute path, so
the same directory always maps to the same storage namespace no matter how
it was spelled (relative path, symlink, ``..`` segments).
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path

from rewind.config import CONFIG_FILENAME, PROJECTS_DIRNAME, get_projects_dir, get_rewind_dir
from rewind.ignore import IgnoreRules
from rewind.types import ProjectId

logger = logging.getLogger(__name__)

PROJECT_ID_LENGTH = 16


def canonical_project_path(project_path: Path | str) -> Path:
    """Resolve symlinks and relative segments into an absolute path."""
    return Path(project_path).expanduser().resolve()


def get_project_id(project_path: Path | str) -> ProjectId:
    """Stable project id: prefix of SHA-256 over the canonical path."""
    canonical = str(canonical_project_path(project_path))
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return ProjectId(digest[:PROJECT_ID_LENGTH])


@dataclass(frozen=True)
class ProjectContext:
    """Everything the engine needs to know about one project.

    Built once by the caller (CLI, hook, tests) and passed in explicitly.

    Attributes:
        project_root: Canonical project directory
        storage_root: Rewind storage root (contains ``projects/``)
        ignore: Ignore rules applied in both sync directions
    """

    project_root: Path
    storage_root: Path
    ignore: IgnoreRules = field(default_factory=IgnoreRules)

    @classmethod
    def create(
        cls,
        project_root: Path | str,
        storage_root: Path | None = None,
        ignore_patterns: list[str] | None = None,
    ) -> ProjectContext:
        """Build a context, canonicalizing paths.

        If the storage root lives inside the project, it is added to the
        ignore rules so snapshots never capture their own storage. When the
        two are the same directory, the storage entries themselves are
        ignored instead.
        """
        root = canonical_project_path(project_root)
        storage = canonical_project_path(storage_root or get_rewind_dir())
        ignore = IgnoreRules(ignore_patterns or [])

        if storage == root:
            ignore = ignore.with_extra(f"/{PROJECTS_DIRNAME}/", f"/{CONFIG_FILENAME}")
        elif storage.is_relative_to(root):
            ignore = ignore.with_extra("/" + storage.relative_to(root).as_posix() + "/")

        return cls(project_root=root, storage_root=storage, ignore=ignore)

    @property
    def project_id(self) -> ProjectId:
        return get_project_id(self.project_root)

    @property
    def namespace_dir(self) -> Path:
        """Storage namespace holding this project's objects, commits and refs."""
        return get_projects_dir(self.storage_root) / self.project_id
