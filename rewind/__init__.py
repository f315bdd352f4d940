"""Rewind: undoable snapshots of a project directory."""

__version__ = "0.1.0"

# Branded types for type-safe IDs
from rewind.types import CommitId, ObjectHash, ProjectId

__all__ = [
    "__version__",
    "CommitId",
    "ObjectHash",
    "ProjectId",
]
