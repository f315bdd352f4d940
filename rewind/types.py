"""Branded identifier types.

These are plain strings at runtime; the NewType wrappers keep object hashes,
commit ids and project ids from being mixed up in signatures.
"""

from typing import NewType

ObjectHash = NewType("ObjectHash", str)
CommitId = NewType("CommitId", str)
ProjectId = NewType("ProjectId", str)

__all__ = ["ObjectHash", "CommitId", "ProjectId"]
