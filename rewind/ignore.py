"""Ignore rules for capture and materialization.

Patterns use gitignore syntax (via the pathspec library):

- ``node_modules``  matches a file or directory of that name at any depth
- ``build/``        matches directories only
- ``*.log``         wildcards match basenames at any depth
- ``/config.json``  anchored to the project root
- ``!keep.log``     negation re-includes a path excluded earlier

Paths are always project-relative POSIX strings. Directories are tested
with a trailing slash so directory-only patterns apply to them.

The engine only depends on the ``matches(rel_path, is_dir)`` method, so any
object providing it can be passed wherever IgnoreRules is expected.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol

from pathspec import GitIgnoreSpec

logger = logging.getLogger(__name__)

# Never part of a snapshot, whatever the configuration says
ALWAYS_IGNORED = (".git", ".rewind")


class IgnorePredicate(Protocol):
    def matches(self, rel_path: str, is_dir: bool) -> bool: ...


class IgnoreRules:
    """Ordered list of gitignore-style patterns compiled into a GitIgnoreSpec."""

    def __init__(self, patterns: Iterable[str] = ()) -> None:
        cleaned: list[str] = []
        for line in patterns:
            line = line.strip()
            # Skip comments and empty lines
            if not line or line.startswith("#"):
                continue
            cleaned.append(line)
        self.patterns: tuple[str, ...] = tuple(cleaned)
        self._spec = GitIgnoreSpec.from_lines([*ALWAYS_IGNORED, *cleaned])

    def with_extra(self, *patterns: str) -> IgnoreRules:
        """Return a copy with additional patterns appended."""
        return IgnoreRules([*self.patterns, *patterns])

    def matches(self, rel_path: str, is_dir: bool = False) -> bool:
        """Check whether a project-relative path is ignored."""
        rel_path = rel_path.replace("\\", "/").strip("/")
        if not rel_path:
            return False
        if is_dir:
            rel_path += "/"
        return self._spec.match_file(rel_path)

    def __repr__(self) -> str:
        return f"IgnoreRules({list(self.patterns)!r})"
