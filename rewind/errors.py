"""Error types for Rewind.

Two styles live side by side:

- ``RewindError`` and its subclasses are raised by the storage layer and the
  snapshot engine. They carry a stable ``code``, a human ``message`` and a
  ``context`` dict for diagnostics.
- ``Result`` (``Ok`` / ``Err``) values are returned by low-level helpers
  (atomic writes, settings edits) so callers can decide whether a failure
  is fatal. Storage code converts an ``Err`` into an exception with
  ``raise result.unwrap_err()``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


class RewindError(Exception):
    """Base class for all Rewind failures."""

    code = "REWIND_ERROR"

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        if code is not None:
            self.code = code


class NotFoundError(RewindError):
    """Unknown ref, commit, tree or blob."""

    code = "NOT_FOUND"


class AmbiguousError(RewindError):
    """A short id matched more than one commit."""

    code = "AMBIGUOUS"

    def __init__(self, prefix: str, matches: list[str]) -> None:
        super().__init__(
            f"Checkpoint id '{prefix}' is ambiguous ({len(matches)} matches)",
            context={"prefix": prefix, "matches": matches},
        )
        self.prefix = prefix
        self.matches = matches


class CorruptError(RewindError):
    """Stored bytes no longer match their digest."""

    code = "CORRUPT"


class NoPendingRestoreError(RewindError):
    """cancel_restore() called with no ORIG_HEAD recorded."""

    code = "NO_PENDING_RESTORE"

    def __init__(self) -> None:
        super().__init__("No restore to cancel - ORIG_HEAD not found")


class StorageIOError(RewindError):
    """A filesystem operation failed.

    ``operation`` names the step that failed (e.g. "write object").
    """

    code = "IO_ERROR"

    def __init__(self, operation: str, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(f"Operation '{operation}' failed: {message}", context=context)
        self.operation = operation


# =============================================================================
# Result type
# =============================================================================


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful result."""

    value: T

    @property
    def ok(self) -> bool:
        return True

    @property
    def error(self) -> None:
        return None

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self):
        raise ValueError("Called unwrap_err() on an Ok result")


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed result."""

    error: E

    @property
    def ok(self) -> bool:
        return False

    @property
    def value(self) -> None:
        return None

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self):
        if isinstance(self.error, BaseException):
            raise self.error
        raise ValueError(f"Called unwrap() on an Err result: {self.error}")

    def unwrap_err(self) -> E:
        return self.error


Result = Union[Ok[T], Err[E]]


def ok(value: T) -> Ok[T]:
    """Wrap a value in Ok."""
    return Ok(value)


def err(error: E) -> Err[E]:
    """Wrap an error in Err."""
    return Err(error)


def format_error(error: BaseException | RewindError) -> str:
    """Format an error for console output."""
    if isinstance(error, RewindError):
        return f"{error.message} [{error.code}]"
    return str(error)
