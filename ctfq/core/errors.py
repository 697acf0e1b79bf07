"""
CTFQ Error Hierarchy

Every failure the engine reports maps to one ErrorKind. The kind's value
is the short machine-readable reason string returned by the query engine.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Failure categories surfaced to callers."""

    IO_FAILURE = "io-failure"
    MALFORMED_INPUT = "malformed-input"
    EMPTY_INPUT = "empty-input"
    UNKNOWN_FIELD = "unknown-field"
    INVALID_PATTERN = "invalid-pattern"


class TraceError(Exception):
    """Base error for all trace loading and query failures."""

    kind: ErrorKind = ErrorKind.MALFORMED_INPUT

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details: Dict[str, Any] = details or {}

    @property
    def reason(self) -> str:
        return self.kind.value

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, kind={self.kind.value!r})"


class IOFailure(TraceError):
    """Trace directory or one of its segment files is unreadable."""

    kind = ErrorKind.IO_FAILURE

    def __init__(self, message: str, *, path: Optional[str] = None) -> None:
        super().__init__(message, details={"path": path} if path else None)
        self.path = path


class MalformedInput(TraceError):
    """File content violates the CTF2 encoding."""

    kind = ErrorKind.MALFORMED_INPUT


class EmptyInput(TraceError):
    """The trace holds no data streams or no events."""

    kind = ErrorKind.EMPTY_INPUT


class UnknownField(TraceError):
    """A requested field name never appears in the trace's field catalog."""

    kind = ErrorKind.UNKNOWN_FIELD

    def __init__(self, field_name: str) -> None:
        super().__init__(
            f"Field '{field_name}' is not present in the trace",
            details={"field": field_name},
        )
        self.field_name = field_name


class InvalidPattern(TraceError):
    """A regular expression event pattern does not compile."""

    kind = ErrorKind.INVALID_PATTERN

    def __init__(self, pattern: str, error: str) -> None:
        super().__init__(
            f"Invalid event name pattern '{pattern}': {error}",
            details={"pattern": pattern},
        )
        self.pattern = pattern
