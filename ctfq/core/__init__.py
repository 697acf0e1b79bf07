"""
CTFQ Core Module - Errors, query presets, and utilities.
"""

from ctfq.core.errors import (
    ErrorKind,
    TraceError,
    IOFailure,
    MalformedInput,
    EmptyInput,
    UnknownField,
    InvalidPattern,
)
from ctfq.core.config import QueryConfig, PresetRegistry
from ctfq.core.utils import Timer, ns_to_ms, ns_to_us, format_duration_ns

__all__ = [
    "ErrorKind",
    "TraceError",
    "IOFailure",
    "MalformedInput",
    "EmptyInput",
    "UnknownField",
    "InvalidPattern",
    "QueryConfig",
    "PresetRegistry",
    "Timer",
    "ns_to_ms",
    "ns_to_us",
    "format_duration_ns",
]
