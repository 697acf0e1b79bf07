"""
CTF Query (CTFQ)

Trace query engine for CTF2 trace directories: trace metadata, event-type
distribution, entry/exit callstack reconstruction, per-callsite duration
statistics and flamegraphs.
"""

__version__ = "1.0.0"

from ctfq.core.errors import (
    TraceError,
    IOFailure,
    MalformedInput,
    EmptyInput,
    UnknownField,
    InvalidPattern,
)
from ctfq.core.config import QueryConfig, PresetRegistry
from ctfq.tracelake import (
    Trace,
    Event,
    TimeRange,
    load_trace,
    list_event_names,
    count_by_name,
    MatchMode,
    NamePattern,
    CallRecord,
    match_callstacks,
    aggregate,
    build_flamegraph,
    QueryResult,
    TraceQueryEngine,
    get_trace_info,
    get_event_type_counts,
    get_callstack_stats,
    get_flamegraph,
)

__all__ = [
    "__version__",
    # Errors
    "TraceError",
    "IOFailure",
    "MalformedInput",
    "EmptyInput",
    "UnknownField",
    "InvalidPattern",
    # Config
    "QueryConfig",
    "PresetRegistry",
    # Engine
    "Trace",
    "Event",
    "TimeRange",
    "load_trace",
    "list_event_names",
    "count_by_name",
    "MatchMode",
    "NamePattern",
    "CallRecord",
    "match_callstacks",
    "aggregate",
    "build_flamegraph",
    "QueryResult",
    "TraceQueryEngine",
    "get_trace_info",
    "get_event_type_counts",
    "get_callstack_stats",
    "get_flamegraph",
]
