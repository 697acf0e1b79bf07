"""
CTFQ Trace Lake

Query engine over loaded CTF2 traces.
Loader -> {event-type index | callstack matcher -> {stats, flamegraph}}
"""

from ctfq.tracelake.trace import (
    Event,
    EventSchema,
    TimeRange,
    Trace,
    TraceMetadata,
    load_trace,
    list_event_names,
)

from ctfq.tracelake.event_index import (
    EventTypeCount,
    count_by_name,
)

from ctfq.tracelake.matcher import (
    CallRecord,
    CallstackMatcher,
    Diagnostic,
    DiagnosticKind,
    MatchMode,
    MatchResult,
    NamePattern,
    match_callstacks,
)

from ctfq.tracelake.stats import (
    STATS_HEADERS,
    StatsGrouping,
    StatsRow,
    StatsTable,
    aggregate,
)

from ctfq.tracelake.flamegraph import (
    FlameFrame,
    FlamegraphResult,
    FrameNaming,
    build_flamegraph,
)

from ctfq.tracelake.query_engine import (
    QueryResult,
    TraceCache,
    TraceQueryEngine,
    get_trace_info,
    get_event_type_counts,
    get_callstack_stats,
    get_flamegraph,
)

__all__ = [
    # Trace model
    "Event",
    "EventSchema",
    "TimeRange",
    "Trace",
    "TraceMetadata",
    "load_trace",
    "list_event_names",
    # Event index
    "EventTypeCount",
    "count_by_name",
    # Matcher
    "CallRecord",
    "CallstackMatcher",
    "Diagnostic",
    "DiagnosticKind",
    "MatchMode",
    "MatchResult",
    "NamePattern",
    "match_callstacks",
    # Stats
    "STATS_HEADERS",
    "StatsGrouping",
    "StatsRow",
    "StatsTable",
    "aggregate",
    # Flamegraph
    "FlameFrame",
    "FlamegraphResult",
    "FrameNaming",
    "build_flamegraph",
    # Query engine
    "QueryResult",
    "TraceCache",
    "TraceQueryEngine",
    "get_trace_info",
    "get_event_type_counts",
    "get_callstack_stats",
    "get_flamegraph",
]
