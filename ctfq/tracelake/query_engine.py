"""
CTFQ Trace Query Engine

The four query entry points over trace directories:

    get_trace_info          metadata and event catalog
    get_event_type_counts   events per event name
    get_callstack_stats     per-callsite duration statistics
    get_flamegraph          nested call frames

Each returns a QueryResult. Failures carry a non-zero rc and a short
machine-readable reason and are never raised; an empty result is a
success. Loaded traces are cached per directory.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ctfq.core.errors import TraceError
from ctfq.core.utils import Timer
from ctfq.tracelake.event_index import count_by_name
from ctfq.tracelake.flamegraph import FrameNaming, build_flamegraph
from ctfq.tracelake.matcher import Diagnostic, MatchMode, MatchResult, NamePattern, match_callstacks
from ctfq.tracelake.stats import StatsGrouping, aggregate
from ctfq.tracelake.trace import TimeRange, Trace, list_event_names, load_trace

logger = logging.getLogger(__name__)

RC_OK = 0
RC_FAILURE = 1


@dataclass
class QueryResult:
    """Outcome of one query: a result, or a failure reason."""

    rc: int
    result: Any = None
    reason: Optional[str] = None
    message: Optional[str] = None
    diagnostics: List[Diagnostic] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.rc == RC_OK

    @classmethod
    def failure(cls, error: TraceError) -> "QueryResult":
        return cls(rc=RC_FAILURE, reason=error.reason, message=str(error))

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"rc": self.rc, "dur": self.duration_ms}
        if self.ok:
            d["res"] = self.result
            d["diagnostics"] = [diag.to_dict() for diag in self.diagnostics]
            if self.summary:
                d["summary"] = self.summary
        else:
            d["reason"] = self.reason
            d["err"] = self.message
        return d


class TraceCache:
    """
    Loaded traces keyed by resolved directory.

    A (re)load builds the new Trace completely before swapping it in, so a
    query holding the previous Trace keeps reading an intact object.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._traces: Dict[str, Trace] = {}

    @staticmethod
    def _key(directory: Union[str, Path]) -> str:
        return str(Path(directory).resolve())

    def get(self, directory: Union[str, Path], reload: bool = False) -> Trace:
        key = self._key(directory)
        with self._lock:
            trace = self._traces.get(key)
        if trace is not None and not reload:
            return trace

        trace = load_trace(directory)
        with self._lock:
            self._traces[key] = trace
        return trace

    def invalidate(self, directory: Optional[Union[str, Path]] = None) -> None:
        """Drop one cached trace, or all of them."""
        with self._lock:
            if directory is None:
                self._traces.clear()
            else:
                self._traces.pop(self._key(directory), None)

    def __contains__(self, directory: Union[str, Path]) -> bool:
        with self._lock:
            return self._key(directory) in self._traces

    def __len__(self) -> int:
        with self._lock:
            return len(self._traces)


class TraceQueryEngine:
    """Query interface over cached traces."""

    def __init__(self, cache: Optional[TraceCache] = None):
        self.cache = cache or TraceCache()

    def _trace(self, directory: Union[str, Path], begin_ns: Optional[int],
               end_ns: Optional[int]) -> Trace:
        return self.cache.get(directory).between(TimeRange(start_ns=begin_ns, end_ns=end_ns))

    def _run(self, query: str, directory: Union[str, Path],
             fn: Callable[[], Tuple[Any, List[Diagnostic], Dict[str, Any]]]) -> QueryResult:
        with Timer(f"{query}({directory})") as timer:
            try:
                result, diagnostics, summary = fn()
            except TraceError as e:
                logger.error(f"{query} failed on {directory}: {e}")
                outcome = QueryResult.failure(e)
            else:
                outcome = QueryResult(rc=RC_OK, result=result, diagnostics=diagnostics, summary=summary)
        outcome.duration_ms = timer.duration_ms
        return outcome

    def get_trace_info(self, directory: Union[str, Path], begin_ns: Optional[int] = None,
                       end_ns: Optional[int] = None) -> QueryResult:
        def query():
            trace = self._trace(directory, begin_ns, end_ns)
            info = trace.metadata.to_dict()
            begin, end = trace.get_time_bounds()
            info["event-records"] = len(trace)
            info["time-range"] = {"begin": begin, "end": end}
            events = [schema.to_dict() for schema in list_event_names(trace)]
            return {"trace-info": info, "events": events}, [], {}

        return self._run("get_trace_info", directory, query)

    def get_event_type_counts(self, directory: Union[str, Path], begin_ns: Optional[int] = None,
                              end_ns: Optional[int] = None) -> QueryResult:
        def query():
            trace = self._trace(directory, begin_ns, end_ns)
            return [c.to_dict() for c in count_by_name(trace)], [], {}

        return self._run("get_event_type_counts", directory, query)

    def _match(self, directory, entry_pattern, entry_match_mode, exit_pattern, exit_match_mode,
               entry_track_field, exit_track_field, entry_label_field, exit_label_field,
               begin_ns, end_ns) -> MatchResult:
        entry = NamePattern(entry_pattern, MatchMode.parse(entry_match_mode))
        exit_ = NamePattern(exit_pattern, MatchMode.parse(exit_match_mode))
        trace = self._trace(directory, begin_ns, end_ns)
        return match_callstacks(trace, entry, exit_, entry_track_field, exit_track_field,
                                entry_label_field, exit_label_field)

    def get_callstack_stats(
        self,
        directory: Union[str, Path],
        entry_pattern: str,
        entry_match_mode: str,
        exit_pattern: str,
        exit_match_mode: str,
        entry_track_field: str,
        exit_track_field: str,
        entry_label_field: str,
        exit_label_field: str,
        begin_ns: Optional[int] = None,
        end_ns: Optional[int] = None,
        group_by: StatsGrouping = StatsGrouping.CALLSITE,
    ) -> QueryResult:
        """Per-callsite duration statistics as {"hdrs": [...], "rows": [...]}."""
        def query():
            matched = self._match(directory, entry_pattern, entry_match_mode, exit_pattern,
                                  exit_match_mode, entry_track_field, exit_track_field,
                                  entry_label_field, exit_label_field, begin_ns, end_ns)
            table = aggregate(matched.records, group_by=group_by)
            return table.to_dict(), matched.diagnostics, matched.summary()

        return self._run("get_callstack_stats", directory, query)

    def get_flamegraph(
        self,
        directory: Union[str, Path],
        entry_pattern: str,
        entry_match_mode: str,
        exit_pattern: str,
        exit_match_mode: str,
        entry_track_field: str,
        exit_track_field: str,
        entry_label_field: str,
        exit_label_field: str,
        begin_ns: Optional[int] = None,
        end_ns: Optional[int] = None,
        naming: FrameNaming = FrameNaming.CALLSITE,
        track_frames: bool = False,
    ) -> QueryResult:
        """Nested frames as a {"name", "value", "children"} tree."""
        def query():
            matched = self._match(directory, entry_pattern, entry_match_mode, exit_pattern,
                                  exit_match_mode, entry_track_field, exit_track_field,
                                  entry_label_field, exit_label_field, begin_ns, end_ns)
            flamegraph = build_flamegraph(matched.records, naming=naming, track_frames=track_frames)
            diagnostics = matched.diagnostics + flamegraph.diagnostics
            return flamegraph.to_dict(), diagnostics, matched.summary()

        return self._run("get_flamegraph", directory, query)


_default_engine = TraceQueryEngine()


def get_trace_info(directory: Union[str, Path], **kwargs) -> QueryResult:
    """Convenience function using the process-wide engine."""
    return _default_engine.get_trace_info(directory, **kwargs)


def get_event_type_counts(directory: Union[str, Path], **kwargs) -> QueryResult:
    return _default_engine.get_event_type_counts(directory, **kwargs)


def get_callstack_stats(directory: Union[str, Path], *args, **kwargs) -> QueryResult:
    return _default_engine.get_callstack_stats(directory, *args, **kwargs)


def get_flamegraph(directory: Union[str, Path], *args, **kwargs) -> QueryResult:
    return _default_engine.get_flamegraph(directory, *args, **kwargs)
