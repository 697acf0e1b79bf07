"""
CTFQ Callstack Matcher

Reconstructs call intervals by pairing entry and exit events.

Events are processed in global timestamp order (ties in trace order).
Each invocation owns a mapping

    track value -> label value -> stack of open entries

so an exit closes the innermost open entry with the same track and label
values (LIFO). Unpaired entries and exits are reported as diagnostics,
never as records.
"""

import logging
import re
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, DefaultDict, Dict, List, Optional, Pattern, Tuple

import numpy as np

from ctfq.core.errors import InvalidPattern, UnknownField
from ctfq.tracelake.trace import Event, Trace, Value

logger = logging.getLogger(__name__)


class MatchMode(str, Enum):
    """How an event name pattern is compared to event names."""

    EXACT = "exact"
    REGEX = "regex"

    @classmethod
    def parse(cls, value: str) -> "MatchMode":
        """Accept `exact`/`cmp` and `regex`/`re` (case-insensitive)."""
        aliases = {"exact": cls.EXACT, "cmp": cls.EXACT, "regex": cls.REGEX, "re": cls.REGEX}
        mode = aliases.get(str(value).lower())
        if mode is None:
            raise InvalidPattern(str(value), "unknown match mode, expected 'exact' or 'regex'")
        return mode


@dataclass(frozen=True)
class NamePattern:
    """Event name matcher: exact equality or regular expression search."""

    pattern: str
    mode: MatchMode = MatchMode.EXACT
    _regex: Optional[Pattern] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        if not isinstance(self.mode, MatchMode):
            object.__setattr__(self, "mode", MatchMode.parse(self.mode))
        if self.mode is MatchMode.REGEX:
            try:
                object.__setattr__(self, "_regex", re.compile(self.pattern))
            except re.error as e:
                raise InvalidPattern(self.pattern, str(e))

    @classmethod
    def exact(cls, pattern: str) -> "NamePattern":
        return cls(pattern, MatchMode.EXACT)

    @classmethod
    def regex(cls, pattern: str) -> "NamePattern":
        return cls(pattern, MatchMode.REGEX)

    def matches(self, name: str) -> bool:
        if self.mode is MatchMode.EXACT:
            return name == self.pattern
        return self._regex.search(name) is not None


class DiagnosticKind(str, Enum):
    """Non-fatal conditions reported alongside query results."""

    ORPHAN_ENTRY = "orphan-entry"
    ORPHAN_EXIT = "orphan-exit"
    MISSING_FIELD = "missing-field"
    CONTAINMENT_VIOLATION = "containment-violation"


@dataclass
class Diagnostic:
    kind: DiagnosticKind
    message: str
    event_name: Optional[str] = None
    track: Any = None
    label: Any = None
    timestamp: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        return d


@dataclass(frozen=True)
class CallRecord:
    """A reconstructed call interval."""

    entry_name: str
    exit_name: str
    track: Any
    label: Any
    start_ts: int
    end_ts: int

    @property
    def duration(self) -> int:
        return self.end_ts - self.start_ts

    @property
    def callsite(self) -> str:
        return callsite_key(self.entry_name, self.exit_name)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["duration"] = self.duration
        return d


def callsite_key(entry_name: str, exit_name: str) -> str:
    return f"{entry_name} -> {exit_name}"


@dataclass
class MatchResult:
    """CallRecords plus the diagnostics gathered while matching."""

    records: List[CallRecord] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    orphan_entries: int = 0
    orphan_exits: int = 0
    entry_candidates: int = 0
    exit_candidates: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.records

    def summary(self) -> Dict[str, int]:
        return {
            "records": len(self.records),
            "entry_candidates": self.entry_candidates,
            "exit_candidates": self.exit_candidates,
            "orphan_entries": self.orphan_entries,
            "orphan_exits": self.orphan_exits,
        }


@dataclass(frozen=True)
class CandidateSpec:
    """Which fields resolve the track and label of one candidate side."""

    pattern: NamePattern
    track_field: str
    label_field: str


_OpenEntry = Tuple[str, int]


class CallstackMatcher:
    """
    One matching run over a trace.

    The open-entry bookkeeping lives on the instance, so every run starts
    from an empty state and concurrent runs never share it.
    """

    def __init__(self, entry_spec: CandidateSpec, exit_spec: CandidateSpec):
        self.entry = entry_spec
        self.exit = exit_spec
        self._open: DefaultDict[Any, DefaultDict[Any, List[_OpenEntry]]] = \
            defaultdict(lambda: defaultdict(list))
        self.result = MatchResult()

    def validate_fields(self, trace: Trace) -> None:
        """Raise UnknownField for any field missing from the whole trace."""
        for field_name in (self.entry.track_field, self.exit.track_field,
                           self.entry.label_field, self.exit.label_field):
            if field_name not in trace.field_catalog:
                raise UnknownField(field_name)

    def run(self, trace: Trace) -> MatchResult:
        self.validate_fields(trace)

        events = trace.events
        order = np.argsort(trace.timestamps, kind="stable")
        for index in order:
            event = events[index]
            is_entry = self.entry.pattern.matches(event.name)
            is_exit = self.exit.pattern.matches(event.name)
            # An event matching both patterns closes before it opens
            if is_exit:
                self.result.exit_candidates += 1
                self._on_exit(event)
            if is_entry:
                self.result.entry_candidates += 1
                self._on_entry(event)

        self._flush_orphan_entries()

        if self.result.entry_candidates == 0 and self.result.exit_candidates == 0:
            logger.info(
                f"No events match entry pattern '{self.entry.pattern.pattern}' "
                f"or exit pattern '{self.exit.pattern.pattern}'"
            )
        if self.result.orphan_entries or self.result.orphan_exits:
            logger.warning(
                f"Callstack matching left {self.result.orphan_entries} orphan entries "
                f"and {self.result.orphan_exits} orphan exits"
            )
        return self.result

    def _resolve(self, event: Event, spec: CandidateSpec) -> Optional[Tuple[Value, Value]]:
        track = event.get(spec.track_field)
        label = event.get(spec.label_field)
        if track is None or label is None:
            missing = spec.track_field if track is None else spec.label_field
            self._diagnose(DiagnosticKind.MISSING_FIELD, event,
                           f"{event.name} at {event.timestamp} has no value for {missing}")
            return None
        return track, label

    def _on_entry(self, event: Event) -> None:
        resolved = self._resolve(event, self.entry)
        if resolved is None:
            self.result.orphan_entries += 1
            return
        track, label = resolved
        self._open[track][label].append((event.name, event.timestamp))

    def _on_exit(self, event: Event) -> None:
        resolved = self._resolve(event, self.exit)
        if resolved is None:
            self.result.orphan_exits += 1
            return
        track, label = resolved

        labels = self._open.get(track)
        stack = labels.get(label) if labels is not None else None
        if not stack:
            self.result.orphan_exits += 1
            self._diagnose(DiagnosticKind.ORPHAN_EXIT, event,
                           f"{event.name} at {event.timestamp} has no open entry",
                           track=track, label=label)
            return

        entry_name, start_ts = stack.pop()
        self.result.records.append(CallRecord(
            entry_name=entry_name,
            exit_name=event.name,
            track=track,
            label=label,
            start_ts=start_ts,
            end_ts=event.timestamp,
        ))

    def _flush_orphan_entries(self) -> None:
        for track, labels in self._open.items():
            for label, stack in labels.items():
                for entry_name, timestamp in stack:
                    self.result.orphan_entries += 1
                    diagnostic = Diagnostic(
                        kind=DiagnosticKind.ORPHAN_ENTRY,
                        message=f"{entry_name} at {timestamp} was never exited",
                        event_name=entry_name, track=track, label=label, timestamp=timestamp,
                    )
                    self.result.diagnostics.append(diagnostic)
                    logger.debug(diagnostic.message)
        self._open.clear()

    def _diagnose(self, kind: DiagnosticKind, event: Event, message: str,
                  track: Any = None, label: Any = None) -> None:
        self.result.diagnostics.append(Diagnostic(
            kind=kind, message=message, event_name=event.name,
            track=track, label=label, timestamp=event.timestamp,
        ))
        logger.debug(message)


def match_callstacks(
    trace: Trace,
    entry_pattern: NamePattern,
    exit_pattern: NamePattern,
    entry_track_field: str,
    exit_track_field: str,
    entry_label_field: str,
    exit_label_field: str,
) -> MatchResult:
    """
    Pair entry and exit candidates into CallRecords.

    Raises UnknownField if a track or label field never appears in the
    trace. A pattern that matches no event yields an empty result.
    """
    matcher = CallstackMatcher(
        entry_spec=CandidateSpec(entry_pattern, entry_track_field, entry_label_field),
        exit_spec=CandidateSpec(exit_pattern, exit_track_field, exit_label_field),
    )
    return matcher.run(trace)
