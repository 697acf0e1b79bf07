"""
CTFQ Trace Model & Loader

Loads a CTF2 trace directory into an immutable, globally time-ordered
collection of events. Data streams are decoded one by one, each stream
is stable-sorted by timestamp and the streams are merged with a priority
queue, ties keeping stream order.
"""

import heapq
import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

import numpy as np

from ctfq.core.errors import EmptyInput, IOFailure, MalformedInput
from ctfq.core.utils import Timer
from ctfq.ctf.decoder import EVENT_SCOPES, ArrayValue, EventRecord, StreamDecoder, StructValue
from ctfq.ctf.metadata import CTFMetadata, parse_metadata_file

logger = logging.getLogger(__name__)

METADATA_FILE_NAME = "metadata"

Value = Union[int, float, str, None]


@dataclass(frozen=True)
class Event:
    """A decoded event with flattened fields."""

    name: str
    track: str
    timestamp: int
    fields: Mapping[str, Value]
    seq: int = 0

    def get(self, field_name: str, default: Value = None) -> Value:
        return self.fields.get(field_name, default)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "track": self.track,
            "timestamp": self.timestamp,
            "fields": dict(self.fields),
        }


@dataclass
class TimeRange:
    """Inclusive time range in ns from the clock origin; None is unbounded."""

    start_ns: Optional[int] = None
    end_ns: Optional[int] = None

    @classmethod
    def from_ms(cls, start_ms: float, end_ms: float) -> "TimeRange":
        """Create from milliseconds."""
        return cls(start_ns=int(start_ms * 1_000_000), end_ns=int(end_ms * 1_000_000))

    def contains(self, timestamp_ns: int) -> bool:
        """Check if timestamp is within range."""
        if self.start_ns is not None and timestamp_ns < self.start_ns:
            return False
        if self.end_ns is not None and timestamp_ns > self.end_ns:
            return False
        return True

    @property
    def is_unbounded(self) -> bool:
        return self.start_ns is None and self.end_ns is None


@dataclass
class EventSchema:
    """A distinct event name with the union of its field names."""

    name: str
    available_fields: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "value-fields": list(self.available_fields)}


@dataclass
class TraceMetadata:
    """Trace-level description: CTF2 metadata plus load statistics."""

    directory: str
    ctf: CTFMetadata
    streams: List[str] = field(default_factory=list)
    packet_count: int = 0
    discarded_events: int = 0

    @property
    def version(self) -> int:
        return self.ctf.preamble.version

    def to_dict(self) -> Dict[str, Any]:
        info = self.ctf.to_dict()
        info["directory"] = self.directory
        info["data-streams"] = list(self.streams)
        info["packets"] = self.packet_count
        info["discarded-event-records"] = self.discarded_events
        return info


def _timestamp_array(timestamps: List[int]) -> np.ndarray:
    """
    Pack ns timestamps into a 64-bit array.

    Timestamps are signed ns from the clock origin; a trace entirely at or
    after the origin may use the full unsigned 64-bit range.
    """
    if not timestamps:
        return np.empty(0, dtype=np.int64)
    lo, hi = min(timestamps), max(timestamps)
    for dtype in (np.int64, np.uint64):
        limits = np.iinfo(dtype)
        if limits.min <= lo and hi <= limits.max:
            return np.array(timestamps, dtype=dtype)
    raise MalformedInput(f"Event timestamps [{lo}, {hi}] ns do not fit in 64 bits")


class Trace:
    """
    Immutable loaded trace.

    Events are held in global timestamp order (ties in stream order); each
    event's `seq` is its index in that order. Events passed out of order
    are stable-sorted by timestamp and renumbered.
    """

    def __init__(self, events: Tuple[Event, ...], metadata: TraceMetadata,
                 schemas: Optional[Mapping[str, Tuple[str, ...]]] = None):
        events = tuple(events)
        if any(a.timestamp > b.timestamp for a, b in zip(events, events[1:])):
            ordered = sorted(events, key=lambda e: e.timestamp)
            events = tuple(replace(e, seq=seq) for seq, e in enumerate(ordered))
        self._events = events
        self.metadata = metadata
        self._timestamps = _timestamp_array([e.timestamp for e in self._events])
        self._timestamps.setflags(write=False)

        if schemas is None:
            collected: Dict[str, Dict[str, None]] = {}
            for event in self._events:
                names = collected.setdefault(event.name, {})
                for field_name in event.fields:
                    names.setdefault(field_name, None)
            schemas = {name: tuple(fields) for name, fields in collected.items()}
        self._schemas = dict(schemas)
        self._field_catalog = frozenset(f for fields in self._schemas.values() for f in fields)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[Event]:
        return iter(self._events)

    @property
    def events(self) -> Tuple[Event, ...]:
        return self._events

    @property
    def timestamps(self) -> np.ndarray:
        return self._timestamps

    @property
    def field_catalog(self) -> frozenset:
        """All field names that appear on any event."""
        return self._field_catalog

    @property
    def event_names(self) -> List[str]:
        return list(self._schemas)

    @property
    def tracks(self) -> List[str]:
        return list(dict.fromkeys(e.track for e in self._events))

    def fields_of(self, event_name: str) -> Tuple[str, ...]:
        return self._schemas.get(event_name, ())

    def get_time_bounds(self) -> Tuple[int, int]:
        """Get trace time bounds."""
        if not self._events:
            return (0, 0)
        return (int(self._timestamps[0]), int(self._timestamps[-1]))

    def _search(self, bound: int, side: str) -> int:
        limits = np.iinfo(self._timestamps.dtype)
        if bound < limits.min:
            return 0
        if bound > limits.max:
            return len(self._events)
        return int(np.searchsorted(self._timestamps, self._timestamps.dtype.type(bound), side=side))

    def between(self, time_range: TimeRange) -> "Trace":
        """
        Return a new Trace with only the events inside `time_range`.

        The event schema (names and field catalog) of this trace is kept.
        """
        if time_range.is_unbounded:
            return self
        lo = 0
        hi = len(self._events)
        if time_range.start_ns is not None:
            lo = self._search(time_range.start_ns, side="left")
        if time_range.end_ns is not None:
            hi = self._search(time_range.end_ns, side="right")
        kept = self._events[lo:max(lo, hi)]
        logger.debug(f"Time range {time_range} keeps {len(kept)} of {len(self._events)} events")
        return Trace(kept, self.metadata, schemas=self._schemas)


# ════════════════════════════════════════════════════════════════════════
# Field flattening
# ════════════════════════════════════════════════════════════════════════


def _jsonable(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return value.hex()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def to_value(value: Any) -> Value:
    """Convert a decoded field value to a scalar event field value."""
    if isinstance(value, bool):
        return int(value)
    if value is None or isinstance(value, (int, float, str)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return value.hex()
    if isinstance(value, ArrayValue):
        return json.dumps(_jsonable(value))
    return str(value)


def _flatten(prefix: str, struct_value: StructValue, out: Dict[str, Value]) -> None:
    for member, value in struct_value.items():
        path = f"{prefix}/{member}"
        if isinstance(value, StructValue):
            _flatten(path, value, out)
        else:
            out[path] = to_value(value)


def flatten_fields(record: EventRecord) -> Dict[str, Value]:
    """Flatten an event record's scopes into `/<scope>/<member>` paths."""
    fields: Dict[str, Value] = {}
    for scope_name, _ in EVENT_SCOPES:
        scope = record.scopes.get(scope_name)
        if scope is not None:
            _flatten(f"/{scope_name}", scope, fields)
    return fields


# ════════════════════════════════════════════════════════════════════════
# Loading
# ════════════════════════════════════════════════════════════════════════


def discover_streams(directory: Path) -> List[Path]:
    """Data stream files: every non-empty, non-hidden file but the metadata."""
    streams = []
    for path in sorted(directory.rglob("*")):
        relative = path.relative_to(directory)
        if any(part.startswith(".") for part in relative.parts):
            continue
        if relative == Path(METADATA_FILE_NAME) or not path.is_file():
            continue
        if path.stat().st_size == 0:
            continue
        streams.append(path)
    return streams


def _decode_stream(path: Path, track: str, ctf: CTFMetadata) -> Tuple[List[Tuple[int, str, Dict]], StreamDecoder]:
    try:
        data = path.read_bytes()
    except OSError as e:
        raise IOFailure(f"Cannot read data stream {path}: {e}", path=str(path))

    decoder = StreamDecoder(data, ctf, name=track)
    records = [(r.timestamp_ns, r.name, flatten_fields(r)) for r in decoder]
    # Per-track order must be timestamp-ascending even if packets are not
    records.sort(key=lambda r: r[0])
    return records, decoder


def load_trace(directory: Union[str, Path]) -> Trace:
    """
    Load a CTF2 trace directory.

    Raises IOFailure, MalformedInput or EmptyInput; never returns a
    partially loaded trace.
    """
    path = Path(directory)
    if not path.is_dir():
        raise IOFailure(f"Trace directory not found: {path}", path=str(path))

    with Timer(f"load_trace({path})"):
        ctf = parse_metadata_file(path / METADATA_FILE_NAME)

        stream_paths = discover_streams(path)
        if not stream_paths:
            raise EmptyInput(f"No data streams in {path}")

        per_stream = []
        metadata = TraceMetadata(directory=str(path), ctf=ctf)
        for stream_path in stream_paths:
            track = stream_path.relative_to(path).as_posix()
            records, decoder = _decode_stream(stream_path, track, ctf)
            per_stream.append([(ts, track, name, fields) for ts, name, fields in records])
            metadata.streams.append(track)
            metadata.packet_count += len(decoder.packets)
            metadata.discarded_events += decoder.discarded_events
            logger.debug(f"Stream {track}: {len(records)} events in {len(decoder.packets)} packets")

        merged = heapq.merge(*per_stream, key=lambda r: r[0])
        events = tuple(
            Event(name=name, track=track, timestamp=ts, fields=MappingProxyType(fields), seq=seq)
            for seq, (ts, track, name, fields) in enumerate(merged)
        )

    if not events:
        raise EmptyInput(f"No event records in {path}")

    if metadata.discarded_events:
        logger.warning(f"{metadata.discarded_events} event records were discarded by the tracer")
    logger.info(f"Loaded {len(events)} events from {len(stream_paths)} streams in {path}")
    return Trace(events, metadata)


def list_event_names(trace: Trace) -> List[EventSchema]:
    """Distinct event names in first-seen order, each with its field names."""
    return [EventSchema(name=name, available_fields=list(trace.fields_of(name)))
            for name in trace.event_names]
