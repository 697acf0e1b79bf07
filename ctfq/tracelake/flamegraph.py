"""
CTFQ Flamegraph Builder

Nests CallRecords by timestamp containment, per track, into a tree of
frames suitable for d3-flamegraph style rendering.

Within a track, records are sorted by start time (longer first on equal
starts) and inserted with an open-interval stack: frames ending at or
before the current start are popped, the current record becomes a child
of the remaining stack top.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from ctfq.tracelake.matcher import CallRecord, Diagnostic, DiagnosticKind

logger = logging.getLogger(__name__)

ROOT_FRAME_NAME = "root"


class FrameNaming(str, Enum):
    """What a frame is named after."""

    CALLSITE = "callsite"
    LABEL = "label"


@dataclass
class FlameFrame:
    """A frame whose value is its total duration."""

    name: str
    value: int
    children: List["FlameFrame"] = field(default_factory=list)
    start_ts: Optional[int] = None
    end_ts: Optional[int] = None
    track: Any = None

    @property
    def children_value(self) -> int:
        return sum(child.value for child in self.children)

    @property
    def self_value(self) -> int:
        """Own duration minus direct children, never below zero."""
        return max(0, self.value - self.children_value)

    def walk(self) -> Iterator["FlameFrame"]:
        """Depth-first pre-order iteration over this frame and its descendants."""
        yield self
        for child in self.children:
            yield from child.walk()

    def to_dict(self, extended: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {"name": self.name, "value": self.value}
        if extended:
            d["self"] = self.self_value
            d["start"] = self.start_ts
            d["end"] = self.end_ts
            d["track"] = self.track
        d["children"] = [child.to_dict(extended) for child in self.children]
        return d


@dataclass
class FlamegraphResult:
    root: FlameFrame
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.root.children

    def to_dict(self, extended: bool = False) -> Dict[str, Any]:
        return self.root.to_dict(extended)


def frame_name(record: CallRecord, naming: FrameNaming) -> str:
    if naming == FrameNaming.LABEL:
        return str(record.label)
    if record.entry_name == record.exit_name:
        return record.entry_name
    return record.callsite


def _group_by_track(records: Sequence[CallRecord]) -> Dict[Any, List[Tuple[int, CallRecord]]]:
    tracks: Dict[Any, List[Tuple[int, CallRecord]]] = {}
    for index, record in enumerate(records):
        tracks.setdefault(record.track, []).append((index, record))
    return tracks


def build_flamegraph(
    records: Sequence[CallRecord],
    naming: FrameNaming = FrameNaming.CALLSITE,
    track_frames: bool = False,
) -> FlamegraphResult:
    """
    Build the frame tree under a synthetic root of value 0.

    With `track_frames`, each track gets an intermediate frame named after
    the track value whose value is the sum of its top-level frames;
    otherwise top-level frames of every track hang directly off the root.
    """
    root = FlameFrame(name=ROOT_FRAME_NAME, value=0)
    diagnostics: List[Diagnostic] = []

    for track, items in _group_by_track(records).items():
        items.sort(key=lambda item: (item[1].start_ts, -item[1].duration, item[0]))

        container = root
        if track_frames:
            container = FlameFrame(name=str(track), value=0, track=track)
            root.children.append(container)

        stack: List[FlameFrame] = []
        for _, record in items:
            while stack and stack[-1].end_ts <= record.start_ts:
                stack.pop()

            frame = FlameFrame(
                name=frame_name(record, naming),
                value=record.duration,
                start_ts=record.start_ts,
                end_ts=record.end_ts,
                track=track,
            )
            parent = stack[-1] if stack else container
            if stack and record.end_ts > parent.end_ts:
                diagnostic = Diagnostic(
                    kind=DiagnosticKind.CONTAINMENT_VIOLATION,
                    message=(
                        f"{frame.name} [{record.start_ts}, {record.end_ts}] overlaps the end of "
                        f"{parent.name} [{parent.start_ts}, {parent.end_ts}]"
                    ),
                    event_name=record.entry_name,
                    track=track,
                    label=record.label,
                    timestamp=record.start_ts,
                )
                diagnostics.append(diagnostic)
                logger.debug(diagnostic.message)

            parent.children.append(frame)
            stack.append(frame)

        if track_frames:
            container.value = container.children_value
            container.start_ts = min(f.start_ts for f in container.children)
            container.end_ts = max(f.end_ts for f in container.children)

    if diagnostics:
        logger.warning(f"Flamegraph has {len(diagnostics)} containment violations, self values clamped")
    return FlamegraphResult(root=root, diagnostics=diagnostics)
