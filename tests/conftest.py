"""
CTFQ Test Configuration and Fixtures
=====================================
Shared fixtures and configuration for all tests.
"""

import json
import shutil
import struct
import tempfile
from pathlib import Path
from types import MappingProxyType, SimpleNamespace
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple

import pytest


PACKET_MAGIC = 0xC1FC1FC1
METADATA_PACKET_MAGIC = 0x75D11D57
TRACE_UUID = bytes(range(16))

# Payload member kinds understood by CTFTraceBuilder: struct format and field class
MEMBER_KINDS = {
    "u8": ("<B", {"type": "fixed-length-unsigned-integer", "length": 8, "byte-order": "little-endian"}),
    "u32": ("<I", {"type": "fixed-length-unsigned-integer", "length": 32, "byte-order": "little-endian"}),
    "u64": ("<Q", {"type": "fixed-length-unsigned-integer", "length": 64, "byte-order": "little-endian"}),
    "s64": ("<q", {"type": "fixed-length-signed-integer", "length": 64, "byte-order": "little-endian"}),
    "string": (None, {"type": "null-terminated-string"}),
}

FUNC_EVENT_CLASSES = {
    "func_entry": [("addr", "u64")],
    "func_exit": [("addr", "u64")],
}


def uint_class(length: int, roles: Optional[List[str]] = None) -> Dict[str, Any]:
    fc = {"type": "fixed-length-unsigned-integer", "length": length, "byte-order": "little-endian"}
    if roles:
        fc["roles"] = roles
    return fc


def struct_class(*members: Tuple[str, Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "type": "structure",
        "member-classes": [{"name": name, "field-class": fc} for name, fc in members],
    }


def json_sequence(fragments: List[Dict[str, Any]]) -> bytes:
    """Encode metadata fragments as a JSON text sequence."""
    return b"".join(b"\x1e" + json.dumps(f).encode("utf-8") + b"\n" for f in fragments)


def metadata_packet(content: bytes, padding: int = 0) -> bytes:
    """Wrap metadata text into one little-endian metadata packet."""
    header_bits = 44 * 8
    content_bits = header_bits + len(content) * 8
    total_bits = content_bits + padding * 8
    header = struct.pack(
        "<I16sIIIBBBBB3xI",
        METADATA_PACKET_MAGIC, TRACE_UUID, 0, content_bits, total_bits,
        0, 0, 0, 2, 0, header_bits,
    )
    return header + content + b"\x00" * padding


def preamble_fragment() -> Dict[str, Any]:
    return {"type": "preamble", "version": 2, "uuid": list(TRACE_UUID)}


class CTFTraceBuilder:
    """
    Writes small CTF2 traces: one data stream class with a nanosecond
    clock, a `tid` common context and event record classes whose payload
    members are listed as (name, kind) pairs.

    Packet layout (little-endian, byte aligned):
        header   magic u32, uuid blob[16], data stream class id u32
        context  total length u32, content length u32, begin u64, discarded u32
        event    class id u32, timestamp u64, tid u32, payload...
    """

    def __init__(self, path: Path, event_classes: Optional[Dict[str, List[Tuple[str, str]]]] = None):
        self.path = Path(path)
        self.event_classes = dict(event_classes or FUNC_EVENT_CLASSES)
        self.class_ids = {name: index for index, name in enumerate(self.event_classes)}
        self.streams: Dict[str, List[Tuple[str, int, int, Dict[str, Any]]]] = {}

    def add_event(self, name: str, timestamp: int, tid: int = 1, stream: str = "stream_0",
                  **payload: Any) -> "CTFTraceBuilder":
        self.streams.setdefault(stream, []).append((name, timestamp, tid, payload))
        return self

    def call(self, name: str, start: int, end: int, addr: int, tid: int = 1,
             stream: str = "stream_0") -> "CTFTraceBuilder":
        """Shorthand for a func_entry/func_exit pair; `name` is unused by the trace."""
        self.add_event("func_entry", start, tid=tid, stream=stream, addr=addr)
        self.add_event("func_exit", end, tid=tid, stream=stream, addr=addr)
        return self

    def fragments(self) -> List[Dict[str, Any]]:
        frags = [
            preamble_fragment(),
            {
                "type": "trace-class",
                "name": "test-trace",
                "environment": {"tracer_name": "ctfq-tests"},
                "packet-header-field-class": struct_class(
                    ("magic", uint_class(32, ["packet-magic-number"])),
                    ("uuid", {"type": "static-length-blob", "length": 16,
                              "roles": ["metadata-stream-uuid"]}),
                    ("stream_id", uint_class(32, ["data-stream-class-id"])),
                ),
            },
            {
                "type": "clock-class",
                "id": "default",
                "name": "monotonic",
                "frequency": 1_000_000_000,
                "offset-from-origin": {"seconds": 0, "cycles": 0},
            },
            {
                "type": "data-stream-class",
                "id": 0,
                "default-clock-class-id": "default",
                "packet-context-field-class": struct_class(
                    ("packet_size", uint_class(32, ["packet-total-length"])),
                    ("content_size", uint_class(32, ["packet-content-length"])),
                    ("timestamp_begin", uint_class(64, ["default-clock-timestamp"])),
                    ("events_discarded", uint_class(32, ["discarded-event-record-counter-snapshot"])),
                ),
                "event-record-header-field-class": struct_class(
                    ("id", uint_class(32, ["event-record-class-id"])),
                    ("timestamp", uint_class(64, ["default-clock-timestamp"])),
                ),
                "event-record-common-context-field-class": struct_class(
                    ("tid", uint_class(32)),
                ),
            },
        ]
        for name, members in self.event_classes.items():
            frags.append({
                "type": "event-record-class",
                "id": self.class_ids[name],
                "data-stream-class-id": 0,
                "name": name,
                "payload-field-class": struct_class(
                    *[(member, MEMBER_KINDS[kind][1]) for member, kind in members]
                ),
            })
        return frags

    def _encode_event(self, name: str, timestamp: int, tid: int, payload: Dict[str, Any]) -> bytes:
        data = struct.pack("<IQI", self.class_ids[name], timestamp, tid)
        for member, kind in self.event_classes[name]:
            fmt = MEMBER_KINDS[kind][0]
            value = payload[member]
            if fmt is None:
                data += value.encode("utf-8") + b"\x00"
            else:
                data += struct.pack(fmt, value)
        return data

    def _encode_packet(self, events: List[Tuple[str, int, int, Dict[str, Any]]],
                       discarded: int, padding: int = 0) -> bytes:
        body = b"".join(self._encode_event(*e) for e in events)
        header = struct.pack("<I16sI", PACKET_MAGIC, TRACE_UUID, 0)
        context_size = 4 + 4 + 8 + 4
        content_bits = (len(header) + context_size + len(body)) * 8
        total_bits = content_bits + padding * 8
        begin = events[0][1] if events else 0
        context = struct.pack("<IIQI", total_bits, content_bits, begin, discarded)
        return header + context + body + b"\x00" * padding

    def write(self, events_per_packet: int = 0, packetized_metadata: bool = False,
              discarded: Optional[Dict[str, List[int]]] = None) -> Path:
        """
        Write the metadata and one file per stream.

        `discarded` maps a stream to the discarded-event snapshot of each
        of its packets.
        """
        self.path.mkdir(parents=True, exist_ok=True)
        text = json_sequence(self.fragments())
        (self.path / "metadata").write_bytes(metadata_packet(text) if packetized_metadata else text)

        for stream, events in self.streams.items():
            size = events_per_packet or max(len(events), 1)
            chunks = [events[i:i + size] for i in range(0, len(events), size)] or [[]]
            snapshots = (discarded or {}).get(stream) or [0] * len(chunks)
            data = b"".join(
                self._encode_packet(chunk, snapshot, padding=8)
                for chunk, snapshot in zip(chunks, snapshots)
            )
            (self.path / stream).write_bytes(data)
        return self.path


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    path = Path(tempfile.mkdtemp(prefix="ctfq_test_"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def ctf():
    """Metadata building helpers for tests that hand-craft streams."""
    return SimpleNamespace(
        uint_class=uint_class,
        struct_class=struct_class,
        json_sequence=json_sequence,
        metadata_packet=metadata_packet,
        preamble_fragment=preamble_fragment,
        uuid=TRACE_UUID,
        packet_magic=PACKET_MAGIC,
    )


@pytest.fixture
def trace_builder(temp_dir) -> Callable[..., CTFTraceBuilder]:
    """Factory for CTF2 trace builders writing below temp_dir."""
    counter = [0]

    def make(event_classes: Optional[Dict[str, List[Tuple[str, str]]]] = None) -> CTFTraceBuilder:
        counter[0] += 1
        return CTFTraceBuilder(temp_dir / f"trace_{counter[0]}", event_classes)

    return make


@pytest.fixture
def nested_trace(trace_builder) -> Path:
    """
    One thread, an outer call [0, 10] enclosing an inner call [2, 5].

    Events: E(f,0) E(g,2) X(g,5) X(f,10).
    """
    builder = trace_builder()
    builder.add_event("func_entry", 0, addr=0xF)
    builder.add_event("func_entry", 2, addr=0x6)
    builder.add_event("func_exit", 5, addr=0x6)
    builder.add_event("func_exit", 10, addr=0xF)
    return builder.write()


@pytest.fixture
def multi_thread_trace(trace_builder) -> Path:
    """Two streams, two threads, interleaved in time."""
    builder = trace_builder()
    builder.call("f", 100, 400, addr=0x10, tid=1, stream="stream_0")
    builder.call("g", 150, 200, addr=0x20, tid=1, stream="stream_0")
    builder.call("f", 120, 300, addr=0x10, tid=2, stream="stream_1")
    # Entries first, exits later: keep events in timestamp order per stream
    builder.streams["stream_0"].sort(key=lambda e: e[1])
    builder.streams["stream_1"].sort(key=lambda e: e[1])
    return builder.write()


@pytest.fixture
def make_trace():
    """
    Factory for in-memory traces from (name, timestamp, fields) tuples.

    `func(name, ts, tid, addr)` builds a tuple with the fields of the
    default "func" preset.
    """
    from ctfq.ctf.metadata import CTFMetadata, Preamble
    from ctfq.tracelake.trace import Event, Trace, TraceMetadata

    def make(events, track: str = "stream_0"):
        built = tuple(
            Event(name=name, track=track, timestamp=ts, fields=MappingProxyType(dict(fields)), seq=seq)
            for seq, (name, ts, fields) in enumerate(events)
        )
        metadata = TraceMetadata(directory="<memory>", ctf=CTFMetadata(preamble=Preamble(version=2)))
        return Trace(built, metadata)

    def func(name: str, ts: int, tid: int = 1, addr: int = 0xF):
        return (name, ts, {"/common-context/tid": tid, "/payload/addr": addr})

    make.func = func
    return make


@pytest.fixture
def cli_runner():
    """Create Click CLI test runner."""
    from click.testing import CliRunner
    return CliRunner()


# =============================================================================
# Test Markers
# =============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "integration: marks integration tests")
