"""
CTFQ Metadata Stream Parser

Parses a CTF2 metadata stream (a JSON text sequence, optionally wrapped
in metadata packets) into trace, clock, data stream and event record
classes.
"""

import json
import logging
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from ctfq.core.errors import IOFailure, MalformedInput
from ctfq.ctf.field_class import (
    BlobClass,
    FieldClass,
    FieldClassType,
    StructureClass,
    parse_field_class,
)

logger = logging.getLogger(__name__)

CTF_MAJOR_VERSION = 2
RECORD_SEPARATOR = b"\x1e"

METADATA_PACKET_MAGIC = 0x75D11D57
METADATA_PACKET_HEADER_FORMAT = "I16sIIIBBBBB3xI"
METADATA_PACKET_HEADER_SIZE = 44


class Role:
    """Integer field class roles understood by the decoder."""

    DATA_STREAM_CLASS_ID = "data-stream-class-id"
    DATA_STREAM_ID = "data-stream-id"
    PACKET_MAGIC_NUMBER = "packet-magic-number"
    METADATA_STREAM_UUID = "metadata-stream-uuid"
    DEFAULT_CLOCK_TIMESTAMP = "default-clock-timestamp"
    DISCARDED_EVENT_RECORD_COUNTER_SNAPSHOT = "discarded-event-record-counter-snapshot"
    PACKET_CONTENT_LENGTH = "packet-content-length"
    PACKET_END_DEFAULT_CLOCK_TIMESTAMP = "packet-end-default-clock-timestamp"
    PACKET_SEQUENCE_NUMBER = "packet-sequence-number"
    PACKET_TOTAL_LENGTH = "packet-total-length"
    EVENT_RECORD_CLASS_ID = "event-record-class-id"


CLOCK_ROLES = {Role.DEFAULT_CLOCK_TIMESTAMP, Role.PACKET_END_DEFAULT_CLOCK_TIMESTAMP}


@dataclass
class Preamble:
    version: int
    uuid: Optional[bytes] = None
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TraceClass:
    namespace: Optional[str] = None
    name: Optional[str] = None
    uid: Optional[str] = None
    packet_header: Optional[StructureClass] = None
    environment: Dict[str, Any] = field(default_factory=dict)
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ClockClass:
    """Clock class with conversion of cycle values to ns from origin."""

    id: str
    frequency: int
    namespace: Optional[str] = None
    name: Optional[str] = None
    uid: Optional[str] = None
    origin: Optional[Union[str, Dict[str, Any]]] = None
    offset_seconds: int = 0
    offset_cycles: int = 0
    precision: Optional[int] = None
    accuracy: Optional[int] = None
    description: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def cycles_to_ns_from_origin(self, value: int) -> int:
        cycles = value + self.offset_cycles
        seconds = self.offset_seconds + cycles // self.frequency
        return seconds * 1_000_000_000 + (cycles % self.frequency) * 1_000_000_000 // self.frequency

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "namespace": self.namespace,
            "name": self.name,
            "uid": self.uid,
            "frequency": self.frequency,
            "origin": self.origin,
            "offset-from-origin": {"seconds": self.offset_seconds, "cycles": self.offset_cycles},
            "precision": self.precision,
            "accuracy": self.accuracy,
            "description": self.description,
            "attributes": self.attributes or None,
        }


@dataclass
class EventRecordClass:
    id: int
    data_stream_class_id: int = 0
    namespace: Optional[str] = None
    name: Optional[str] = None
    uid: Optional[str] = None
    specific_context: Optional[StructureClass] = None
    payload: Optional[StructureClass] = None
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DataStreamClass:
    id: int = 0
    namespace: Optional[str] = None
    name: Optional[str] = None
    uid: Optional[str] = None
    default_clock_class: Optional[ClockClass] = None
    packet_context: Optional[StructureClass] = None
    event_header: Optional[StructureClass] = None
    event_common_context: Optional[StructureClass] = None
    event_record_classes: Dict[int, EventRecordClass] = field(default_factory=dict)
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CTFMetadata:
    """Everything a metadata stream declares."""

    preamble: Preamble
    trace_class: Optional[TraceClass] = None
    clock_classes: Dict[str, ClockClass] = field(default_factory=dict)
    data_stream_classes: Dict[int, DataStreamClass] = field(default_factory=dict)

    @property
    def packet_header(self) -> Optional[StructureClass]:
        return self.trace_class.packet_header if self.trace_class else None

    def to_dict(self) -> Dict[str, Any]:
        """Nested attribute dictionary describing the trace."""
        info: Dict[str, Any] = {
            "version": self.preamble.version,
            "uuid": str_uuid(self.preamble.uuid) if self.preamble.uuid else None,
            "attributes": self.preamble.attributes or None,
        }
        if self.trace_class:
            tc = self.trace_class
            info["trace-class"] = {
                "namespace": tc.namespace,
                "name": tc.name,
                "uid": tc.uid,
                "environment": tc.environment or None,
                "attributes": tc.attributes or None,
            }
        info["clock-classes"] = {cc.id: cc.to_dict() for cc in self.clock_classes.values()}
        info["data-stream-classes"] = {
            str(dsc.id): {
                "namespace": dsc.namespace,
                "name": dsc.name,
                "uid": dsc.uid,
                "default-clock-class-id": dsc.default_clock_class.id if dsc.default_clock_class else None,
                "event-record-classes": len(dsc.event_record_classes),
                "attributes": dsc.attributes or None,
            }
            for dsc in self.data_stream_classes.values()
        }
        return info


def str_uuid(raw: bytes) -> str:
    h = raw.hex()
    return f"{h[0:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"


# ════════════════════════════════════════════════════════════════════════
# Metadata stream framing
# ════════════════════════════════════════════════════════════════════════


def is_packetized(data: bytes) -> bool:
    """Return True if the stream starts with a metadata packet magic number."""
    if len(data) < 4:
        return False
    return METADATA_PACKET_MAGIC in (
        struct.unpack("<I", data[:4])[0],
        struct.unpack(">I", data[:4])[0],
    )


def unpack_metadata_packets(data: bytes) -> bytes:
    """Concatenate the contents of all metadata packets in `data`."""
    content = bytearray()
    offset = 0

    while offset < len(data):
        if len(data) - offset < METADATA_PACKET_HEADER_SIZE:
            raise MalformedInput(f"Truncated metadata packet header at byte {offset}")

        head = data[offset:offset + 4]
        order = "<" if struct.unpack("<I", head)[0] == METADATA_PACKET_MAGIC else ">"
        (magic, _uuid, _checksum, content_bits, total_bits, compression, encryption,
         content_checksum, major, minor, header_bits) = struct.unpack(
            order + METADATA_PACKET_HEADER_FORMAT,
            data[offset:offset + METADATA_PACKET_HEADER_SIZE],
        )

        if magic != METADATA_PACKET_MAGIC:
            raise MalformedInput(f"Bad metadata packet magic 0x{magic:08x} at byte {offset}")
        if (major, minor) != (CTF_MAJOR_VERSION, 0):
            raise MalformedInput(f"Unsupported metadata packet version {major}.{minor}")
        if compression or encryption or content_checksum:
            raise MalformedInput("Compressed, encrypted or checksummed metadata packets are not supported")
        if header_bits != METADATA_PACKET_HEADER_SIZE * 8:
            raise MalformedInput(f"Unexpected metadata packet header size {header_bits} bits")
        if content_bits % 8 or total_bits % 8 or content_bits > total_bits \
                or content_bits < header_bits:
            raise MalformedInput(
                f"Invalid metadata packet sizes (content {content_bits}, total {total_bits} bits)")
        if offset + total_bits // 8 > len(data):
            raise MalformedInput(f"Metadata packet at byte {offset} extends past end of stream")

        content += data[offset + METADATA_PACKET_HEADER_SIZE:offset + content_bits // 8]
        offset += total_bits // 8

    return bytes(content)


def iter_fragments(data: bytes) -> Iterator[Dict[str, Any]]:
    """Yield decoded JSON fragments of a JSON text sequence."""
    for index, chunk in enumerate(data.split(RECORD_SEPARATOR)):
        if not chunk.strip():
            continue
        try:
            fragment = json.loads(chunk.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedInput(f"Metadata fragment #{index} is not valid JSON: {e}")
        if not isinstance(fragment, dict):
            raise MalformedInput(f"Metadata fragment #{index} is not a JSON object")
        yield fragment


# ════════════════════════════════════════════════════════════════════════
# Fragment parsing
# ════════════════════════════════════════════════════════════════════════


def _object_property(obj: Dict[str, Any], key: str, what: str) -> Dict[str, Any]:
    value = obj.get(key, {})
    if not isinstance(value, dict):
        raise MalformedInput(f"{what} property '{key}' must be an object, got {value!r}")
    return value


def _string_property(obj: Dict[str, Any], key: str, what: str) -> Optional[str]:
    value = obj.get(key)
    if value is not None and not isinstance(value, str):
        raise MalformedInput(f"{what} property '{key}' must be a string, got {value!r}")
    return value


def _int_property(obj: Dict[str, Any], key: str, what: str, default: Optional[int] = None,
                  minimum: Optional[int] = 0) -> Optional[int]:
    value = obj.get(key, default)
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool):
        raise MalformedInput(f"{what} property '{key}' must be an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise MalformedInput(f"{what} property '{key}' must be at least {minimum}, got {value}")
    return value


def _parse_origin(fragment: Dict[str, Any], what: str) -> Optional[Union[str, Dict[str, Any]]]:
    origin = fragment.get("origin")
    if origin is None:
        return None
    if origin == "unix-epoch":
        return origin
    if not isinstance(origin, dict):
        raise MalformedInput(f"{what} origin must be \"unix-epoch\" or an object, got {origin!r}")
    for key in ("namespace", "name", "uid"):
        _string_property(origin, key, f"{what} origin")
    return origin


class MetadataParser:
    """
    Builds a CTFMetadata from metadata fragments.

    Fragments are applied in stream order; field class aliases must be
    declared before use and the preamble must come first.
    """

    def __init__(self):
        self._aliases: Dict[str, FieldClass] = {}
        self._metadata: Optional[CTFMetadata] = None

    def parse_bytes(self, data: bytes) -> CTFMetadata:
        if is_packetized(data):
            logger.debug("Metadata stream is packetized")
            data = unpack_metadata_packets(data)

        for fragment in iter_fragments(data):
            self.add_fragment(fragment)

        if self._metadata is None:
            raise MalformedInput("Metadata stream has no preamble")
        return self._metadata

    def add_fragment(self, fragment: Dict[str, Any]) -> None:
        frag_type = fragment.get("type")
        if frag_type is None:
            raise MalformedInput("Metadata fragment has no 'type'")

        if frag_type == "preamble":
            if self._metadata is not None:
                raise MalformedInput("Multiple preambles, a metadata stream must contain exactly one")
            self._metadata = CTFMetadata(preamble=self._parse_preamble(fragment))
            return

        if self._metadata is None:
            raise MalformedInput("Preamble is not the first fragment")

        handler = {
            "field-class-alias": self._add_alias,
            "trace-class": self._add_trace_class,
            "clock-class": self._add_clock_class,
            "data-stream-class": self._add_data_stream_class,
            "event-record-class": self._add_event_record_class,
        }.get(frag_type)
        if handler is None:
            raise MalformedInput(f"Unknown metadata fragment type '{frag_type}'")
        handler(fragment)

    def _parse_preamble(self, fragment: Dict[str, Any]) -> Preamble:
        version = fragment.get("version")
        if version != CTF_MAJOR_VERSION:
            raise MalformedInput(
                f"Unsupported metadata stream version {version}, only {CTF_MAJOR_VERSION} is supported")

        extensions = _object_property(fragment, "extensions", "preamble")
        if extensions:
            raise MalformedInput(f"Unsupported metadata extensions: {', '.join(sorted(extensions))}")

        uuid = None
        if "uuid" in fragment:
            raw = fragment["uuid"]
            if not isinstance(raw, list) or len(raw) != 16 or not all(
                    isinstance(b, int) and 0 <= b <= 255 for b in raw):
                raise MalformedInput("Preamble uuid must be an array of 16 bytes")
            uuid = bytes(raw)

        return Preamble(version=version, uuid=uuid,
                        attributes=_object_property(fragment, "attributes", "preamble"))

    def _root_struct(self, fragment: Dict[str, Any], key: str) -> Optional[StructureClass]:
        if key not in fragment:
            return None
        fc = parse_field_class(fragment[key], self._aliases)
        if not isinstance(fc, StructureClass):
            raise MalformedInput(f"{key} is not a structure field class")
        return fc

    def _add_alias(self, fragment: Dict[str, Any]) -> None:
        name = fragment.get("name")
        if not isinstance(name, str):
            raise MalformedInput("field-class-alias has no name")
        if name in self._aliases:
            raise MalformedInput(f"Multiple field-class-alias with name {name}")
        if "field-class" not in fragment:
            raise MalformedInput(f"field-class-alias {name} has no field-class")
        self._aliases[name] = parse_field_class(fragment["field-class"], self._aliases)

    def _add_trace_class(self, fragment: Dict[str, Any]) -> None:
        if self._metadata.trace_class is not None:
            raise MalformedInput("Multiple trace classes, a metadata stream must contain at most one")

        packet_header = self._root_struct(fragment, "packet-header-field-class")
        if packet_header is not None:
            _verify_packet_header_roles(packet_header, self._metadata.preamble)

        what = "trace-class"
        self._metadata.trace_class = TraceClass(
            namespace=_string_property(fragment, "namespace", what),
            name=_string_property(fragment, "name", what),
            uid=_string_property(fragment, "uid", what),
            packet_header=packet_header,
            environment=_object_property(fragment, "environment", what),
            attributes=_object_property(fragment, "attributes", what),
        )

    def _add_clock_class(self, fragment: Dict[str, Any]) -> None:
        clock_id = fragment.get("id")
        if not isinstance(clock_id, str):
            raise MalformedInput("clock-class is missing required string property 'id'")
        if clock_id in self._metadata.clock_classes:
            raise MalformedInput(f"Multiple clock classes with id {clock_id}")
        what = f"clock-class {clock_id}"

        frequency = _int_property(fragment, "frequency", what, minimum=1)
        if frequency is None:
            raise MalformedInput(f"{what} must have a frequency greater than zero")

        offset = _object_property(fragment, "offset-from-origin", what)
        offset_seconds = _int_property(offset, "seconds", f"{what} offset-from-origin", default=0,
                                       minimum=None)
        offset_cycles = _int_property(offset, "cycles", f"{what} offset-from-origin", default=0)
        if offset_cycles >= frequency:
            raise MalformedInput(
                f"{what} offset cycles {offset_cycles} must be less than its frequency")

        self._metadata.clock_classes[clock_id] = ClockClass(
            id=clock_id,
            frequency=frequency,
            namespace=_string_property(fragment, "namespace", what),
            name=_string_property(fragment, "name", what),
            uid=_string_property(fragment, "uid", what),
            origin=_parse_origin(fragment, what),
            offset_seconds=offset_seconds,
            offset_cycles=offset_cycles,
            precision=_int_property(fragment, "precision", what),
            accuracy=_int_property(fragment, "accuracy", what),
            description=_string_property(fragment, "description", what),
            attributes=_object_property(fragment, "attributes", what),
        )

    def _add_data_stream_class(self, fragment: Dict[str, Any]) -> None:
        dsc_id = _int_property(fragment, "id", "data-stream-class", default=0)
        if dsc_id in self._metadata.data_stream_classes:
            raise MalformedInput(f"Multiple data stream classes with the same id {dsc_id}")
        what = f"data-stream-class {dsc_id}"

        clock = None
        clock_id = _string_property(fragment, "default-clock-class-id", what)
        if clock_id is not None:
            clock = self._metadata.clock_classes.get(clock_id)
            if clock is None:
                raise MalformedInput(
                    f"Default clock class {clock_id} of data stream class {dsc_id} does not exist")

        dsc = DataStreamClass(
            id=dsc_id,
            namespace=_string_property(fragment, "namespace", what),
            name=_string_property(fragment, "name", what),
            uid=_string_property(fragment, "uid", what),
            default_clock_class=clock,
            packet_context=self._root_struct(fragment, "packet-context-field-class"),
            event_header=self._root_struct(fragment, "event-record-header-field-class"),
            event_common_context=self._root_struct(fragment, "event-record-common-context-field-class"),
            attributes=_object_property(fragment, "attributes", what),
        )
        if clock is None:
            for scope in ("packet_context", "event_header"):
                if _has_role(getattr(dsc, scope), CLOCK_ROLES):
                    raise MalformedInput(
                        f"Data stream class {dsc_id} has a clock timestamp role but no default clock class")
        self._metadata.data_stream_classes[dsc_id] = dsc

    def _add_event_record_class(self, fragment: Dict[str, Any]) -> None:
        erc_id = _int_property(fragment, "id", "event-record-class", default=0)
        what = f"event-record-class {erc_id}"
        dsc_id = _int_property(fragment, "data-stream-class-id", what, default=0)
        dsc = self._metadata.data_stream_classes.get(dsc_id)
        if dsc is None:
            raise MalformedInput(f"Event record class {erc_id} refers to unknown data stream class {dsc_id}")
        if erc_id in dsc.event_record_classes:
            raise MalformedInput(
                f"Multiple event record classes with id {erc_id} in data stream class {dsc_id}")

        dsc.event_record_classes[erc_id] = EventRecordClass(
            id=erc_id,
            data_stream_class_id=dsc_id,
            namespace=_string_property(fragment, "namespace", what),
            name=_string_property(fragment, "name", what),
            uid=_string_property(fragment, "uid", what),
            specific_context=self._root_struct(fragment, "specific-context-field-class"),
            payload=self._root_struct(fragment, "payload-field-class"),
            attributes=_object_property(fragment, "attributes", what),
        )


def _iter_leaf_classes(fc: Optional[FieldClass]) -> Iterator[FieldClass]:
    if fc is None:
        return
    if isinstance(fc, StructureClass):
        for member in fc.members:
            yield from _iter_leaf_classes(member.field_class)
    else:
        yield fc


def _has_role(fc: Optional[FieldClass], roles: set) -> bool:
    return any(roles.intersection(getattr(leaf, "roles", ())) for leaf in _iter_leaf_classes(fc))


def _verify_packet_header_roles(header: StructureClass, preamble: Preamble) -> None:
    for index, member in enumerate(header.members):
        roles = getattr(member.field_class, "roles", ())
        if Role.PACKET_MAGIC_NUMBER in roles and index != 0:
            raise MalformedInput(
                "packet-header-field-class has role \"packet-magic-number\" but it is not its first member")

    for leaf in _iter_leaf_classes(header):
        if Role.METADATA_STREAM_UUID in getattr(leaf, "roles", ()):
            if preamble.uuid is None:
                raise MalformedInput(
                    "packet-header-field-class has role \"metadata-stream-uuid\" but preamble has no uuid")
            if not (isinstance(leaf, BlobClass) and leaf.type == FieldClassType.STATIC_LENGTH_BLOB
                    and leaf.length == 16):
                raise MalformedInput(
                    "packet-header-field-class role \"metadata-stream-uuid\" must be a 16-byte static-length-blob")


def parse_metadata_bytes(data: bytes) -> CTFMetadata:
    """Parse a metadata stream held in memory."""
    return MetadataParser().parse_bytes(data)


def parse_metadata_file(path: Union[str, Path]) -> CTFMetadata:
    """Read and parse a metadata stream file."""
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise IOFailure(f"Cannot read metadata stream {path}: {e}", path=str(path))

    metadata = parse_metadata_bytes(data)
    logger.debug(
        f"Parsed metadata {path}: {len(metadata.clock_classes)} clock classes, "
        f"{len(metadata.data_stream_classes)} data stream classes"
    )
    return metadata
