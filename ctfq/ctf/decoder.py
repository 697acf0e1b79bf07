"""
CTFQ Data Stream Decoder

Decodes the packets of one CTF2 data stream into event records:

    packet header -> data stream class -> packet context ->
        (event header -> event record class -> common context ->
         specific context -> payload)*

Field values are decoded into plain Python values; structures become
StructValue mappings and arrays ArrayValue lists, both keeping a parent
link so that dynamic lengths and selectors can be located.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ctfq.core.errors import MalformedInput
from ctfq.ctf.bit_reader import BitReader, reverse_bits, sign_extend
from ctfq.ctf.field_class import (
    ArrayClass,
    BlobClass,
    FieldClass,
    FieldClassType,
    FieldLocation,
    FixedLengthClass,
    LocationOrigin,
    OptionalClass,
    StringClass,
    StructureClass,
    VariableLengthIntegerClass,
    VariantClass,
)
from ctfq.ctf.metadata import (
    ClockClass,
    CTFMetadata,
    DataStreamClass,
    EventRecordClass,
    Role,
)

logger = logging.getLogger(__name__)

PACKET_MAGIC_NUMBER = 0xC1FC1FC1

# Event scope names as exposed in flattened field paths
SCOPE_HEADER = "header"
SCOPE_COMMON_CONTEXT = "common-context"
SCOPE_SPECIFIC_CONTEXT = "specific-context"
SCOPE_PAYLOAD = "payload"

EVENT_SCOPES = (
    (SCOPE_HEADER, LocationOrigin.EVENT_RECORD_HEADER),
    (SCOPE_COMMON_CONTEXT, LocationOrigin.EVENT_RECORD_COMMON_CONTEXT),
    (SCOPE_SPECIFIC_CONTEXT, LocationOrigin.EVENT_RECORD_SPECIFIC_CONTEXT),
    (SCOPE_PAYLOAD, LocationOrigin.EVENT_RECORD_PAYLOAD),
)


class StructValue(dict):
    """Decoded structure field: member name -> value."""

    __slots__ = ("parent",)

    def __init__(self, parent: Any = None):
        super().__init__()
        self.parent = parent


class ArrayValue(list):
    """Decoded array field; `current` is the element being decoded."""

    __slots__ = ("parent", "length", "current")

    def __init__(self, parent: Any, length: int):
        super().__init__()
        self.parent = parent
        self.length = length
        self.current = None


def update_clock_value(current: int, value: int, length: int) -> int:
    """
    Update a running clock value with a `length`-bit timestamp field.

    The field holds the low bits of the clock; a value smaller than the
    current low bits means the low bits wrapped around.
    """
    if length >= 64:
        return value
    mask = (1 << length) - 1
    high = current & ~mask
    if value >= current & mask:
        return high + value
    return high + mask + 1 + value


@dataclass
class PacketInfo:
    """Packet-level properties gathered while decoding a data stream."""

    offset_bits: int
    total_length: int
    content_length: int
    data_stream_class_id: int = 0
    data_stream_id: Optional[int] = None
    sequence_number: Optional[int] = None
    discarded_snapshot: Optional[int] = None
    begin_ns: Optional[int] = None
    end_ns: Optional[int] = None
    event_count: int = 0


@dataclass
class EventRecord:
    """One decoded event record with its scopes."""

    event_class: EventRecordClass
    timestamp_ns: int
    scopes: Dict[str, Optional[StructValue]] = field(default_factory=dict)
    packet_index: int = 0

    @property
    def name(self) -> str:
        if self.event_class.name is not None:
            return self.event_class.name
        return f"event-record-class-{self.event_class.id}"


class StreamDecoder:
    """
    Decoder for a single data stream.

    Iterating yields EventRecords in stream order. Any encoding violation
    raises MalformedInput; events yielded before the error remain valid.
    """

    def __init__(self, data: bytes, metadata: CTFMetadata, name: str = ""):
        self.name = name
        self.metadata = metadata
        self.packets: List[PacketInfo] = []
        self.discarded_events = 0

        self._reader = BitReader(data, name=name)
        self._scopes: Dict[LocationOrigin, StructValue] = {}
        self._roles: Dict[str, Tuple[int, int]] = {}
        self._clock_value = 0
        self._clock: Optional[ClockClass] = None
        self._last_snapshot = 0

        self._decoders = {
            FieldClassType.FIXED_LENGTH_BIT_ARRAY: self._decode_fixed_length,
            FieldClassType.FIXED_LENGTH_BIT_MAP: self._decode_fixed_length,
            FieldClassType.FIXED_LENGTH_BOOLEAN: self._decode_fixed_length,
            FieldClassType.FIXED_LENGTH_UNSIGNED_INTEGER: self._decode_fixed_length,
            FieldClassType.FIXED_LENGTH_SIGNED_INTEGER: self._decode_fixed_length,
            FieldClassType.FIXED_LENGTH_FLOATING_POINT_NUMBER: self._decode_fixed_length,
            FieldClassType.VARIABLE_LENGTH_UNSIGNED_INTEGER: self._decode_variable_length,
            FieldClassType.VARIABLE_LENGTH_SIGNED_INTEGER: self._decode_variable_length,
            FieldClassType.NULL_TERMINATED_STRING: self._decode_string,
            FieldClassType.STATIC_LENGTH_STRING: self._decode_string,
            FieldClassType.DYNAMIC_LENGTH_STRING: self._decode_string,
            FieldClassType.STATIC_LENGTH_BLOB: self._decode_blob,
            FieldClassType.DYNAMIC_LENGTH_BLOB: self._decode_blob,
            FieldClassType.STRUCTURE: self._decode_structure,
            FieldClassType.STATIC_LENGTH_ARRAY: self._decode_array,
            FieldClassType.DYNAMIC_LENGTH_ARRAY: self._decode_array,
            FieldClassType.OPTIONAL: self._decode_optional,
            FieldClassType.VARIANT: self._decode_variant,
        }

    def __iter__(self) -> Iterator[EventRecord]:
        return self.events()

    def _error(self, message: str) -> MalformedInput:
        return MalformedInput(f"{self.name}: {message} (bit offset {self._reader.pos})")

    # ════════════════════════════════════════════════════════════════════
    # Packets
    # ════════════════════════════════════════════════════════════════════

    def events(self) -> Iterator[EventRecord]:
        """Decode all packets of the stream, yielding their events."""
        reader = self._reader
        while reader.bits_remaining > 0:
            packet, dsc = self._decode_packet_preamble()
            packet_index = len(self.packets)
            self.packets.append(packet)

            while reader.pos - packet.offset_bits < packet.content_length:
                start = reader.pos
                record = self._decode_event(dsc, packet_index)
                if reader.pos - packet.offset_bits > packet.content_length:
                    raise self._error("event record extends past the packet content")
                if reader.pos == start:
                    raise self._error("event record has zero length")
                packet.event_count += 1
                yield record

            reader.seek(packet.offset_bits + packet.total_length)

        logger.debug(f"{self.name}: decoded {len(self.packets)} packets")

    def _decode_packet_preamble(self) -> Tuple[PacketInfo, DataStreamClass]:
        reader = self._reader
        offset = reader.pos
        self._scopes = {}

        header = self._decode_scope(self.metadata.packet_header, LocationOrigin.PACKET_HEADER)
        header_roles = self._roles
        if Role.PACKET_MAGIC_NUMBER in header_roles:
            magic = header_roles[Role.PACKET_MAGIC_NUMBER][0]
            if magic != PACKET_MAGIC_NUMBER:
                raise self._error(f"bad packet magic number 0x{magic:x}")
        if header is not None:
            self._verify_uuid(header)

        dsc_id = header_roles.get(Role.DATA_STREAM_CLASS_ID, (0, 0))[0]
        dsc = self.metadata.data_stream_classes.get(dsc_id)
        if dsc is None:
            raise self._error(f"packet refers to unknown data stream class {dsc_id}")
        self._clock = dsc.default_clock_class

        self._decode_scope(dsc.packet_context, LocationOrigin.PACKET_CONTEXT)
        roles = self._roles

        total = roles.get(Role.PACKET_TOTAL_LENGTH, (None, 0))[0]
        content = roles.get(Role.PACKET_CONTENT_LENGTH, (None, 0))[0]
        if total is None and content is None:
            total = content = reader.size_bits - offset
        elif total is None:
            total = content
        elif content is None:
            content = total
        if total == 0:
            raise self._error("packet has a zero total length")
        if content > total:
            raise self._error(f"packet content length {content} exceeds total length {total}")
        if offset + total > reader.size_bits:
            raise self._error(f"packet total length {total} extends past the end of the stream")
        if reader.pos - offset > content:
            raise self._error("packet header and context exceed the packet content length")

        packet = PacketInfo(
            offset_bits=offset,
            total_length=total,
            content_length=content,
            data_stream_class_id=dsc_id,
            data_stream_id=header_roles.get(Role.DATA_STREAM_ID, (None, 0))[0],
            sequence_number=roles.get(Role.PACKET_SEQUENCE_NUMBER, (None, 0))[0],
        )

        if self._clock is not None and Role.DEFAULT_CLOCK_TIMESTAMP in roles:
            packet.begin_ns = self._clock.cycles_to_ns_from_origin(self._clock_value)
        if self._clock is not None and Role.PACKET_END_DEFAULT_CLOCK_TIMESTAMP in roles:
            value, length = roles[Role.PACKET_END_DEFAULT_CLOCK_TIMESTAMP]
            end_value = update_clock_value(self._clock_value, value, length)
            packet.end_ns = self._clock.cycles_to_ns_from_origin(end_value)

        if Role.DISCARDED_EVENT_RECORD_COUNTER_SNAPSHOT in roles:
            snapshot = roles[Role.DISCARDED_EVENT_RECORD_COUNTER_SNAPSHOT][0]
            packet.discarded_snapshot = snapshot
            if snapshot > self._last_snapshot:
                discarded = snapshot - self._last_snapshot
                self.discarded_events += discarded
                logger.debug(f"{self.name}: {discarded} event records discarded before packet {len(self.packets)}")
            self._last_snapshot = snapshot

        return packet, dsc

    def _verify_uuid(self, header: StructValue) -> None:
        expected = self.metadata.preamble.uuid
        for value in self._iter_uuid_blobs(self.metadata.packet_header, header):
            if value != expected:
                raise self._error("packet metadata stream uuid does not match the preamble uuid")

    def _iter_uuid_blobs(self, fc: StructureClass, value: StructValue) -> Iterator[bytes]:
        for member in fc.members:
            member_value = value.get(member.name)
            if isinstance(member.field_class, StructureClass) and isinstance(member_value, StructValue):
                yield from self._iter_uuid_blobs(member.field_class, member_value)
            elif isinstance(member.field_class, BlobClass) and \
                    Role.METADATA_STREAM_UUID in member.field_class.roles:
                yield member_value

    # ════════════════════════════════════════════════════════════════════
    # Events
    # ════════════════════════════════════════════════════════════════════

    def _decode_event(self, dsc: DataStreamClass, packet_index: int) -> EventRecord:
        for _, origin in EVENT_SCOPES:
            self._scopes.pop(origin, None)

        header = self._decode_scope(dsc.event_header, LocationOrigin.EVENT_RECORD_HEADER)
        erc_id = self._roles.get(Role.EVENT_RECORD_CLASS_ID, (0, 0))[0]
        erc = dsc.event_record_classes.get(erc_id)
        if erc is None:
            raise self._error(f"unknown event record class {erc_id} in data stream class {dsc.id}")

        scopes = {
            SCOPE_HEADER: header,
            SCOPE_COMMON_CONTEXT: self._decode_scope(
                dsc.event_common_context, LocationOrigin.EVENT_RECORD_COMMON_CONTEXT),
            SCOPE_SPECIFIC_CONTEXT: self._decode_scope(
                erc.specific_context, LocationOrigin.EVENT_RECORD_SPECIFIC_CONTEXT),
            SCOPE_PAYLOAD: self._decode_scope(erc.payload, LocationOrigin.EVENT_RECORD_PAYLOAD),
        }

        timestamp = 0
        if self._clock is not None:
            timestamp = self._clock.cycles_to_ns_from_origin(self._clock_value)

        return EventRecord(event_class=erc, timestamp_ns=timestamp, scopes=scopes,
                           packet_index=packet_index)

    # ════════════════════════════════════════════════════════════════════
    # Fields
    # ════════════════════════════════════════════════════════════════════

    def _decode_scope(self, fc: Optional[StructureClass], origin: LocationOrigin) -> Optional[StructValue]:
        self._roles = {}
        if fc is None:
            return None
        root = StructValue()
        self._scopes[origin] = root
        self._reader.align(fc.alignment)
        self._decode_members(fc, root)
        return root

    def _decode_field(self, fc: FieldClass, container: Any) -> Any:
        self._reader.align(fc.alignment)
        return self._decoders[fc.type](fc, container)

    def _apply_roles(self, roles: Tuple[str, ...], value: int, length: int) -> None:
        for role in roles:
            self._roles[role] = (value, length)
            if role == Role.DEFAULT_CLOCK_TIMESTAMP:
                self._clock_value = update_clock_value(self._clock_value, value, length)

    def _decode_fixed_length(self, fc: FixedLengthClass, container: Any) -> Any:
        raw = self._reader.read_uint(fc.length, fc.byte_order)
        if fc.reverse_bit_order:
            raw = reverse_bits(raw, fc.length)

        if fc.type == FieldClassType.FIXED_LENGTH_BOOLEAN:
            return raw != 0
        if fc.type == FieldClassType.FIXED_LENGTH_FLOATING_POINT_NUMBER:
            if fc.length == 32:
                return struct.unpack("<f", raw.to_bytes(4, "little"))[0]
            return struct.unpack("<d", raw.to_bytes(8, "little"))[0]
        if fc.signed:
            value = sign_extend(raw, fc.length)
        else:
            value = raw
            if fc.roles:
                self._apply_roles(fc.roles, value, fc.length)
        return value

    def _decode_variable_length(self, fc: VariableLengthIntegerClass, container: Any) -> int:
        value = 0
        shift = 0
        while True:
            byte = self._reader.read_uint(8)
            value |= (byte & 0x7F) << shift
            shift += 7
            if not byte & 0x80:
                break
        if fc.signed:
            return sign_extend(value, shift)
        if fc.roles:
            self._apply_roles(fc.roles, value, shift)
        return value

    def _decode_string(self, fc: StringClass, container: Any) -> str:
        unit = fc.code_unit
        terminator = b"\x00" * unit

        if fc.type == FieldClassType.NULL_TERMINATED_STRING:
            size = self._reader.find_byte_sequence(terminator, unit)
            raw = self._reader.read_bytes(size)
            self._reader.read_bytes(unit)
        else:
            size = fc.length if fc.length_location is None else self._locate_int(
                fc.length_location, container)
            raw = self._reader.read_bytes(size)
            for offset in range(0, len(raw) - unit + 1, unit):
                if raw[offset:offset + unit] == terminator:
                    raw = raw[:offset]
                    break

        return raw.decode(fc.codec, errors="replace")

    def _decode_blob(self, fc: BlobClass, container: Any) -> bytes:
        size = fc.length if fc.length_location is None else self._locate_int(
            fc.length_location, container)
        return self._reader.read_bytes(size)

    def _decode_members(self, fc: StructureClass, value: StructValue) -> None:
        for member in fc.members:
            value[member.name] = self._decode_field(member.field_class, value)

    def _decode_structure(self, fc: StructureClass, container: Any) -> StructValue:
        value = StructValue(parent=container)
        if isinstance(container, ArrayValue):
            container.current = value
        self._decode_members(fc, value)
        return value

    def _decode_array(self, fc: ArrayClass, container: Any) -> ArrayValue:
        length = fc.length if fc.length_location is None else self._locate_int(
            fc.length_location, container)
        value = ArrayValue(parent=container, length=length)
        if isinstance(container, ArrayValue):
            container.current = value
        for _ in range(length):
            value.current = None
            element = self._decode_field(fc.element, value)
            value.append(element)
        value.current = None
        return value

    def _decode_optional(self, fc: OptionalClass, container: Any) -> Any:
        selector = self._locate(fc.selector_location, container)
        if isinstance(selector, bool):
            enabled = selector
        elif fc.selector_ranges is None:
            raise self._error("optional with an integer selector has no selector-field-ranges")
        else:
            enabled = fc.selector_ranges.contains(selector)
        if not enabled:
            return None
        return self._decode_field(fc.field_class, container)

    def _decode_variant(self, fc: VariantClass, container: Any) -> Any:
        selector = self._locate(fc.selector_location, container)
        option = fc.select(int(selector))
        if option is None:
            raise self._error(f"variant selector value {selector} matches no option")
        return self._decode_field(option.field_class, container)

    # ════════════════════════════════════════════════════════════════════
    # Field locations
    # ════════════════════════════════════════════════════════════════════

    def _locate_int(self, location: FieldLocation, container: Any) -> int:
        value = self._locate(location, container)
        if isinstance(value, bool) or value < 0:
            raise self._error(f"length field at {location} is not an unsigned integer")
        return value

    def _locate(self, location: FieldLocation, container: Any) -> Any:
        """Resolve a field location to a previously decoded integer or boolean."""
        if location.origin is not None:
            node = self._scopes.get(location.origin)
        else:
            node = container
        if not isinstance(node, StructValue):
            raise self._error(f"unable to locate field {location}")

        last = len(location.path) - 1
        for index, item in enumerate(location.path):
            if item is None:
                node = node.parent
                if node is None:
                    raise self._error(f"field location {location} leaves the root scope")
            else:
                if not isinstance(node, StructValue) or item not in node:
                    raise self._error(f"field location {location} points to a missing or undecoded field")
                node = node[item]

            while isinstance(node, ArrayValue):
                if len(node) >= node.length or node.current is None:
                    raise self._error(f"field location {location} goes through an array not being decoded")
                node = node.current

            if isinstance(node, StructValue):
                continue
            if isinstance(node, int):
                if index != last:
                    raise self._error(f"field location {location} continues past an integer field")
                return node
            raise self._error(f"field location {location} points to a non-integer field")

        raise self._error(f"field location {location} does not end at an integer field")
