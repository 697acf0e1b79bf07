"""
CTFQ CTF2 Decoding Layer

Metadata stream parsing, field classes and data stream decoding for
Common Trace Format version 2 traces.
"""

from ctfq.ctf.bit_reader import BitReader, ByteOrder

from ctfq.ctf.field_class import (
    FieldClass,
    FieldClassType,
    FieldLocation,
    LocationOrigin,
    StructureClass,
    parse_field_class,
)

from ctfq.ctf.metadata import (
    ClockClass,
    CTFMetadata,
    DataStreamClass,
    EventRecordClass,
    Preamble,
    TraceClass,
    parse_metadata_bytes,
    parse_metadata_file,
)

from ctfq.ctf.decoder import (
    ArrayValue,
    EventRecord,
    PacketInfo,
    StreamDecoder,
    StructValue,
)

__all__ = [
    # Bit reader
    "BitReader",
    "ByteOrder",
    # Field classes
    "FieldClass",
    "FieldClassType",
    "FieldLocation",
    "LocationOrigin",
    "StructureClass",
    "parse_field_class",
    # Metadata
    "ClockClass",
    "CTFMetadata",
    "DataStreamClass",
    "EventRecordClass",
    "Preamble",
    "TraceClass",
    "parse_metadata_bytes",
    "parse_metadata_file",
    # Decoder
    "ArrayValue",
    "EventRecord",
    "PacketInfo",
    "StreamDecoder",
    "StructValue",
]
