"""
CTFQ Test Suite - Data Stream Decoder Tests
===========================================
Tests for decoding CTF2 data streams into event records.
"""

import struct

import pytest

from ctfq.core.errors import MalformedInput
from ctfq.ctf.decoder import StreamDecoder, update_clock_value
from ctfq.ctf.metadata import parse_metadata_bytes


U8 = {"type": "fixed-length-unsigned-integer", "length": 8, "byte-order": "little-endian"}


def decode(ctf, payload, data, event_header=None, clock=False, trace_class=None):
    """Decode `data` with a single event record class whose payload is `payload`."""
    fragments = [ctf.preamble_fragment()]
    if trace_class:
        fragments.append(trace_class)
    dsc = {"type": "data-stream-class", "id": 0}
    if clock:
        fragments.append({"type": "clock-class", "id": "c", "frequency": 1_000_000_000})
        dsc["default-clock-class-id"] = "c"
    if event_header:
        dsc["event-record-header-field-class"] = event_header
    fragments.append(dsc)
    fragments.append({"type": "event-record-class", "id": 0, "name": "ev",
                      "payload-field-class": payload})

    metadata = parse_metadata_bytes(ctf.json_sequence(fragments))
    decoder = StreamDecoder(data, metadata, name="stream")
    return list(decoder), decoder


class TestFieldDecoding:
    """Tests for individual field class decoding."""

    def test_signed_and_float(self, ctf):
        payload = ctf.struct_class(
            ("s", {"type": "fixed-length-signed-integer", "length": 16, "byte-order": "little-endian"}),
            ("f", {"type": "fixed-length-floating-point-number", "length": 64,
                   "byte-order": "little-endian"}),
            ("b", {"type": "fixed-length-boolean", "length": 8, "byte-order": "little-endian"}),
        )
        data = struct.pack("<hdB", -2, 1.5, 1)

        records, _ = decode(ctf, payload, data)

        assert records[0].scopes["payload"] == {"s": -2, "f": 1.5, "b": True}

    def test_big_endian_bit_fields(self, ctf):
        payload = ctf.struct_class(
            ("hi", {"type": "fixed-length-unsigned-integer", "length": 4, "byte-order": "big-endian"}),
            ("lo", {"type": "fixed-length-unsigned-integer", "length": 12, "byte-order": "big-endian"}),
        )
        records, _ = decode(ctf, payload, bytes([0xAB, 0xCD]))

        assert records[0].scopes["payload"] == {"hi": 0xA, "lo": 0xBCD}

    def test_dynamic_length_array(self, ctf):
        """Array length comes from a previously decoded payload field."""
        payload = ctf.struct_class(
            ("len", U8),
            ("items", {
                "type": "dynamic-length-array",
                "length-field-location": {"origin": "event-record-payload", "path": ["len"]},
                "element-field-class": U8,
            }),
        )
        records, _ = decode(ctf, payload, bytes([3, 1, 2, 3, 2, 9, 8]))

        assert [r.scopes["payload"]["items"] for r in records] == [[1, 2, 3], [9, 8]]

    def test_optional(self, ctf):
        payload = ctf.struct_class(
            ("flag", {"type": "fixed-length-boolean", "length": 8, "byte-order": "little-endian"}),
            ("value", {
                "type": "optional",
                "selector-field-location": {"path": ["flag"]},
                "field-class": {"type": "fixed-length-unsigned-integer", "length": 16,
                                "byte-order": "little-endian"},
            }),
        )
        records, _ = decode(ctf, payload, bytes([1, 0x34, 0x12, 0]))

        assert records[0].scopes["payload"]["value"] == 0x1234
        assert records[1].scopes["payload"]["value"] is None

    def test_variant(self, ctf):
        payload = ctf.struct_class(
            ("tag", U8),
            ("v", {
                "type": "variant",
                "selector-field-location": {"path": ["tag"]},
                "options": [
                    {"name": "num", "selector-field-ranges": [[0, 0]], "field-class": U8},
                    {"name": "str", "selector-field-ranges": [[1, 1]],
                     "field-class": {"type": "null-terminated-string"}},
                ],
            }),
        )
        records, _ = decode(ctf, payload, bytes([0, 7, 1]) + b"hi\x00")

        assert [r.scopes["payload"]["v"] for r in records] == [7, "hi"]

    def test_variant_without_matching_option(self, ctf):
        payload = ctf.struct_class(
            ("tag", U8),
            ("v", {
                "type": "variant",
                "selector-field-location": {"path": ["tag"]},
                "options": [{"selector-field-ranges": [[0, 0]], "field-class": U8}],
            }),
        )
        with pytest.raises(MalformedInput, match="no option"):
            decode(ctf, payload, bytes([5, 1]))

    def test_variable_length_integers(self, ctf):
        payload = ctf.struct_class(
            ("u", {"type": "variable-length-unsigned-integer"}),
            ("s", {"type": "variable-length-signed-integer"}),
        )
        records, _ = decode(ctf, payload, bytes([0xE5, 0x8E, 0x26, 0x7F]))

        assert records[0].scopes["payload"] == {"u": 624485, "s": -1}

    def test_strings(self, ctf):
        payload = ctf.struct_class(
            ("fixed", {"type": "static-length-string", "length": 4}),
            ("n", U8),
            ("dyn", {"type": "dynamic-length-string",
                     "length-field-location": {"path": ["n"]}}),
            ("wide", {"type": "null-terminated-string", "encoding": "utf-16le"}),
        )
        data = b"ab\x00\x00" + bytes([3]) + b"xyz" + "ok".encode("utf-16-le") + b"\x00\x00"
        records, _ = decode(ctf, payload, data)

        assert records[0].scopes["payload"] == {"fixed": "ab", "n": 3, "dyn": "xyz", "wide": "ok"}

    def test_location_to_undecoded_field(self, ctf):
        payload = ctf.struct_class(
            ("items", {
                "type": "dynamic-length-array",
                "length-field-location": {"path": ["len"]},
                "element-field-class": U8,
            }),
            ("len", U8),
        )
        with pytest.raises(MalformedInput, match="undecoded"):
            decode(ctf, payload, bytes([1, 1]))


class TestClock:
    """Tests for default clock tracking."""

    def test_update_clock_value_wraps(self):
        assert update_clock_value(0, 250, 8) == 250
        assert update_clock_value(250, 5, 8) == 261
        assert update_clock_value(261, 10, 8) == 266
        assert update_clock_value(12345, 7, 64) == 7

    def test_timestamps_across_wraparound(self, ctf):
        header = ctf.struct_class(("ts", {"type": "fixed-length-unsigned-integer", "length": 8,
                                          "byte-order": "little-endian",
                                          "roles": ["default-clock-timestamp"]}))
        payload = ctf.struct_class(("x", U8))

        records, _ = decode(ctf, payload, bytes([250, 1, 5, 2]), event_header=header, clock=True)

        assert [r.timestamp_ns for r in records] == [250, 261]


class TestPackets:
    """Tests for packet framing."""

    def trace_class(self, ctf):
        return {
            "type": "trace-class",
            "packet-header-field-class": ctf.struct_class(
                ("magic", ctf.uint_class(32, ["packet-magic-number"])),
                ("uuid", {"type": "static-length-blob", "length": 16,
                          "roles": ["metadata-stream-uuid"]}),
            ),
        }

    def test_valid_header(self, ctf):
        data = struct.pack("<I16s", ctf.packet_magic, ctf.uuid) + bytes([42])
        records, decoder = decode(ctf, ctf.struct_class(("x", U8)), data,
                                  trace_class=self.trace_class(ctf))

        assert records[0].scopes["payload"]["x"] == 42
        assert len(decoder.packets) == 1
        assert decoder.packets[0].event_count == 1

    def test_bad_magic(self, ctf):
        data = struct.pack("<I16s", 0xDEADBEEF, ctf.uuid) + bytes([42])

        with pytest.raises(MalformedInput, match="magic"):
            decode(ctf, ctf.struct_class(("x", U8)), data, trace_class=self.trace_class(ctf))

    def test_uuid_mismatch(self, ctf):
        data = struct.pack("<I16s", ctf.packet_magic, bytes(16)) + bytes([42])

        with pytest.raises(MalformedInput, match="uuid"):
            decode(ctf, ctf.struct_class(("x", U8)), data, trace_class=self.trace_class(ctf))

    def test_truncated_event(self, ctf):
        payload = ctf.struct_class(("x", ctf.uint_class(32)))

        with pytest.raises(MalformedInput):
            decode(ctf, payload, bytes([1, 0, 0, 0, 2, 0]))
