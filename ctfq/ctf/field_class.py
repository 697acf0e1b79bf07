"""
CTFQ Field Classes

Typed representation of CTF2 field classes as parsed from metadata
fragments. Each field class knows its alignment requirement; decoding
lives in ctfq.ctf.decoder.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ctfq.core.errors import MalformedInput
from ctfq.ctf.bit_reader import ByteOrder


class FieldClassType(str, Enum):
    """CTF2 field class `type` property values."""

    FIXED_LENGTH_BIT_ARRAY = "fixed-length-bit-array"
    FIXED_LENGTH_BIT_MAP = "fixed-length-bit-map"
    FIXED_LENGTH_BOOLEAN = "fixed-length-boolean"
    FIXED_LENGTH_UNSIGNED_INTEGER = "fixed-length-unsigned-integer"
    FIXED_LENGTH_SIGNED_INTEGER = "fixed-length-signed-integer"
    FIXED_LENGTH_FLOATING_POINT_NUMBER = "fixed-length-floating-point-number"
    VARIABLE_LENGTH_UNSIGNED_INTEGER = "variable-length-unsigned-integer"
    VARIABLE_LENGTH_SIGNED_INTEGER = "variable-length-signed-integer"
    NULL_TERMINATED_STRING = "null-terminated-string"
    STATIC_LENGTH_STRING = "static-length-string"
    DYNAMIC_LENGTH_STRING = "dynamic-length-string"
    STATIC_LENGTH_BLOB = "static-length-blob"
    DYNAMIC_LENGTH_BLOB = "dynamic-length-blob"
    STRUCTURE = "structure"
    STATIC_LENGTH_ARRAY = "static-length-array"
    DYNAMIC_LENGTH_ARRAY = "dynamic-length-array"
    OPTIONAL = "optional"
    VARIANT = "variant"


class LocationOrigin(str, Enum):
    """Root scopes a field location may start from."""

    PACKET_HEADER = "packet-header"
    PACKET_CONTEXT = "packet-context"
    EVENT_RECORD_HEADER = "event-record-header"
    EVENT_RECORD_COMMON_CONTEXT = "event-record-common-context"
    EVENT_RECORD_SPECIFIC_CONTEXT = "event-record-specific-context"
    EVENT_RECORD_PAYLOAD = "event-record-payload"


FIXED_LENGTH_TYPES = {
    FieldClassType.FIXED_LENGTH_BIT_ARRAY,
    FieldClassType.FIXED_LENGTH_BIT_MAP,
    FieldClassType.FIXED_LENGTH_BOOLEAN,
    FieldClassType.FIXED_LENGTH_UNSIGNED_INTEGER,
    FieldClassType.FIXED_LENGTH_SIGNED_INTEGER,
    FieldClassType.FIXED_LENGTH_FLOATING_POINT_NUMBER,
}

STRING_ENCODINGS = {
    "utf-8": ("utf-8", 1),
    "utf-16be": ("utf-16-be", 2),
    "utf-16le": ("utf-16-le", 2),
    "utf-32be": ("utf-32-be", 4),
    "utf-32le": ("utf-32-le", 4),
}


@dataclass(frozen=True)
class FieldLocation:
    """Location of a previously decoded length or selector field."""

    origin: Optional[LocationOrigin]
    path: Tuple[Optional[str], ...]

    def __str__(self) -> str:
        origin = self.origin.value if self.origin else "relative"
        return f"{origin}:{'/'.join(p if p is not None else '..' for p in self.path)}"


@dataclass(frozen=True)
class IntegerRangeSet:
    """Set of inclusive integer ranges used by optionals and variants."""

    ranges: Tuple[Tuple[int, int], ...]

    def contains(self, value: int) -> bool:
        return any(lo <= value <= hi for lo, hi in self.ranges)


@dataclass
class FieldClass:
    """Base for all field classes."""

    type: FieldClassType
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def alignment(self) -> int:
        return 1


@dataclass
class FixedLengthClass(FieldClass):
    """Fixed-length bit array and its integer/boolean/float refinements."""

    length: int = 0
    byte_order: str = ByteOrder.LITTLE
    reverse_bit_order: bool = False
    align: int = 1
    roles: Tuple[str, ...] = ()

    @property
    def alignment(self) -> int:
        return self.align

    @property
    def signed(self) -> bool:
        return self.type == FieldClassType.FIXED_LENGTH_SIGNED_INTEGER


@dataclass
class VariableLengthIntegerClass(FieldClass):
    roles: Tuple[str, ...] = ()

    @property
    def alignment(self) -> int:
        return 8

    @property
    def signed(self) -> bool:
        return self.type == FieldClassType.VARIABLE_LENGTH_SIGNED_INTEGER


@dataclass
class StringClass(FieldClass):
    """Null-terminated, static-length or dynamic-length string."""

    encoding: str = "utf-8"
    length: int = 0
    length_location: Optional[FieldLocation] = None

    @property
    def alignment(self) -> int:
        return 8

    @property
    def code_unit(self) -> int:
        return STRING_ENCODINGS[self.encoding][1]

    @property
    def codec(self) -> str:
        return STRING_ENCODINGS[self.encoding][0]


@dataclass
class BlobClass(FieldClass):
    length: int = 0
    length_location: Optional[FieldLocation] = None
    media_type: str = "application/octet-stream"
    roles: Tuple[str, ...] = ()

    @property
    def alignment(self) -> int:
        return 8


@dataclass
class StructureMember:
    name: str
    field_class: FieldClass


@dataclass
class StructureClass(FieldClass):
    members: List[StructureMember] = field(default_factory=list)
    minimum_alignment: int = 1

    @property
    def alignment(self) -> int:
        return max([self.minimum_alignment] + [m.field_class.alignment for m in self.members])

    def member(self, name: str) -> Optional[StructureMember]:
        for m in self.members:
            if m.name == name:
                return m
        return None


@dataclass
class ArrayClass(FieldClass):
    element: Optional[FieldClass] = None
    length: int = 0
    length_location: Optional[FieldLocation] = None
    minimum_alignment: int = 1

    @property
    def alignment(self) -> int:
        return max(self.minimum_alignment, self.element.alignment)


@dataclass
class OptionalClass(FieldClass):
    selector_location: Optional[FieldLocation] = None
    selector_ranges: Optional[IntegerRangeSet] = None
    field_class: Optional[FieldClass] = None


@dataclass
class VariantOption:
    name: Optional[str]
    selector_ranges: IntegerRangeSet
    field_class: FieldClass


@dataclass
class VariantClass(FieldClass):
    selector_location: Optional[FieldLocation] = None
    options: List[VariantOption] = field(default_factory=list)

    def select(self, value: int) -> Optional[VariantOption]:
        for option in self.options:
            if option.selector_ranges.contains(value):
                return option
        return None


# ════════════════════════════════════════════════════════════════════════
# Parsing
# ════════════════════════════════════════════════════════════════════════


def _require(obj: Dict[str, Any], key: str, what: str) -> Any:
    if not isinstance(obj, dict):
        raise MalformedInput(f"{what} must be an object, got {obj!r}")
    if key not in obj:
        raise MalformedInput(f"{what} is missing required property '{key}'")
    return obj[key]


def _positive_int(obj: Dict[str, Any], key: str, what: str, default: Optional[int] = None) -> int:
    value = obj.get(key, default) if default is not None else _require(obj, key, what)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise MalformedInput(f"{what} property '{key}' must be a non-negative integer, got {value!r}")
    return value


def _roles(obj: Dict[str, Any], what: str) -> Tuple[str, ...]:
    roles = obj.get("roles", [])
    if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
        raise MalformedInput(f"{what} property 'roles' must be an array of strings, got {roles!r}")
    return tuple(roles)


def _alignment(obj: Dict[str, Any], key: str, what: str) -> int:
    value = _positive_int(obj, key, what, default=1)
    if value == 0 or value & (value - 1):
        raise MalformedInput(f"{what} property '{key}' must be a power of two, got {value}")
    return value


def parse_field_location(obj: Any) -> FieldLocation:
    """Parse a `{origin?, path}` field location object."""
    if not isinstance(obj, dict):
        raise MalformedInput(f"Field location must be an object, got {obj!r}")
    path = _require(obj, "path", "field location")
    if not isinstance(path, list) or not path:
        raise MalformedInput("Field location path must be a non-empty array")
    if any(p is not None and not isinstance(p, str) for p in path):
        raise MalformedInput(f"Field location path items must be strings or null: {path!r}")

    origin = None
    if "origin" in obj:
        try:
            origin = LocationOrigin(obj["origin"])
        except ValueError:
            raise MalformedInput(f"Unknown field location origin '{obj['origin']}'")
    return FieldLocation(origin=origin, path=tuple(path))


def parse_integer_ranges(obj: Any) -> IntegerRangeSet:
    if not isinstance(obj, list):
        raise MalformedInput(f"Integer range set must be an array, got {obj!r}")
    ranges = []
    for rng in obj:
        if (not isinstance(rng, list) or len(rng) != 2
                or not all(isinstance(v, int) for v in rng) or rng[0] > rng[1]):
            raise MalformedInput(f"Invalid integer range {rng!r}")
        ranges.append((rng[0], rng[1]))
    return IntegerRangeSet(ranges=tuple(ranges))


def parse_field_class(obj: Any, aliases: Dict[str, FieldClass]) -> FieldClass:
    """
    Parse a field class JSON value.

    A string is a reference to a previously declared field class alias.
    """
    if isinstance(obj, str):
        if obj not in aliases:
            raise MalformedInput(f"Unknown field class alias '{obj}'")
        return aliases[obj]
    if not isinstance(obj, dict):
        raise MalformedInput(f"Field class must be an object or alias name, got {obj!r}")

    raw_type = _require(obj, "type", "field class")
    try:
        fc_type = FieldClassType(raw_type)
    except ValueError:
        raise MalformedInput(f"Unknown field class type '{raw_type}'")

    what = f"{fc_type.value} field class"
    attributes = obj.get("attributes", {})
    if not isinstance(attributes, dict):
        raise MalformedInput(f"{what} property 'attributes' must be an object, got {attributes!r}")

    if fc_type in FIXED_LENGTH_TYPES:
        return _parse_fixed_length(obj, fc_type, attributes, what)

    if fc_type in (FieldClassType.VARIABLE_LENGTH_UNSIGNED_INTEGER,
                   FieldClassType.VARIABLE_LENGTH_SIGNED_INTEGER):
        return VariableLengthIntegerClass(
            type=fc_type, attributes=attributes, roles=_roles(obj, what),
        )

    if fc_type in (FieldClassType.NULL_TERMINATED_STRING,
                   FieldClassType.STATIC_LENGTH_STRING,
                   FieldClassType.DYNAMIC_LENGTH_STRING):
        encoding = obj.get("encoding", "utf-8")
        if not isinstance(encoding, str) or encoding not in STRING_ENCODINGS:
            raise MalformedInput(f"Unsupported string encoding '{encoding}'")
        string_class = StringClass(type=fc_type, attributes=attributes, encoding=encoding)
        if fc_type == FieldClassType.STATIC_LENGTH_STRING:
            string_class.length = _positive_int(obj, "length", what)
        elif fc_type == FieldClassType.DYNAMIC_LENGTH_STRING:
            string_class.length_location = parse_field_location(
                _require(obj, "length-field-location", what))
        return string_class

    if fc_type in (FieldClassType.STATIC_LENGTH_BLOB, FieldClassType.DYNAMIC_LENGTH_BLOB):
        blob = BlobClass(
            type=fc_type, attributes=attributes,
            media_type=obj.get("media-type", "application/octet-stream"),
            roles=_roles(obj, what),
        )
        if fc_type == FieldClassType.STATIC_LENGTH_BLOB:
            blob.length = _positive_int(obj, "length", what)
        else:
            blob.length_location = parse_field_location(
                _require(obj, "length-field-location", what))
        return blob

    if fc_type == FieldClassType.STRUCTURE:
        members = []
        seen = set()
        member_classes = obj.get("member-classes", [])
        if not isinstance(member_classes, list):
            raise MalformedInput(f"{what} property 'member-classes' must be an array")
        for member in member_classes:
            name = _require(member, "name", "structure member")
            if not isinstance(name, str):
                raise MalformedInput(f"Structure member name must be a string, got {name!r}")
            if name in seen:
                raise MalformedInput(f"Duplicate structure member '{name}'")
            seen.add(name)
            members.append(StructureMember(
                name=name,
                field_class=parse_field_class(_require(member, "field-class", "structure member"), aliases),
            ))
        return StructureClass(
            type=fc_type, attributes=attributes, members=members,
            minimum_alignment=_alignment(obj, "minimum-alignment", what),
        )

    if fc_type in (FieldClassType.STATIC_LENGTH_ARRAY, FieldClassType.DYNAMIC_LENGTH_ARRAY):
        array = ArrayClass(
            type=fc_type, attributes=attributes,
            element=parse_field_class(_require(obj, "element-field-class", what), aliases),
            minimum_alignment=_alignment(obj, "minimum-alignment", what),
        )
        if fc_type == FieldClassType.STATIC_LENGTH_ARRAY:
            array.length = _positive_int(obj, "length", what)
        else:
            array.length_location = parse_field_location(
                _require(obj, "length-field-location", what))
        return array

    if fc_type == FieldClassType.OPTIONAL:
        ranges = obj.get("selector-field-ranges")
        return OptionalClass(
            type=fc_type, attributes=attributes,
            selector_location=parse_field_location(_require(obj, "selector-field-location", what)),
            selector_ranges=parse_integer_ranges(ranges) if ranges is not None else None,
            field_class=parse_field_class(_require(obj, "field-class", what), aliases),
        )

    # Variant
    raw_options = _require(obj, "options", what)
    if not isinstance(raw_options, list):
        raise MalformedInput(f"{what} property 'options' must be an array")
    options = []
    for option in raw_options:
        selector_ranges = parse_integer_ranges(_require(option, "selector-field-ranges", "variant option"))
        options.append(VariantOption(
            name=option.get("name"),
            selector_ranges=selector_ranges,
            field_class=parse_field_class(_require(option, "field-class", "variant option"), aliases),
        ))
    if not options:
        raise MalformedInput("Variant field class has no options")
    return VariantClass(
        type=fc_type, attributes=attributes,
        selector_location=parse_field_location(_require(obj, "selector-field-location", what)),
        options=options,
    )


def _parse_fixed_length(obj: Dict[str, Any], fc_type: FieldClassType,
                        attributes: Dict[str, Any], what: str) -> FixedLengthClass:
    length = _positive_int(obj, "length", what)
    if length == 0:
        raise MalformedInput(f"{what} must have a non-zero length")
    if fc_type == FieldClassType.FIXED_LENGTH_FLOATING_POINT_NUMBER and length not in (32, 64):
        raise MalformedInput(f"Unsupported floating point number length {length}")

    byte_order = _require(obj, "byte-order", what)
    if byte_order not in (ByteOrder.LITTLE, ByteOrder.BIG):
        raise MalformedInput(f"Unknown byte order '{byte_order}'")

    default_bit_order = "first-to-last" if byte_order == ByteOrder.LITTLE else "last-to-first"
    bit_order = obj.get("bit-order", default_bit_order)
    if bit_order not in ("first-to-last", "last-to-first"):
        raise MalformedInput(f"Unknown bit order '{bit_order}'")

    return FixedLengthClass(
        type=fc_type,
        attributes=attributes,
        length=length,
        byte_order=byte_order,
        reverse_bit_order=bit_order != default_bit_order,
        align=_alignment(obj, "alignment", what),
        roles=_roles(obj, what),
    )
