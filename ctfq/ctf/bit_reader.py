"""
CTFQ Bit Reader

Bit-granular reader over a data stream buffer. Little-endian fields are
read least significant bit first, big-endian fields most significant bit
first, as CTF2 lays them out.
"""

from ctfq.core.errors import MalformedInput


class ByteOrder:
    LITTLE = "little-endian"
    BIG = "big-endian"


class BitReader:
    """Sequential reader with an absolute bit cursor."""

    def __init__(self, data: bytes, name: str = ""):
        self._data = data
        self.name = name
        self.pos = 0
        self.size_bits = len(data) * 8

    @property
    def bits_remaining(self) -> int:
        return self.size_bits - self.pos

    def _require(self, count: int) -> None:
        if count > self.bits_remaining:
            raise MalformedInput(
                f"{self.name or 'stream'}: need {count} bits at bit offset "
                f"{self.pos}, only {self.bits_remaining} left"
            )

    def align(self, alignment: int) -> None:
        """Move the cursor to the next multiple of `alignment` bits."""
        if alignment > 1:
            aligned = (self.pos + alignment - 1) // alignment * alignment
            self._require(aligned - self.pos)
            self.pos = aligned

    def seek(self, pos: int) -> None:
        if pos < 0 or pos > self.size_bits:
            raise MalformedInput(f"{self.name or 'stream'}: seek to bit {pos} out of range")
        self.pos = pos

    def read_uint(self, length: int, byte_order: str = ByteOrder.LITTLE) -> int:
        """Read an unsigned bit array of `length` bits."""
        if length == 0:
            return 0
        self._require(length)

        start_byte = self.pos // 8
        bit_in_byte = self.pos % 8
        end_byte = (self.pos + length + 7) // 8
        chunk = self._data[start_byte:end_byte]
        mask = (1 << length) - 1

        if byte_order == ByteOrder.BIG:
            span = (end_byte - start_byte) * 8
            value = (int.from_bytes(chunk, "big") >> (span - bit_in_byte - length)) & mask
        else:
            value = (int.from_bytes(chunk, "little") >> bit_in_byte) & mask

        self.pos += length
        return value

    def read_bytes(self, count: int) -> bytes:
        """Read `count` whole bytes. The cursor must be byte aligned."""
        if self.pos % 8:
            raise MalformedInput(f"{self.name or 'stream'}: byte read at unaligned bit {self.pos}")
        self._require(count * 8)
        start = self.pos // 8
        self.pos += count * 8
        return self._data[start:start + count]

    def find_byte_sequence(self, terminator: bytes, unit: int) -> int:
        """
        Return the byte count up to (excluding) the first `terminator`
        code unit at a multiple of `unit` bytes from the cursor.
        """
        start = self.pos // 8
        offset = start
        while offset + unit <= len(self._data):
            if self._data[offset:offset + unit] == terminator:
                return offset - start
            offset += unit
        raise MalformedInput(f"{self.name or 'stream'}: unterminated string at bit {self.pos}")


def reverse_bits(value: int, length: int) -> int:
    """Reverse the order of the low `length` bits of `value`."""
    result = 0
    for _ in range(length):
        result = (result << 1) | (value & 1)
        value >>= 1
    return result


def sign_extend(value: int, length: int) -> int:
    """Interpret the low `length` bits of `value` as two's complement."""
    if length and value & (1 << (length - 1)):
        return value - (1 << length)
    return value
