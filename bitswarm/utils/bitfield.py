"""Packed bitfield for BitTorrent piece availability.

Bits are numbered big-endian within each byte as on the BitTorrent wire:
bit 7 of byte 0 is piece 0.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from bitswarm.utils.exceptions import IndexOutOfRange, ProtocolViolation

# Set bits per byte value, for count() without per-bit loops.
_POPCOUNT = bytes(bin(i).count("1") for i in range(256))


class Bitfield:
    """Fixed-size set of piece indices backed by a bytearray."""

    __slots__ = ("_bits", "_length")

    def __init__(self, length: int):
        """Create an all-zero bitfield of ``length`` pieces."""
        if length < 0:
            msg = f"Bitfield length must be non-negative, got {length}"
            raise ValueError(msg)
        self._length = length
        self._bits = bytearray((length + 7) // 8)

    @classmethod
    def from_bytes(cls, data: bytes, length: int) -> Bitfield:
        """Build a bitfield from a wire payload.

        Raises:
            ProtocolViolation: payload has the wrong size or spare bits set
        """
        expected = (length + 7) // 8
        if len(data) != expected:
            msg = f"Bitfield payload must be {expected} bytes, got {len(data)}"
            raise ProtocolViolation(msg)
        spare = expected * 8 - length
        if spare and data[-1] & ((1 << spare) - 1):
            msg = "Bitfield has spare bits set past the last piece"
            raise ProtocolViolation(msg)
        bitfield = cls(length)
        bitfield._bits[:] = data
        return bitfield

    @classmethod
    def from_indices(cls, indices: Iterable[int], length: int) -> Bitfield:
        """Build a bitfield with the given indices set."""
        bitfield = cls(length)
        for i in indices:
            bitfield.set(i)
        return bitfield

    def __len__(self) -> int:
        """Number of pieces tracked."""
        return self._length

    def _check(self, index: int) -> None:
        if not 0 <= index < self._length:
            msg = f"Bitfield index {index} out of range [0, {self._length})"
            raise IndexOutOfRange(msg)

    def set(self, index: int) -> None:
        """Mark piece ``index`` as present."""
        self._check(index)
        self._bits[index >> 3] |= 0x80 >> (index & 7)

    def clear(self, index: int) -> None:
        """Mark piece ``index`` as absent."""
        self._check(index)
        self._bits[index >> 3] &= ~(0x80 >> (index & 7)) & 0xFF

    def get(self, index: int) -> bool:
        """Return whether piece ``index`` is present."""
        self._check(index)
        return bool(self._bits[index >> 3] & (0x80 >> (index & 7)))

    __contains__ = get

    def count(self) -> int:
        """Number of set bits."""
        return sum(_POPCOUNT[b] for b in self._bits)

    def is_complete(self) -> bool:
        """True when every piece is present."""
        return self.count() == self._length

    def union_missing(self, other: Bitfield) -> set[int]:
        """Indices present in ``other`` but not in ``self``."""
        if len(other) != self._length:
            msg = f"Bitfield length mismatch: {self._length} != {len(other)}"
            raise ValueError(msg)
        missing: set[int] = set()
        for byte_idx, (mine, theirs) in enumerate(zip(self._bits, other._bits)):
            diff = theirs & ~mine & 0xFF
            if not diff:
                continue
            base = byte_idx << 3
            for bit in range(8):
                if diff & (0x80 >> bit):
                    missing.add(base + bit)
        return missing

    def __iter__(self) -> Iterator[int]:
        """Iterate over set indices in ascending order."""
        for byte_idx, byte_val in enumerate(self._bits):
            if not byte_val:
                continue
            base = byte_idx << 3
            for bit in range(8):
                if byte_val & (0x80 >> bit):
                    yield base + bit

    def to_bytes(self) -> bytes:
        """Wire representation."""
        return bytes(self._bits)

    def copy(self) -> Bitfield:
        """Independent copy."""
        clone = Bitfield(self._length)
        clone._bits[:] = self._bits
        return clone

    def __eq__(self, other: object) -> bool:
        """Bitfields are equal when length and bits match."""
        if not isinstance(other, Bitfield):
            return NotImplemented
        return self._length == other._length and self._bits == other._bits

    def __repr__(self) -> str:
        """Debug representation."""
        return f"Bitfield({self.count()}/{self._length})"
