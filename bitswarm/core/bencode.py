"""Bencode encoding and decoding.

Supported types: int, bytes (str is encoded as UTF-8), list, dict. Dict
keys are byte strings and are emitted in sorted order.
"""

from __future__ import annotations

from typing import Any

from bitswarm.utils.exceptions import BencodeError


class BencodeDecoder:
    """Decoder that keeps its position, so callers can slice raw values."""

    def __init__(self, data: bytes):
        """Initialize decoder over ``data``."""
        self.data = data
        self.pos = 0

    def decode(self) -> Any:
        """Decode one complete value; trailing bytes are an error."""
        value = self.decode_next()
        if self.pos != len(self.data):
            msg = f"Trailing data after bencoded value at position {self.pos}"
            raise BencodeError(msg)
        return value

    def decode_next(self) -> Any:
        """Decode the value starting at ``pos`` and advance past it."""
        if self.pos >= len(self.data):
            msg = "Unexpected end of data"
            raise BencodeError(msg)

        token = self.data[self.pos : self.pos + 1]
        if token == b"i":
            return self._decode_int()
        if token == b"l":
            return self._decode_list()
        if token == b"d":
            return self._decode_dict()
        if token.isdigit():
            return self._decode_bytes()
        msg = f"Invalid bencode token {token!r} at position {self.pos}"
        raise BencodeError(msg)

    def _decode_int(self) -> int:
        end = self.data.find(b"e", self.pos)
        if end == -1:
            msg = f"Unterminated integer at position {self.pos}"
            raise BencodeError(msg)
        raw = self.data[self.pos + 1 : end]
        digits = raw[1:] if raw.startswith(b"-") else raw
        # No leading zeros and no negative zero.
        if (
            not digits.isdigit()
            or (digits.startswith(b"0") and len(digits) > 1)
            or raw == b"-0"
        ):
            msg = f"Invalid integer {raw!r} at position {self.pos}"
            raise BencodeError(msg)
        value = int(raw)
        self.pos = end + 1
        return value

    def _decode_bytes(self) -> bytes:
        colon = self.data.find(b":", self.pos)
        if colon == -1:
            msg = f"Missing ':' in string at position {self.pos}"
            raise BencodeError(msg)
        raw_length = self.data[self.pos : colon]
        if not raw_length.isdigit() or (raw_length.startswith(b"0") and len(raw_length) > 1):
            msg = f"Invalid string length {raw_length!r} at position {self.pos}"
            raise BencodeError(msg)
        length = int(raw_length)
        start = colon + 1
        end = start + length
        if end > len(self.data):
            msg = f"String of length {length} at position {self.pos} runs past end of data"
            raise BencodeError(msg)
        self.pos = end
        return self.data[start:end]

    def _decode_list(self) -> list[Any]:
        self.pos += 1
        items: list[Any] = []
        while True:
            if self.pos >= len(self.data):
                msg = "Unterminated list"
                raise BencodeError(msg)
            if self.data[self.pos : self.pos + 1] == b"e":
                self.pos += 1
                return items
            items.append(self.decode_next())

    def _decode_dict(self) -> dict[bytes, Any]:
        self.pos += 1
        result: dict[bytes, Any] = {}
        while True:
            if self.pos >= len(self.data):
                msg = "Unterminated dictionary"
                raise BencodeError(msg)
            if self.data[self.pos : self.pos + 1] == b"e":
                self.pos += 1
                return result
            if not self.data[self.pos : self.pos + 1].isdigit():
                msg = f"Dictionary key must be a string at position {self.pos}"
                raise BencodeError(msg)
            key = self._decode_bytes()
            result[key] = self.decode_next()

    def find_value_span(self, key: bytes) -> tuple[int, int]:
        """Locate the raw bytes of ``key``'s value in a top-level dictionary.

        Returns:
            (start, end) offsets into ``data``

        Raises:
            BencodeError: data is not a dictionary or has no such key
        """
        self.pos = 0
        if self.data[:1] != b"d":
            msg = "Top-level value is not a dictionary"
            raise BencodeError(msg)
        self.pos = 1
        while self.pos < len(self.data) and self.data[self.pos : self.pos + 1] != b"e":
            current = self._decode_bytes()
            start = self.pos
            self.decode_next()
            if current == key:
                return start, self.pos
        msg = f"Key {key!r} not found"
        raise BencodeError(msg)


class BencodeEncoder:
    """Encoder for Python values."""

    def encode(self, obj: Any) -> bytes:
        """Encode ``obj`` to bencode."""
        out = bytearray()
        self._encode(obj, out)
        return bytes(out)

    def _encode(self, obj: Any, out: bytearray) -> None:
        if isinstance(obj, bool):
            msg = "Booleans cannot be bencoded"
            raise BencodeError(msg)
        if isinstance(obj, int):
            out += b"i%de" % obj
        elif isinstance(obj, (bytes, bytearray)):
            out += b"%d:" % len(obj)
            out += obj
        elif isinstance(obj, str):
            self._encode(obj.encode("utf-8"), out)
        elif isinstance(obj, (list, tuple)):
            out += b"l"
            for item in obj:
                self._encode(item, out)
            out += b"e"
        elif isinstance(obj, dict):
            out += b"d"
            items = []
            for key, value in obj.items():
                if isinstance(key, str):
                    key = key.encode("utf-8")
                elif not isinstance(key, bytes):
                    msg = f"Dictionary keys must be strings, got {type(key).__name__}"
                    raise BencodeError(msg)
                items.append((key, value))
            for key, value in sorted(items, key=lambda item: item[0]):
                self._encode(key, out)
                self._encode(value, out)
            out += b"e"
        else:
            msg = f"Cannot bencode type {type(obj).__name__}"
            raise BencodeError(msg)


def decode(data: bytes) -> Any:
    """Decode a complete bencoded value."""
    return BencodeDecoder(data).decode()


def encode(obj: Any) -> bytes:
    """Encode a value to bencode."""
    return BencodeEncoder().encode(obj)
