"""Bencode encoding and decoding.

Dictionaries decode with ``bytes`` keys and strings decode as ``bytes``; the
caller decides which values are text. ``BencodeDecoder`` exposes ``pos`` so a
caller can find where the first value ends, which metadata exchange needs to
split a dictionary header from the raw payload that follows it.
"""

from __future__ import annotations

from typing import Any

from swarmget.exceptions import BencodeError


class BencodeDecodeError(BencodeError):
    """Raised for malformed bencoded input."""


class BencodeEncodeError(BencodeError):
    """Raised for values that have no bencode representation."""


class BencodeDecoder:
    """Incremental bencode decoder over a byte string."""

    def __init__(self, data: bytes):
        """Initialize decoder at offset zero."""
        self.data = data
        self.pos = 0

    def decode(self) -> Any:
        """Decode one value starting at ``pos`` and advance past it."""
        if self.pos >= len(self.data):
            msg = "Unexpected end of data"
            raise BencodeDecodeError(msg, {"pos": self.pos})
        token = self.data[self.pos : self.pos + 1]
        if token == b"i":
            return self._decode_int()
        if token == b"l":
            return self._decode_list()
        if token == b"d":
            return self._decode_dict()
        if token.isdigit():
            return self._decode_bytes()
        msg = f"Invalid token {token!r}"
        raise BencodeDecodeError(msg, {"pos": self.pos})

    def _decode_int(self) -> int:
        end = self.data.find(b"e", self.pos)
        if end == -1:
            msg = "Unterminated integer"
            raise BencodeDecodeError(msg, {"pos": self.pos})
        raw = self.data[self.pos + 1 : end]
        if (
            not raw
            or raw == b"-0"
            or (raw.startswith(b"0") and len(raw) > 1)
            or raw.startswith(b"-0")
        ):
            msg = f"Invalid integer {raw!r}"
            raise BencodeDecodeError(msg, {"pos": self.pos})
        try:
            value = int(raw)
        except ValueError as e:
            msg = f"Invalid integer {raw!r}"
            raise BencodeDecodeError(msg, {"pos": self.pos}) from e
        self.pos = end + 1
        return value

    def _decode_bytes(self) -> bytes:
        colon = self.data.find(b":", self.pos)
        if colon == -1:
            msg = "Missing string length separator"
            raise BencodeDecodeError(msg, {"pos": self.pos})
        raw_len = self.data[self.pos : colon]
        if not raw_len.isdigit() or (raw_len.startswith(b"0") and len(raw_len) > 1):
            msg = f"Invalid string length {raw_len!r}"
            raise BencodeDecodeError(msg, {"pos": self.pos})
        length = int(raw_len)
        start = colon + 1
        end = start + length
        if end > len(self.data):
            msg = "String extends past end of data"
            raise BencodeDecodeError(msg, {"pos": self.pos, "length": length})
        self.pos = end
        return self.data[start:end]

    def _decode_list(self) -> list[Any]:
        self.pos += 1
        items: list[Any] = []
        while True:
            if self.pos >= len(self.data):
                msg = "Unterminated list"
                raise BencodeDecodeError(msg, {"pos": self.pos})
            if self.data[self.pos : self.pos + 1] == b"e":
                self.pos += 1
                return items
            items.append(self.decode())

    def _decode_dict(self) -> dict[bytes, Any]:
        self.pos += 1
        result: dict[bytes, Any] = {}
        while True:
            if self.pos >= len(self.data):
                msg = "Unterminated dictionary"
                raise BencodeDecodeError(msg, {"pos": self.pos})
            if self.data[self.pos : self.pos + 1] == b"e":
                self.pos += 1
                return result
            key = self.decode()
            if not isinstance(key, bytes):
                msg = "Dictionary key must be a byte string"
                raise BencodeDecodeError(msg, {"pos": self.pos})
            result[key] = self.decode()


class BencodeEncoder:
    """Bencode encoder with canonical (sorted) dictionary keys."""

    def encode(self, value: Any) -> bytes:
        """Encode a value to bencoded bytes."""
        out = bytearray()
        self._encode(value, out)
        return bytes(out)

    def _encode(self, value: Any, out: bytearray) -> None:
        if isinstance(value, bool):
            msg = "Booleans cannot be bencoded"
            raise BencodeEncodeError(msg)
        if isinstance(value, int):
            out += b"i%de" % value
        elif isinstance(value, (bytes, bytearray)):
            out += b"%d:" % len(value)
            out += value
        elif isinstance(value, str):
            self._encode(value.encode("utf-8"), out)
        elif isinstance(value, (list, tuple)):
            out += b"l"
            for item in value:
                self._encode(item, out)
            out += b"e"
        elif isinstance(value, dict):
            out += b"d"
            items = []
            for key, item in value.items():
                raw_key = key.encode("utf-8") if isinstance(key, str) else key
                if not isinstance(raw_key, bytes):
                    msg = f"Dictionary key must be str or bytes, got {type(key).__name__}"
                    raise BencodeEncodeError(msg)
                items.append((raw_key, item))
            for raw_key, item in sorted(items, key=lambda kv: kv[0]):
                self._encode(raw_key, out)
                self._encode(item, out)
            out += b"e"
        else:
            msg = f"Cannot bencode {type(value).__name__}"
            raise BencodeEncodeError(msg)


def decode(data: bytes) -> Any:
    """Decode a complete bencoded value; trailing bytes are an error."""
    decoder = BencodeDecoder(data)
    value = decoder.decode()
    if decoder.pos != len(data):
        msg = "Trailing data after bencoded value"
        raise BencodeDecodeError(msg, {"pos": decoder.pos})
    return value


def encode(value: Any) -> bytes:
    """Encode a value to bencoded bytes."""
    return BencodeEncoder().encode(value)
