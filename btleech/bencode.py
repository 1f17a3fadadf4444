"""Bencoding module for BitTorrent protocol.

Byte strings decode to ``bytes``, integers to ``int``, lists to ``list`` and
dictionaries to ``dict`` keyed by ``bytes``. Encoding accepts ``str`` as UTF-8
and always emits dictionary keys in sorted raw-byte order, which keeps the
re-encoded info dictionary (and therefore the info hash) stable.
"""

from __future__ import annotations

from typing import Any

from btleech.exceptions import BencodeDecodeError, BencodeEncodeError

__all__ = [
    "BencodeDecodeError",
    "BencodeDecoder",
    "BencodeEncodeError",
    "BencodeEncoder",
    "decode",
    "encode",
]

_DIGITS = b"0123456789"


class BencodeDecoder:
    """Recursive-descent decoder over a byte string."""

    def __init__(self, data: bytes):
        """Initialize decoder.

        Args:
            data: Bencoded input

        """
        if not isinstance(data, (bytes, bytearray, memoryview)):
            msg = f"Expected bytes, got {type(data).__name__}"
            raise BencodeDecodeError(msg)
        self.data = bytes(data)
        self.pos = 0

    def decode(self) -> Any:
        """Decode the next value starting at the current position."""
        if self.pos >= len(self.data):
            msg = "Unexpected end of data"
            raise BencodeDecodeError(msg, {"position": self.pos})

        token = self.data[self.pos : self.pos + 1]
        if token == b"i":
            return self._decode_int()
        if token == b"l":
            return self._decode_list()
        if token == b"d":
            return self._decode_dict()
        if token.isdigit():
            return self._decode_string()

        msg = f"Invalid token {token!r}"
        raise BencodeDecodeError(msg, {"position": self.pos})

    def _decode_int(self) -> int:
        end = self.data.find(b"e", self.pos)
        if end == -1:
            msg = "Unterminated integer"
            raise BencodeDecodeError(msg, {"position": self.pos})

        raw = self.data[self.pos + 1 : end]
        if not raw or raw == b"-":
            msg = "Empty integer"
            raise BencodeDecodeError(msg, {"position": self.pos})
        if raw.startswith(b"-0") or (raw.startswith(b"0") and len(raw) > 1):
            msg = f"Invalid integer {raw!r}"
            raise BencodeDecodeError(msg, {"position": self.pos})

        digits = raw[1:] if raw.startswith(b"-") else raw
        if not all(c in _DIGITS for c in digits):
            msg = f"Invalid integer {raw!r}"
            raise BencodeDecodeError(msg, {"position": self.pos})

        self.pos = end + 1
        return int(raw)

    def _decode_string(self) -> bytes:
        colon = self.data.find(b":", self.pos)
        if colon == -1:
            msg = "Missing ':' in string length"
            raise BencodeDecodeError(msg, {"position": self.pos})

        raw_length = self.data[self.pos : colon]
        if not raw_length or not all(c in _DIGITS for c in raw_length):
            msg = f"Invalid string length {raw_length!r}"
            raise BencodeDecodeError(msg, {"position": self.pos})
        if raw_length.startswith(b"0") and len(raw_length) > 1:
            msg = f"Invalid string length {raw_length!r}"
            raise BencodeDecodeError(msg, {"position": self.pos})

        length = int(raw_length)
        start = colon + 1
        end = start + length
        if end > len(self.data):
            msg = f"String length {length} exceeds available data"
            raise BencodeDecodeError(msg, {"position": self.pos})

        self.pos = end
        return self.data[start:end]

    def _decode_list(self) -> list[Any]:
        self.pos += 1
        result = []
        while True:
            if self.pos >= len(self.data):
                msg = "Unterminated list"
                raise BencodeDecodeError(msg, {"position": self.pos})
            if self.data[self.pos : self.pos + 1] == b"e":
                self.pos += 1
                return result
            result.append(self.decode())

    def _decode_dict(self) -> dict[bytes, Any]:
        self.pos += 1
        result: dict[bytes, Any] = {}
        while True:
            if self.pos >= len(self.data):
                msg = "Unterminated dictionary"
                raise BencodeDecodeError(msg, {"position": self.pos})
            if self.data[self.pos : self.pos + 1] == b"e":
                self.pos += 1
                return result
            if not self.data[self.pos : self.pos + 1].isdigit():
                msg = "Dictionary keys must be byte strings"
                raise BencodeDecodeError(msg, {"position": self.pos})
            key = self._decode_string()
            result[key] = self.decode()


class BencodeEncoder:
    """Encoder producing canonical bencode."""

    def encode(self, value: Any) -> bytes:
        """Encode a Python value to bencoded bytes."""
        out = bytearray()
        self._encode_into(value, out)
        return bytes(out)

    def _encode_into(self, value: Any, out: bytearray) -> None:
        # bool is an int subclass but has no bencode form
        if isinstance(value, bool):
            msg = "Cannot bencode a boolean"
            raise BencodeEncodeError(msg)
        if isinstance(value, int):
            out += b"i%de" % value
        elif isinstance(value, (bytes, bytearray, memoryview)):
            raw = bytes(value)
            out += b"%d:" % len(raw)
            out += raw
        elif isinstance(value, str):
            self._encode_into(value.encode("utf-8"), out)
        elif isinstance(value, (list, tuple)):
            out += b"l"
            for item in value:
                self._encode_into(item, out)
            out += b"e"
        elif isinstance(value, dict):
            items = []
            for key, item in value.items():
                if isinstance(key, str):
                    key = key.encode("utf-8")
                elif not isinstance(key, bytes):
                    msg = f"Dictionary key must be bytes or str, got {type(key).__name__}"
                    raise BencodeEncodeError(msg)
                items.append((key, item))
            items.sort(key=lambda kv: kv[0])
            out += b"d"
            for key, item in items:
                self._encode_into(key, out)
                self._encode_into(item, out)
            out += b"e"
        else:
            msg = f"Cannot bencode value of type {type(value).__name__}"
            raise BencodeEncodeError(msg)


def decode(data: bytes) -> Any:
    """Decode a complete bencoded value; trailing bytes are an error."""
    decoder = BencodeDecoder(data)
    value = decoder.decode()
    if decoder.pos != len(decoder.data):
        msg = f"Trailing data after bencoded value ({len(decoder.data) - decoder.pos} bytes)"
        raise BencodeDecodeError(msg, {"position": decoder.pos})
    return value


def encode(value: Any) -> bytes:
    """Encode a Python value to bencoded bytes."""
    return BencodeEncoder().encode(value)
