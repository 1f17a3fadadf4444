"""Peer wire protocol messages for BitTorrent.

Every message on the wire is a 4-byte big-endian length prefix followed by a
one-byte message id and a payload. A zero length prefix is a keep-alive.
The 68-byte handshake that opens a connection is not length-prefixed and is
handled by :class:`Handshake`.
"""

from __future__ import annotations

import struct
from typing import ClassVar

from btleech.exceptions import HandshakeError, MessageError
from btleech.models import SHA1_DIGEST_SIZE, MessageType

LENGTH_PREFIX_SIZE = 4
HANDSHAKE_LENGTH = 68

_LENGTH = struct.Struct("!I")
_INDEX = struct.Struct("!I")
_REQUEST = struct.Struct("!III")
_PIECE_HEADER = struct.Struct("!II")


class Handshake:
    """BitTorrent handshake message."""

    PROTOCOL_STRING: bytes = b"BitTorrent protocol"
    RESERVED_BYTES: bytes = b"\x00" * 8

    def __init__(self, info_hash: bytes, peer_id: bytes) -> None:
        """Initialize handshake.

        Args:
            info_hash: 20-byte SHA-1 hash of info dictionary
            peer_id: 20-byte peer ID

        """
        if len(info_hash) != SHA1_DIGEST_SIZE:
            msg = f"Info hash must be 20 bytes, got {len(info_hash)}"
            raise HandshakeError(msg)
        if len(peer_id) != 20:
            msg = f"Peer ID must be 20 bytes, got {len(peer_id)}"
            raise HandshakeError(msg)

        self.info_hash: bytes = info_hash
        self.peer_id: bytes = peer_id

    def encode(self) -> bytes:
        """Encode handshake to bytes.

        Format: <protocol len><protocol><reserved><info_hash><peer_id>
        Total: 1 + 19 + 8 + 20 + 20 = 68 bytes
        """
        return (
            bytes([len(self.PROTOCOL_STRING)])
            + self.PROTOCOL_STRING
            + self.RESERVED_BYTES
            + self.info_hash
            + self.peer_id
        )

    @classmethod
    def decode(cls, data: bytes) -> Handshake:
        """Decode a received handshake.

        The protocol name length is taken from the first byte and the name and
        reserved bytes are skipped without inspection.

        Raises:
            HandshakeError: If data is too short for the announced layout

        """
        if len(data) != HANDSHAKE_LENGTH:
            msg = f"Handshake must be {HANDSHAKE_LENGTH} bytes, got {len(data)}"
            raise HandshakeError(msg)

        offset = 1 + data[0] + len(cls.RESERVED_BYTES)
        if offset + 40 > len(data):
            msg = f"Invalid protocol length: {data[0]}"
            raise HandshakeError(msg)

        return cls(data[offset : offset + 20], data[offset + 20 : offset + 40])

    def __eq__(self, other) -> bool:
        if not isinstance(other, Handshake):
            return NotImplemented
        return self.info_hash == other.info_hash and self.peer_id == other.peer_id

    def __hash__(self) -> int:
        return hash((self.info_hash, self.peer_id))

    def __repr__(self) -> str:
        return f"Handshake(info_hash={self.info_hash.hex()}, peer_id={self.peer_id!r})"


class PeerMessage:
    """Base class for peer messages.

    Subclasses list their payload attributes in ``FIELDS``; equality and
    ``repr`` are derived from them.
    """

    MESSAGE_TYPE: ClassVar[MessageType | None] = None
    FIELDS: ClassVar[tuple[str, ...]] = ()

    @property
    def message_id(self) -> int | None:
        return None if self.MESSAGE_TYPE is None else int(self.MESSAGE_TYPE)

    def payload(self) -> bytes:
        """Encode the payload that follows the message id."""
        return b""

    def encode(self) -> bytes:
        """Encode message to bytes, including the length prefix."""
        body = bytes([self.message_id]) + self.payload()
        return _LENGTH.pack(len(body)) + body

    @classmethod
    def from_payload(cls, payload: bytes) -> PeerMessage:
        """Build the message from the bytes after the message id."""
        if payload:
            msg = f"{cls.__name__} takes no payload, got {len(payload)} bytes"
            raise MessageError(msg)
        return cls()

    def _values(self) -> tuple:
        return tuple(getattr(self, name) for name in self.FIELDS)

    def __eq__(self, other) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return self._values() == other._values()

    def __hash__(self) -> int:
        return hash((type(self), self._values()))

    def __repr__(self) -> str:
        args = ", ".join(f"{name}={getattr(self, name)!r}" for name in self.FIELDS)
        return f"{type(self).__name__}({args})"


class KeepAliveMessage(PeerMessage):
    """Keep-alive message (length = 0)."""

    def encode(self) -> bytes:
        """Encode keep-alive message."""
        return _LENGTH.pack(0)


class ChokeMessage(PeerMessage):
    """Choke message."""

    MESSAGE_TYPE = MessageType.CHOKE


class UnchokeMessage(PeerMessage):
    """Unchoke message."""

    MESSAGE_TYPE = MessageType.UNCHOKE


class InterestedMessage(PeerMessage):
    """Interested message."""

    MESSAGE_TYPE = MessageType.INTERESTED


class NotInterestedMessage(PeerMessage):
    """Not interested message."""

    MESSAGE_TYPE = MessageType.NOT_INTERESTED


class HaveMessage(PeerMessage):
    """Have message (announces that peer has a piece)."""

    MESSAGE_TYPE = MessageType.HAVE
    FIELDS = ("piece_index",)

    def __init__(self, piece_index: int):
        self.piece_index = piece_index

    def payload(self) -> bytes:
        return _INDEX.pack(self.piece_index)

    @classmethod
    def from_payload(cls, payload: bytes) -> HaveMessage:
        if len(payload) != _INDEX.size:
            msg = f"Have payload must be 4 bytes, got {len(payload)}"
            raise MessageError(msg)
        return cls(_INDEX.unpack(payload)[0])


class BitfieldMessage(PeerMessage):
    """Bitfield message (shows which pieces the peer has)."""

    MESSAGE_TYPE = MessageType.BITFIELD
    FIELDS = ("bitfield",)

    def __init__(self, bitfield: bytes):
        """Initialize bitfield message.

        Args:
            bitfield: Bitfield bytes, the high bit of byte 0 being piece 0

        """
        self.bitfield = bytes(bitfield)

    def payload(self) -> bytes:
        return self.bitfield

    @classmethod
    def from_payload(cls, payload: bytes) -> BitfieldMessage:
        return cls(payload)

    def has_piece(self, piece_index: int) -> bool:
        """Check if the bitfield marks a piece as present."""
        if piece_index < 0:
            return False
        byte_index, bit_index = divmod(piece_index, 8)
        if byte_index >= len(self.bitfield):
            return False
        return bool(self.bitfield[byte_index] & (0x80 >> bit_index))


class _BlockMessage(PeerMessage):
    FIELDS = ("piece_index", "begin", "length")

    def __init__(self, piece_index: int, begin: int, length: int):
        self.piece_index = piece_index
        self.begin = begin
        self.length = length

    def payload(self) -> bytes:
        return _REQUEST.pack(self.piece_index, self.begin, self.length)

    @classmethod
    def from_payload(cls, payload: bytes):
        if len(payload) != _REQUEST.size:
            msg = f"{cls.__name__} payload must be 12 bytes, got {len(payload)}"
            raise MessageError(msg)
        return cls(*_REQUEST.unpack(payload))


class RequestMessage(_BlockMessage):
    """Request message (request a block from a piece)."""

    MESSAGE_TYPE = MessageType.REQUEST


class CancelMessage(_BlockMessage):
    """Cancel message (cancel a previous request)."""

    MESSAGE_TYPE = MessageType.CANCEL


class PieceMessage(PeerMessage):
    """Piece message (contains a block of piece data)."""

    MESSAGE_TYPE = MessageType.PIECE
    FIELDS = ("piece_index", "begin", "block")

    def __init__(self, piece_index: int, begin: int, block: bytes):
        """Initialize piece message.

        Args:
            piece_index: Index of the piece
            begin: Byte offset within the piece
            block: The actual data block

        """
        self.piece_index = piece_index
        self.begin = begin
        self.block = bytes(block)

    def payload(self) -> bytes:
        return _PIECE_HEADER.pack(self.piece_index, self.begin) + self.block

    @classmethod
    def from_payload(cls, payload: bytes) -> PieceMessage:
        if len(payload) <= _PIECE_HEADER.size:
            msg = f"Piece payload too short: {len(payload)} bytes"
            raise MessageError(msg)
        piece_index, begin = _PIECE_HEADER.unpack_from(payload)
        return cls(piece_index, begin, payload[_PIECE_HEADER.size :])


MESSAGE_CLASSES: dict[int, type[PeerMessage]] = {
    int(cls.MESSAGE_TYPE): cls
    for cls in (
        ChokeMessage,
        UnchokeMessage,
        InterestedMessage,
        NotInterestedMessage,
        HaveMessage,
        BitfieldMessage,
        RequestMessage,
        PieceMessage,
        CancelMessage,
    )
}


def decode_body(body: bytes) -> PeerMessage:
    """Decode a message whose length prefix has already been consumed."""
    if not body:
        return KeepAliveMessage()
    message_cls = MESSAGE_CLASSES.get(body[0])
    if message_cls is None:
        msg = f"Unknown message type: {body[0]}"
        raise MessageError(msg)
    return message_cls.from_payload(bytes(body[1:]))


def decode_message(data: bytes) -> PeerMessage:
    """Decode one complete length-prefixed message.

    Raises:
        MessageError: If the buffer is not exactly one well-formed message

    """
    if len(data) < LENGTH_PREFIX_SIZE:
        msg = f"Message too short: {len(data)} bytes"
        raise MessageError(msg)

    length = _LENGTH.unpack_from(data)[0]
    if length == 0 and len(data) == LENGTH_PREFIX_SIZE:
        return KeepAliveMessage()
    if len(data) < LENGTH_PREFIX_SIZE + 1:
        msg = f"Message too short: {len(data)} bytes"
        raise MessageError(msg)
    if len(data) != LENGTH_PREFIX_SIZE + length:
        msg = (
            f"Message length mismatch: prefix says {length}, "
            f"got {len(data) - LENGTH_PREFIX_SIZE} bytes"
        )
        raise MessageError(msg)

    return decode_body(data[LENGTH_PREFIX_SIZE:])


def bitfield_to_indices(bitfield: bytes, num_pieces: int | None = None) -> set[int]:
    """Return the piece indices set in an MSB-first bitfield.

    Bits at or beyond ``num_pieces`` (spare bits of the last byte) are ignored.
    """
    indices = set()
    for byte_index, byte in enumerate(bitfield):
        if not byte:
            continue
        for bit_index in range(8):
            if byte & (0x80 >> bit_index):
                indices.add(byte_index * 8 + bit_index)
    if num_pieces is not None:
        indices = {i for i in indices if i < num_pieces}
    return indices


def indices_to_bitfield(indices, num_pieces: int) -> bytes:
    """Build an MSB-first bitfield of ``ceil(num_pieces / 8)`` bytes."""
    bitfield = bytearray((num_pieces + 7) // 8)
    for index in indices:
        if index < 0 or index >= num_pieces:
            msg = f"Piece index {index} out of range for {num_pieces} pieces"
            raise ValueError(msg)
        bitfield[index // 8] |= 0x80 >> (index % 8)
    return bytes(bitfield)
