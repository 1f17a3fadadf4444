"""Async peer connections.

An :class:`AsyncPeerConnection` owns one TCP stream to a remote peer. It is
created by a successful handshake and carries the remote peer id, the set of
pieces the peer claims to have and the last choke status the peer announced.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from btleech.config import get_config
from btleech.exceptions import (
    HandshakeError,
    MessageError,
    PeerConnectionError,
    PeerTimeoutError,
    ProtocolError,
)
from btleech.logging_config import get_logger
from btleech.peer import (
    HANDSHAKE_LENGTH,
    LENGTH_PREFIX_SIZE,
    BitfieldMessage,
    ChokeMessage,
    Handshake,
    HaveMessage,
    KeepAliveMessage,
    PeerMessage,
    UnchokeMessage,
    bitfield_to_indices,
    decode_body,
)

if TYPE_CHECKING:
    from btleech.models import NetworkConfig, PeerInfo, TorrentInfo

logger = get_logger(__name__)


class ConnectionState(Enum):
    """States of a peer connection."""

    CONNECTED = "connected"
    BITFIELD_RECEIVED = "bitfield_received"
    CLOSED = "closed"


async def perform_handshake(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    info_hash: bytes,
    peer_id: bytes,
) -> bytes:
    """Exchange handshakes over an open stream and return the remote peer id.

    Raises:
        HandshakeError: On a short read, a malformed reply or an info hash
            different from ours
        PeerConnectionError: If the stream fails while sending

    """
    handshake = Handshake(info_hash, peer_id)
    try:
        writer.write(handshake.encode())
        await writer.drain()
    except (ConnectionError, OSError) as e:
        msg = f"Failed to send handshake: {e}"
        raise PeerConnectionError(msg) from e

    try:
        reply = await reader.readexactly(HANDSHAKE_LENGTH)
    except asyncio.IncompleteReadError as e:
        msg = f"Handshake too short: got {len(e.partial)} of {HANDSHAKE_LENGTH} bytes"
        raise HandshakeError(msg) from e
    except (ConnectionError, OSError) as e:
        msg = f"Connection lost during handshake: {e}"
        raise HandshakeError(msg) from e

    peer_handshake = Handshake.decode(reply)
    if peer_handshake.info_hash != info_hash:
        msg = (
            f"Info hash mismatch: expected {info_hash.hex()}, "
            f"got {peer_handshake.info_hash.hex()}"
        )
        raise HandshakeError(msg)

    return peer_handshake.peer_id


@dataclass
class AsyncPeerConnection:
    """One handshaken TCP connection to a remote peer."""

    peer_info: PeerInfo
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    remote_peer_id: bytes
    config: NetworkConfig = field(default_factory=lambda: get_config().network)
    num_pieces: int | None = None
    bitfield: set[int] = field(default_factory=set)
    peer_choking: bool = True
    state: ConnectionState = ConnectionState.CONNECTED

    def __str__(self):
        return f"AsyncPeerConnection({self.peer_info}, state={self.state.value})"

    @classmethod
    async def connect(
        cls,
        peer_info: PeerInfo,
        info_hash: bytes,
        peer_id: bytes,
        config: NetworkConfig | None = None,
        num_pieces: int | None = None,
    ) -> AsyncPeerConnection:
        """Open a TCP connection to a peer and handshake.

        Raises:
            PeerConnectionError: If the TCP connection cannot be established
            HandshakeError: If the handshake fails
            PeerTimeoutError: If the handshake does not complete in time

        """
        config = config or get_config().network
        logger.debug("Connecting to peer %s", peer_info)

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(peer_info.ip, peer_info.port),
                timeout=config.connection_timeout,
            )
        except asyncio.TimeoutError as e:
            msg = f"Timed out connecting to {peer_info}"
            raise PeerConnectionError(msg) from e
        except OSError as e:
            msg = f"Failed to connect to {peer_info}: {e}"
            raise PeerConnectionError(msg) from e

        try:
            remote_peer_id = await asyncio.wait_for(
                perform_handshake(reader, writer, info_hash, peer_id),
                timeout=config.handshake_timeout,
            )
        except asyncio.TimeoutError as e:
            await _close_writer(writer)
            msg = f"Handshake with {peer_info} timed out"
            raise PeerTimeoutError(msg) from e
        except BaseException:
            await _close_writer(writer)
            raise

        logger.info("Handshake with %s complete, peer id %s", peer_info, remote_peer_id.hex())
        return cls(
            peer_info=peer_info,
            reader=reader,
            writer=writer,
            remote_peer_id=remote_peer_id,
            config=config,
            num_pieces=num_pieces,
        )

    async def send(self, message: PeerMessage) -> None:
        """Send one message."""
        if self.state is ConnectionState.CLOSED:
            msg = f"Connection to {self.peer_info} is closed"
            raise PeerConnectionError(msg)
        try:
            self.writer.write(message.encode())
            await self.writer.drain()
        except (ConnectionError, OSError) as e:
            msg = f"Failed to send to {self.peer_info}: {e}"
            raise PeerConnectionError(msg) from e
        logger.debug("Sent %r to %s", message, self.peer_info)

    async def receive(self) -> PeerMessage:
        """Read and decode the next message.

        Choke and Unchoke update ``peer_choking``; Have adds to ``bitfield``.

        Raises:
            PeerConnectionError: On EOF or a reset stream
            MessageError: On an oversized or malformed message

        """
        if self.state is ConnectionState.CLOSED:
            msg = f"Connection to {self.peer_info} is closed"
            raise PeerConnectionError(msg)
        try:
            length_data = await self.reader.readexactly(LENGTH_PREFIX_SIZE)
            length = int.from_bytes(length_data, "big")
            if length > self.config.max_message_length:
                msg = (
                    f"Message of {length} bytes from {self.peer_info} exceeds "
                    f"limit of {self.config.max_message_length}"
                )
                raise MessageError(msg)
            body = await self.reader.readexactly(length) if length else b""
        except asyncio.IncompleteReadError as e:
            msg = f"Connection closed by {self.peer_info}"
            raise PeerConnectionError(msg) from e
        except (ConnectionError, OSError) as e:
            msg = f"Failed to read from {self.peer_info}: {e}"
            raise PeerConnectionError(msg) from e

        message = decode_body(body)
        self._track(message)
        logger.debug("Received %s from %s", type(message).__name__, self.peer_info)
        return message

    def _track(self, message: PeerMessage) -> None:
        if isinstance(message, ChokeMessage):
            self.peer_choking = True
        elif isinstance(message, UnchokeMessage):
            self.peer_choking = False
        elif isinstance(message, HaveMessage):
            self.bitfield.add(message.piece_index)

    async def await_bitfield(self, timeout: float | None = None) -> set[int]:
        """Wait for the peer's Bitfield, skipping keep-alives.

        Once the bitfield has arrived, later calls return it without reading.

        Raises:
            ProtocolError: If any other message arrives first
            PeerTimeoutError: If nothing arrives within ``timeout``

        """
        if self.state is ConnectionState.BITFIELD_RECEIVED:
            return set(self.bitfield)
        if timeout is None:
            timeout = self.config.handshake_timeout
        try:
            return await asyncio.wait_for(self._await_bitfield(), timeout=timeout)
        except asyncio.TimeoutError as e:
            msg = f"No bitfield from {self.peer_info} within {timeout}s"
            raise PeerTimeoutError(msg) from e

    async def _await_bitfield(self) -> set[int]:
        while True:
            message = await self.receive()
            if isinstance(message, KeepAliveMessage):
                continue
            if not isinstance(message, BitfieldMessage):
                msg = f"Expected bitfield from {self.peer_info}, got {type(message).__name__}"
                raise ProtocolError(msg)
            self.bitfield = bitfield_to_indices(message.bitfield, self.num_pieces)
            self.state = ConnectionState.BITFIELD_RECEIVED
            logger.debug("%s has %d pieces", self.peer_info, len(self.bitfield))
            return set(self.bitfield)

    def has_piece(self, piece_index: int) -> bool:
        """Whether the peer claims to have a piece."""
        return piece_index in self.bitfield

    async def close(self) -> None:
        """Close the stream. Safe to call more than once."""
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        await _close_writer(self.writer)
        logger.debug("Disconnected from peer %s", self.peer_info)

    async def __aenter__(self) -> AsyncPeerConnection:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    # the peer may already have reset the stream
    with contextlib.suppress(ConnectionError, OSError):
        await writer.wait_closed()


async def connect_and_handshake(
    peer_info: PeerInfo,
    torrent: TorrentInfo,
    peer_id: bytes,
    config: NetworkConfig | None = None,
) -> AsyncPeerConnection:
    """Connect, handshake and wait for the peer's bitfield.

    The returned connection is ready to download pieces. It is closed again
    if anything after the TCP connect fails.
    """
    connection = await AsyncPeerConnection.connect(
        peer_info,
        torrent.info_hash(),
        peer_id,
        config=config,
        num_pieces=torrent.num_pieces,
    )
    try:
        await connection.await_bitfield()
    except BaseException:
        await connection.close()
        raise
    return connection
