"""Per-connection piece download state machine.

A piece is fetched as a run of block requests over one connection. At most
``pipeline_depth`` requests are in flight; blocks must arrive in request order
and the assembled piece is checked against its SHA-1 digest before it is
returned.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from btleech.exceptions import PeerTimeoutError, ProtocolError, VerificationError
from btleech.logging_config import get_logger
from btleech.peer import (
    ChokeMessage,
    HaveMessage,
    InterestedMessage,
    KeepAliveMessage,
    PieceMessage,
    RequestMessage,
    UnchokeMessage,
)

if TYPE_CHECKING:
    from btleech.models import TorrentInfo
    from btleech.peer_connection import AsyncPeerConnection

DEFAULT_BLOCK_SIZE = 16 * 1024
DEFAULT_PIPELINE_DEPTH = 5

logger = get_logger(__name__)


class ChokeStatus(Enum):
    """Whether the remote peer currently lets us request blocks."""

    CHOKED = "choked"
    UNCHOKED = "unchoked"


@dataclass(frozen=True)
class BlockRequest:
    """A contiguous byte range of one piece."""

    piece_index: int
    block_offset: int
    block_length: int

    def to_message(self) -> RequestMessage:
        return RequestMessage(self.piece_index, self.block_offset, self.block_length)


@dataclass(frozen=True)
class PieceAssignment:
    """A piece handed to one connection for download."""

    piece_index: int
    piece_length: int
    expected_hash: bytes

    @classmethod
    def from_torrent(
        cls,
        torrent: TorrentInfo,
        piece_index: int,
        piece_hashes: list[bytes] | None = None,
    ) -> PieceAssignment:
        """Build the assignment for a piece of a torrent.

        Callers building many assignments should split the hashes once and
        pass them in as ``piece_hashes``.
        """
        if piece_hashes is None:
            piece_hashes = torrent.piece_hashes()
        return cls(
            piece_index=piece_index,
            piece_length=torrent.piece_size(piece_index),
            expected_hash=piece_hashes[piece_index],
        )


@dataclass(frozen=True)
class DownloadedPiece:
    """Verified bytes of one piece."""

    piece_index: int
    data: bytes


@dataclass
class DownloadState:
    """Mutable progress of one piece on one connection."""

    choke_status: ChokeStatus
    pending: deque[BlockRequest] = field(default_factory=deque)
    outstanding: deque[BlockRequest] = field(default_factory=deque)
    buffer: bytearray = field(default_factory=bytearray)
    bytes_received: int = 0


def block_requests(
    piece_index: int,
    piece_length: int,
    block_size: int = DEFAULT_BLOCK_SIZE,
) -> list[BlockRequest]:
    """Partition a piece into ascending block requests.

    Every block is ``block_size`` bytes except possibly the last one.
    """
    if block_size <= 0:
        msg = f"Block size must be positive, got {block_size}"
        raise ValueError(msg)
    return [
        BlockRequest(piece_index, offset, min(block_size, piece_length - offset))
        for offset in range(0, piece_length, block_size)
    ]


class PieceDownloader:
    """Downloads one assigned piece over one connection."""

    def __init__(
        self,
        connection: AsyncPeerConnection,
        assignment: PieceAssignment,
        pipeline_depth: int = DEFAULT_PIPELINE_DEPTH,
        block_size: int = DEFAULT_BLOCK_SIZE,
        piece_timeout: float | None = None,
    ):
        if pipeline_depth < 1:
            msg = f"Pipeline depth must be at least 1, got {pipeline_depth}"
            raise ValueError(msg)
        self.connection = connection
        self.assignment = assignment
        self.pipeline_depth = pipeline_depth
        self.block_size = block_size
        self.piece_timeout = piece_timeout
        self.state = DownloadState(
            choke_status=(
                ChokeStatus.CHOKED if connection.peer_choking else ChokeStatus.UNCHOKED
            ),
            pending=deque(
                block_requests(assignment.piece_index, assignment.piece_length, block_size),
            ),
        )

    async def run(self) -> bytes:
        """Download, verify and return the piece.

        Raises:
            ProtocolError: If the peer sends something out of place
            VerificationError: If the piece does not match its digest
            PeerTimeoutError: If ``piece_timeout`` expires
            PeerConnectionError: If the connection fails

        """
        if self.piece_timeout is None:
            return await self._run()
        try:
            return await asyncio.wait_for(self._run(), timeout=self.piece_timeout)
        except asyncio.TimeoutError as e:
            msg = (
                f"Piece {self.assignment.piece_index} from "
                f"{self.connection.peer_info} timed out after {self.piece_timeout}s"
            )
            raise PeerTimeoutError(msg) from e

    async def _run(self) -> bytes:
        index = self.assignment.piece_index
        logger.debug(
            "Downloading piece %d (%d bytes, %d blocks) from %s",
            index,
            self.assignment.piece_length,
            len(self.state.pending),
            self.connection.peer_info,
        )

        await self.connection.send(InterestedMessage())
        if self.state.choke_status is ChokeStatus.UNCHOKED:
            await self._fill_pipeline()

        while self.state.bytes_received < self.assignment.piece_length:
            message = await self.connection.receive()
            await self._handle_message(message)

        return self._verify()

    async def _handle_message(self, message) -> None:
        state = self.state

        if isinstance(message, KeepAliveMessage):
            return
        if isinstance(message, HaveMessage):
            # already recorded in the connection bitfield
            return
        if isinstance(message, ChokeMessage):
            # issued requests stay outstanding and are never resent
            state.choke_status = ChokeStatus.CHOKED
            logger.debug("Choked by %s", self.connection.peer_info)
            return
        if isinstance(message, UnchokeMessage):
            # a repeated Unchoke only tops up the pipeline
            state.choke_status = ChokeStatus.UNCHOKED
            await self._fill_pipeline()
            return
        if isinstance(message, PieceMessage) and state.choke_status is ChokeStatus.UNCHOKED:
            self._accept_block(message)
            if state.pending:
                await self._request_next()
            return

        msg = (
            f"Unexpected {type(message).__name__} from {self.connection.peer_info} "
            f"while {state.choke_status.value}"
        )
        raise ProtocolError(msg)

    def _accept_block(self, message: PieceMessage) -> None:
        state = self.state
        if message.piece_index != self.assignment.piece_index:
            msg = (
                f"Block for piece {message.piece_index} while downloading "
                f"piece {self.assignment.piece_index}"
            )
            raise ProtocolError(msg)
        if message.begin != state.bytes_received:
            msg = f"Block at offset {message.begin}, expected {state.bytes_received}"
            raise ProtocolError(msg)
        if message.begin + len(message.block) > self.assignment.piece_length:
            msg = (
                f"Block of {len(message.block)} bytes at {message.begin} overruns "
                f"piece of {self.assignment.piece_length} bytes"
            )
            raise ProtocolError(msg)
        if not state.outstanding or state.outstanding[0].block_offset != message.begin:
            msg = f"Unrequested block at offset {message.begin}"
            raise ProtocolError(msg)
        request = state.outstanding.popleft()
        if len(message.block) != request.block_length:
            msg = (
                f"Block at offset {message.begin} has {len(message.block)} bytes, "
                f"requested {request.block_length}"
            )
            raise ProtocolError(msg)

        state.buffer += message.block
        state.bytes_received += len(message.block)

    async def _fill_pipeline(self) -> None:
        while self.state.pending and len(self.state.outstanding) < self.pipeline_depth:
            await self._request_next()

    async def _request_next(self) -> None:
        request = self.state.pending.popleft()
        self.state.outstanding.append(request)
        await self.connection.send(request.to_message())

    def _verify(self) -> bytes:
        data = bytes(self.state.buffer)
        digest = hashlib.sha1(data).digest()  # nosec B324 - protocol hash
        if digest != self.assignment.expected_hash:
            msg = f"Piece {self.assignment.piece_index} failed hash verification"
            raise VerificationError(
                msg,
                {
                    "expected": self.assignment.expected_hash.hex(),
                    "actual": digest.hex(),
                    "peer": str(self.connection.peer_info),
                },
            )
        logger.debug("Piece %d verified", self.assignment.piece_index)
        return data


async def download_piece(
    connection: AsyncPeerConnection,
    assignment: PieceAssignment,
    pipeline_depth: int | None = None,
    block_size: int | None = None,
    piece_timeout: float | None = None,
) -> bytes:
    """Download one piece over a ready connection; defaults come from its config."""
    config = connection.config
    downloader = PieceDownloader(
        connection,
        assignment,
        pipeline_depth=config.pipeline_depth if pipeline_depth is None else pipeline_depth,
        block_size=config.block_size if block_size is None else block_size,
        piece_timeout=config.piece_timeout if piece_timeout is None else piece_timeout,
    )
    return await downloader.run()
