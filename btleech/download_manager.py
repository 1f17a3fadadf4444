"""Concurrent multi-peer download orchestration.

Pieces are fanned out round-robin over a small pool of peer connections, each
fed through its own bounded work queue. Verified pieces come back on a shared
result queue in whatever order they finish and are joined in index order.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from btleech.config import get_config
from btleech.exceptions import NetworkError, NoPeersAvailableError, ProtocolError
from btleech.logging_config import LoggingContext, get_logger
from btleech.peer_connection import connect_and_handshake
from btleech.piece_download import DownloadedPiece, PieceAssignment, download_piece
from btleech.tracker import generate_peer_id

if TYPE_CHECKING:
    from btleech.models import Config, PeerInfo, TorrentInfo
    from btleech.peer_connection import AsyncPeerConnection

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int, int], None]


@dataclass(frozen=True)
class PieceFailure:
    """A piece that could not be downloaded."""

    piece_index: int
    peer_info: PeerInfo
    error: Exception


class DownloadManager:
    """Downloads every piece of a torrent from a pool of peers."""

    def __init__(
        self,
        torrent: TorrentInfo,
        peer_id: bytes | None = None,
        config: Config | None = None,
        on_piece_completed: ProgressCallback | None = None,
    ):
        """Initialize download manager.

        Args:
            torrent: Parsed torrent metadata
            peer_id: Local 20-byte peer id, generated when omitted
            config: Configuration, the global one when omitted
            on_piece_completed: Called as ``(piece_index, completed, total)``

        """
        self.torrent = torrent
        self.config = config or get_config()
        self.peer_id = peer_id or generate_peer_id(self.config.network.peer_id_prefix)
        self.on_piece_completed = on_piece_completed
        self.connections: list[AsyncPeerConnection] = []

    async def connect_to_peers(
        self,
        peers: list[PeerInfo],
        concurrency: int,
    ) -> list[AsyncPeerConnection]:
        """Connect to peers concurrently until ``concurrency`` connections succeed.

        Peers that fail to connect, handshake or send their bitfield are
        skipped with a warning and replaced by the next candidate.
        """
        candidates = iter(peers)
        pending: dict[asyncio.Task, PeerInfo] = {}

        def launch() -> None:
            peer = next(candidates, None)
            if peer is not None:
                task = asyncio.create_task(
                    connect_and_handshake(peer, self.torrent, self.peer_id, self.config.network),
                )
                pending[task] = peer

        for _ in range(concurrency):
            launch()

        try:
            while pending:
                done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    peer = pending.pop(task)
                    try:
                        connection = task.result()
                    except (NetworkError, ProtocolError) as e:
                        logger.warning("Skipping peer %s: %s", peer, e)
                        launch()
                        continue
                    if len(self.connections) < concurrency:
                        self.connections.append(connection)
                    else:
                        await connection.close()
        finally:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Connected to %d of %d peers", len(self.connections), len(peers))
        return self.connections

    def _pick_connection(self, piece_index: int, cursor: int) -> int:
        """Return the pool slot for a piece, starting from the round-robin cursor."""
        count = len(self.connections)
        for step in range(count):
            slot = (cursor + step) % count
            if self.connections[slot].has_piece(piece_index):
                return slot
        return cursor

    async def _distribute(
        self,
        assignments: list[PieceAssignment],
        work_queues: list[asyncio.Queue],
    ) -> None:
        for cursor, assignment in enumerate(assignments):
            slot = self._pick_connection(assignment.piece_index, cursor % len(work_queues))
            await work_queues[slot].put(assignment)
        for queue in work_queues:
            await queue.put(None)

    async def _worker(
        self,
        connection: AsyncPeerConnection,
        work_queue: asyncio.Queue,
        result_queue: asyncio.Queue,
    ) -> None:
        while True:
            assignment = await work_queue.get()
            if assignment is None:
                return
            try:
                data = await download_piece(connection, assignment)
            except Exception as e:
                await result_queue.put(PieceFailure(assignment.piece_index, connection.peer_info, e))
                return
            await result_queue.put(DownloadedPiece(assignment.piece_index, data))

    async def _collect(self, result_queue: asyncio.Queue, total: int) -> dict[int, bytes]:
        pieces: dict[int, bytes] = {}
        while len(pieces) < total:
            item = await result_queue.get()
            if isinstance(item, PieceFailure):
                logger.error(
                    "Piece %d failed on %s: %s",
                    item.piece_index,
                    item.peer_info,
                    item.error,
                )
                raise item.error
            pieces[item.piece_index] = item.data
            if self.on_piece_completed:
                self.on_piece_completed(item.piece_index, len(pieces), total)
        return pieces

    async def download(self, peers: list[PeerInfo], concurrency: int | None = None) -> bytes:
        """Download the whole file and return it.

        Raises:
            NoPeersAvailableError: If no peer connection could be established
            BTLeechError: The first piece failure, which aborts the download

        """
        total = self.torrent.num_pieces
        if total == 0:
            return b""
        if concurrency is None:
            concurrency = self.config.network.max_peers_per_torrent
        piece_hashes = self.torrent.piece_hashes()
        assignments = [
            PieceAssignment.from_torrent(self.torrent, i, piece_hashes) for i in range(total)
        ]

        with LoggingContext(
            f"download of {self.torrent.name}", logger=logger, pieces=total, peers=len(peers)
        ):
            pieces = await self._run_pool(peers, concurrency, assignments)
        return b"".join(pieces[i] for i in range(total))

    async def _run_pool(
        self,
        peers: list[PeerInfo],
        concurrency: int,
        assignments: list[PieceAssignment],
    ) -> dict[int, bytes]:
        total = len(assignments)
        try:
            await self.connect_to_peers(peers, concurrency)
            if not self.connections:
                msg = f"Could not connect to any of {len(peers)} peers"
                raise NoPeersAvailableError(msg)

            result_queue: asyncio.Queue = asyncio.Queue()
            work_queues: list[asyncio.Queue] = [
                asyncio.Queue(maxsize=self.config.network.work_queue_size)
                for _ in self.connections
            ]
            tasks = [
                asyncio.create_task(self._worker(connection, queue, result_queue))
                for connection, queue in zip(self.connections, work_queues)
            ]
            tasks.append(asyncio.create_task(self._distribute(assignments, work_queues)))

            try:
                pieces = await self._collect(result_queue, total)
            finally:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            await self.close()
        return pieces

    async def close(self) -> None:
        """Close every pool connection."""
        await asyncio.gather(
            *(connection.close() for connection in self.connections),
            return_exceptions=True,
        )
        self.connections = []


async def download_all(
    torrent: TorrentInfo,
    peers: list[PeerInfo],
    concurrency: int | None = None,
    peer_id: bytes | None = None,
    config: Config | None = None,
    on_piece_completed: ProgressCallback | None = None,
) -> bytes:
    """Download a torrent's file from the given peers."""
    manager = DownloadManager(
        torrent,
        peer_id=peer_id,
        config=config,
        on_piece_completed=on_piece_completed,
    )
    return await manager.download(peers, concurrency)
