"""Async HTTP tracker communication.

Announces the client to the tracker named in the torrent and decodes the
returned peer list, in either compact or dictionary form.
"""

from __future__ import annotations

import asyncio
import secrets
from typing import TYPE_CHECKING, Any

import aiohttp
from pydantic import ValidationError as PydanticValidationError
from yarl import URL

from btleech.bencode import BencodeDecoder
from btleech.config import get_config
from btleech.exceptions import BencodeError, TrackerError
from btleech.logging_config import get_logger
from btleech.models import PeerInfo, TrackerResponse

if TYPE_CHECKING:
    from btleech.models import NetworkConfig, TorrentInfo

PEER_ID_LENGTH = 20
COMPACT_PEER_SIZE = 6

logger = get_logger(__name__)


def generate_peer_id(prefix: str | None = None) -> bytes:
    """Generate a 20-byte peer ID: the client prefix followed by random bytes."""
    if prefix is None:
        prefix = get_config().network.peer_id_prefix
    prefix_bytes = prefix.encode("utf-8")[:PEER_ID_LENGTH]
    return prefix_bytes + secrets.token_bytes(PEER_ID_LENGTH - len(prefix_bytes))


def percent_encode_bytes(data: bytes) -> str:
    """Percent-encode every byte as ``%xx``."""
    return "".join(f"%{b:02x}" for b in data)


def parse_compact_peers(peers_data: bytes) -> list[PeerInfo]:
    """Parse compact peer format.

    In compact format, peers are encoded as 6 bytes per peer:
    - 4 bytes: IP address (network byte order)
    - 2 bytes: port (network byte order)

    Raises:
        TrackerError: If peer data is invalid

    """
    if len(peers_data) % COMPACT_PEER_SIZE != 0:
        msg = f"Invalid compact peer data length: {len(peers_data)} bytes"
        raise TrackerError(msg)

    peers = []
    for start in range(0, len(peers_data), COMPACT_PEER_SIZE):
        peer_bytes = peers_data[start : start + COMPACT_PEER_SIZE]
        ip = ".".join(str(b) for b in peer_bytes[0:4])
        port = int.from_bytes(peer_bytes[4:6], byteorder="big")
        try:
            peers.append(PeerInfo(ip=ip, port=port))
        except PydanticValidationError:
            logger.debug("Skipping compact peer with invalid port %s:%d", ip, port)

    return peers


def _parse_peer_dicts(peers_data: list[Any]) -> list[PeerInfo]:
    peers = []
    for entry in peers_data:
        if not isinstance(entry, dict):
            msg = "Invalid peer entry in tracker response"
            raise TrackerError(msg)
        ip = entry.get(b"ip")
        port = entry.get(b"port")
        if not isinstance(ip, bytes) or not isinstance(port, int):
            msg = "Peer entry missing ip or port"
            raise TrackerError(msg)
        peer_id = entry.get(b"peer id")
        try:
            peers.append(
                PeerInfo(
                    ip=ip.decode("utf-8"),
                    port=port,
                    peer_id=peer_id if isinstance(peer_id, bytes) else None,
                ),
            )
        except (UnicodeDecodeError, PydanticValidationError) as e:
            logger.debug("Skipping invalid peer entry: %s", e)
    return peers


def parse_response(response_data: bytes) -> TrackerResponse:
    """Parse a bencoded announce response.

    Raises:
        TrackerError: On a failure reason or a malformed response

    """
    try:
        decoded = BencodeDecoder(response_data).decode()
    except BencodeError as e:
        msg = f"Failed to parse tracker response: {e}"
        raise TrackerError(msg) from e

    if not isinstance(decoded, dict):
        msg = "Tracker response is not a dictionary"
        raise TrackerError(msg)

    if b"failure reason" in decoded:
        reason = decoded[b"failure reason"]
        if isinstance(reason, bytes):
            reason = reason.decode("utf-8", errors="replace")
        msg = f"Tracker failure: {reason}"
        raise TrackerError(msg)

    if b"interval" not in decoded:
        msg = "Missing interval in tracker response"
        raise TrackerError(msg)
    if b"peers" not in decoded:
        msg = "Missing peers in tracker response"
        raise TrackerError(msg)

    peers_data = decoded[b"peers"]
    if isinstance(peers_data, bytes):
        peers = parse_compact_peers(peers_data)
    elif isinstance(peers_data, list):
        peers = _parse_peer_dicts(peers_data)
    else:
        msg = "Invalid peers field in tracker response"
        raise TrackerError(msg)

    warning_message = decoded.get(b"warning message")
    if isinstance(warning_message, bytes):
        warning_message = warning_message.decode("utf-8", errors="replace")
        logger.warning("Tracker warning: %s", warning_message)

    try:
        return TrackerResponse(
            interval=decoded[b"interval"],
            peers=peers,
            complete=decoded.get(b"complete"),
            incomplete=decoded.get(b"incomplete"),
            warning_message=warning_message,
        )
    except PydanticValidationError as e:
        msg = f"Invalid tracker response: {e}"
        raise TrackerError(msg) from e


class AsyncTrackerClient:
    """Async client for communicating with an HTTP BitTorrent tracker."""

    def __init__(self, config: NetworkConfig | None = None):
        """Initialize the async tracker client."""
        self.config = config or get_config().network
        self.user_agent = "btleech/0.1.0"
        self.session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        """Start the async tracker client."""
        timeout = aiohttp.ClientTimeout(
            total=self.config.tracker_timeout,
            connect=self.config.connection_timeout,
        )
        self.session = aiohttp.ClientSession(
            timeout=timeout,
            headers={"User-Agent": self.user_agent},
        )
        logger.debug("Async tracker client started")

    async def stop(self) -> None:
        """Stop the async tracker client."""
        if self.session:
            await self.session.close()
            self.session = None
        logger.debug("Async tracker client stopped")

    async def __aenter__(self) -> AsyncTrackerClient:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def announce(
        self,
        torrent: TorrentInfo,
        peer_id: bytes,
        port: int | None = None,
        uploaded: int = 0,
        downloaded: int = 0,
        left: int | None = None,
    ) -> TrackerResponse:
        """Announce to the tracker and get the peer list.

        Args:
            torrent: Parsed torrent metadata
            peer_id: Client's 20-byte peer ID
            port: Port reported to the tracker (defaults to ``listen_port``)
            uploaded: Number of bytes uploaded
            downloaded: Number of bytes downloaded
            left: Number of bytes left to download (defaults to total file size)

        Returns:
            TrackerResponse containing tracker response data

        Raises:
            TrackerError: If tracker communication fails

        """
        if not self.session:
            msg = "Tracker client not started"
            raise TrackerError(msg)

        tracker_url = self._build_tracker_url(
            torrent.announce,
            torrent.info_hash(),
            peer_id,
            self.config.listen_port if port is None else port,
            uploaded,
            downloaded,
            torrent.total_length if left is None else left,
        )
        response_data = await self._make_request_async(tracker_url)
        response = parse_response(response_data)
        logger.info(
            "Tracker %s returned %d peers (interval %ds)",
            torrent.announce,
            len(response.peers),
            response.interval,
        )
        return response

    def _build_tracker_url(
        self,
        base_url: str,
        info_hash: bytes,
        peer_id: bytes,
        port: int,
        uploaded: int,
        downloaded: int,
        left: int,
    ) -> str:
        """Build the complete tracker URL with all required parameters.

        The binary fields are percent-encoded byte by byte; the returned string
        must not be quoted again.
        """
        params = [
            ("info_hash", percent_encode_bytes(info_hash)),
            ("peer_id", percent_encode_bytes(peer_id)),
            ("port", str(port)),
            ("uploaded", str(uploaded)),
            ("downloaded", str(downloaded)),
            ("left", str(left)),
            ("compact", "1"),
        ]
        separator = "&" if "?" in base_url else "?"
        query_string = "&".join(f"{key}={value}" for key, value in params)
        return f"{base_url}{separator}{query_string}"

    async def _make_request_async(self, url: str) -> bytes:
        """Make async HTTP GET request to tracker."""
        if self.session is None:
            msg = "HTTP session not initialized"
            raise TrackerError(msg)
        try:
            async with self.session.get(URL(url, encoded=True)) as response:
                if response.status != 200:
                    msg = f"HTTP {response.status}: {response.reason}"
                    raise TrackerError(msg)
                return await response.read()
        except aiohttp.ClientError as e:
            msg = f"Network error: {e}"
            raise TrackerError(msg) from e
        except asyncio.TimeoutError as e:
            msg = f"Tracker request timed out: {url}"
            raise TrackerError(msg) from e


async def announce(
    torrent: TorrentInfo,
    peer_id: bytes,
    port: int | None = None,
    config: NetworkConfig | None = None,
) -> TrackerResponse:
    """Announce once with a short-lived client."""
    async with AsyncTrackerClient(config) as client:
        return await client.announce(torrent, peer_id, port)
