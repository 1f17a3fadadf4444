"""Torrent file parsing.

Reads single-file ``.torrent`` metainfo into :class:`TorrentInfo`. The info
dictionary is kept verbatim so that the info hash can be recomputed from it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from btleech.bencode import decode
from btleech.exceptions import BencodeError, TorrentError
from btleech.logging_config import get_logger
from btleech.models import SHA1_DIGEST_SIZE, TorrentInfo

logger = get_logger(__name__)


class TorrentParser:
    """Parser for BitTorrent torrent files."""

    def parse(self, torrent_path: str | Path) -> TorrentInfo:
        """Parse a torrent file from a local path.

        Args:
            torrent_path: Path to local torrent file

        Returns:
            TorrentInfo object containing parsed torrent data

        Raises:
            TorrentError: If the file is missing or is not a valid torrent

        """
        path = Path(torrent_path)
        if not path.is_file():
            msg = f"Torrent file not found: {path}"
            raise TorrentError(msg)

        try:
            torrent_data = path.read_bytes()
        except OSError as e:
            msg = f"Failed to read torrent file {path}: {e}"
            raise TorrentError(msg) from e

        torrent = self.parse_bytes(torrent_data)
        logger.debug(
            "Parsed %s: %s, %d pieces of %d bytes",
            path,
            torrent.name,
            torrent.num_pieces,
            torrent.piece_length,
        )
        return torrent

    def parse_bytes(self, torrent_data: bytes) -> TorrentInfo:
        """Parse bencoded torrent metainfo already held in memory."""
        try:
            decoded_data = decode(torrent_data)
        except BencodeError as e:
            msg = f"Failed to decode torrent: {e}"
            raise TorrentError(msg) from e

        self._validate_torrent(decoded_data)
        return self._extract_torrent_data(decoded_data)

    def _validate_torrent(self, data: Any) -> None:
        """Validate that the data is a valid single-file torrent."""
        if not isinstance(data, dict):
            msg = "Torrent root must be a dictionary"
            raise TorrentError(msg)

        for key in (b"announce", b"info"):
            if key not in data:
                msg = f"Missing required key in torrent: {key.decode()}"
                raise TorrentError(msg)

        info = data[b"info"]
        if not isinstance(info, dict):
            msg = "Invalid info dictionary in torrent"
            raise TorrentError(msg)

        if b"files" in info:
            msg = "Multi-file torrents are not supported"
            raise TorrentError(msg)

        expected_types = {
            b"name": bytes,
            b"piece length": int,
            b"pieces": bytes,
            b"length": int,
        }
        for key, expected in expected_types.items():
            if key not in info:
                msg = f"Missing {key.decode()} in torrent info"
                raise TorrentError(msg)
            if not isinstance(info[key], expected):
                msg = f"Invalid type for {key.decode()} in torrent info"
                raise TorrentError(msg)

        if not isinstance(data[b"announce"], bytes):
            msg = "Invalid type for announce in torrent"
            raise TorrentError(msg)

        if len(info[b"pieces"]) % SHA1_DIGEST_SIZE != 0:
            msg = (
                f"Invalid pieces data length: {len(info[b'pieces'])} bytes "
                f"(should be multiple of {SHA1_DIGEST_SIZE})"
            )
            raise TorrentError(msg)

    def _extract_torrent_data(self, data: dict[bytes, Any]) -> TorrentInfo:
        """Extract and process torrent data."""
        info = data[b"info"]
        try:
            torrent = TorrentInfo(
                announce=data[b"announce"].decode("utf-8"),
                name=info[b"name"].decode("utf-8"),
                piece_length=info[b"piece length"],
                total_length=info[b"length"],
                pieces=info[b"pieces"],
                info=info,
            )
        except (UnicodeDecodeError, PydanticValidationError) as e:
            msg = f"Invalid torrent metadata: {e}"
            raise TorrentError(msg) from e

        if torrent.num_pieces != torrent.expected_num_pieces:
            msg = (
                f"Torrent has {torrent.num_pieces} piece hashes but its length "
                f"implies {torrent.expected_num_pieces} pieces"
            )
            raise TorrentError(msg)

        return torrent
