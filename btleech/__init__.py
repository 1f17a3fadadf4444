"""btleech - a BitTorrent leecher core.

Fetches the pieces of a single-file torrent from remote peers over the peer
wire protocol, verifies them and reassembles the file.
"""

from __future__ import annotations

__version__ = "0.1.0"

from btleech.download_manager import DownloadManager, download_all
from btleech.peer_connection import AsyncPeerConnection, connect_and_handshake
from btleech.piece_download import PieceAssignment, download_piece
from btleech.torrent import TorrentParser

__all__ = [
    "AsyncPeerConnection",
    "DownloadManager",
    "PieceAssignment",
    "TorrentParser",
    "__version__",
    "connect_and_handshake",
    "download_all",
    "download_piece",
]
