"""Pydantic models for btleech.

Provides validated data models for type safety and runtime validation.
"""

from __future__ import annotations

import hashlib
import math
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from btleech.bencode import encode
from btleech.exceptions import TorrentError

SHA1_DIGEST_SIZE = 20


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class MessageType(int, Enum):
    """BitTorrent message types."""

    CHOKE = 0
    UNCHOKE = 1
    INTERESTED = 2
    NOT_INTERESTED = 3
    HAVE = 4
    BITFIELD = 5
    REQUEST = 6
    PIECE = 7
    CANCEL = 8


class PeerInfo(BaseModel):
    """Address of a remote peer as reported by the tracker."""

    ip: str = Field(..., description="Peer IP address")
    port: int = Field(..., ge=1, le=65535, description="Peer port number")
    peer_id: bytes | None = Field(None, description="Peer ID")

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v):
        """Validate IP address format."""
        if not v:
            msg = "IP address cannot be empty"
            raise ValueError(msg)
        return v

    @classmethod
    def parse(cls, address: str) -> PeerInfo:
        """Build a peer from an ``ip:port`` string."""
        host, sep, port = address.rpartition(":")
        if not sep or not host or not port.isdigit():
            msg = f"Invalid peer address {address!r}, expected ip:port"
            raise ValueError(msg)
        return cls(ip=host.strip("[]"), port=int(port))

    def __str__(self) -> str:
        """String representation of peer info."""
        return f"{self.ip}:{self.port}"

    def __hash__(self) -> int:
        """Hash peer info for use as dictionary key."""
        return hash((self.ip, self.port))

    def __eq__(self, other) -> bool:
        """Equality comparison for peer info."""
        if not isinstance(other, PeerInfo):
            return False
        return self.ip == other.ip and self.port == other.port

    model_config = {"arbitrary_types_allowed": True}


class TrackerResponse(BaseModel):
    """Tracker response data."""

    interval: int = Field(..., ge=0, description="Announce interval in seconds")
    peers: list[PeerInfo] = Field(default_factory=list, description="List of peers")
    complete: int | None = Field(None, ge=0, description="Number of seeders")
    incomplete: int | None = Field(None, ge=0, description="Number of leechers")
    warning_message: str | None = Field(None, description="Warning message")


class TorrentInfo(BaseModel):
    """Metadata of a single-file torrent.

    ``info`` keeps the decoded info dictionary exactly as it appeared in the
    torrent file so the info hash can be recomputed by re-encoding it.
    """

    announce: str = Field(..., description="Tracker announce URL")
    name: str = Field(..., description="Suggested file name")
    piece_length: int = Field(..., gt=0, description="Nominal piece length in bytes")
    total_length: int = Field(..., ge=0, description="Total file length in bytes")
    pieces: bytes = Field(..., description="Concatenated SHA-1 piece digests")
    info: dict[bytes, Any] = Field(..., description="Raw info dictionary")

    model_config = {"arbitrary_types_allowed": True}

    def info_hash(self) -> bytes:
        """Return the SHA-1 digest of the bencoded info dictionary."""
        return hashlib.sha1(encode(self.info)).digest()  # nosec B324 - protocol hash

    def piece_hashes(self) -> list[bytes]:
        """Split the pieces blob into 20-byte digests, in blob order.

        Raises:
            TorrentError: If the blob length is not a multiple of 20

        """
        if len(self.pieces) % SHA1_DIGEST_SIZE != 0:
            msg = (
                f"Invalid pieces data length: {len(self.pieces)} bytes "
                f"(should be multiple of {SHA1_DIGEST_SIZE})"
            )
            raise TorrentError(msg)
        return [
            self.pieces[i : i + SHA1_DIGEST_SIZE]
            for i in range(0, len(self.pieces), SHA1_DIGEST_SIZE)
        ]

    @property
    def num_pieces(self) -> int:
        """Number of pieces described by the pieces blob."""
        return len(self.pieces) // SHA1_DIGEST_SIZE

    @property
    def expected_num_pieces(self) -> int:
        """Number of pieces implied by the total and piece lengths."""
        return math.ceil(self.total_length / self.piece_length)

    def piece_size(self, piece_index: int) -> int:
        """Return the true length of a piece; only the last one may be short."""
        if piece_index < 0 or piece_index >= self.num_pieces:
            msg = f"Invalid piece index: {piece_index}"
            raise TorrentError(msg)
        if piece_index == self.num_pieces - 1:
            return self.total_length - self.piece_length * (self.num_pieces - 1)
        return self.piece_length


class NetworkConfig(BaseModel):
    """Network configuration."""

    max_peers_per_torrent: int = Field(
        default=5,
        ge=1,
        le=200,
        description="Number of concurrent peer connections per download",
    )
    pipeline_depth: int = Field(
        default=5,
        ge=1,
        le=128,
        description="Outstanding block requests per connection",
    )
    block_size_kib: int = Field(
        default=16,
        ge=1,
        le=128,
        description="Block size in KiB",
    )
    connection_timeout: float = Field(
        default=10.0,
        gt=0.0,
        le=300.0,
        description="TCP connect timeout in seconds",
    )
    handshake_timeout: float = Field(
        default=10.0,
        gt=0.0,
        le=300.0,
        description="Handshake and bitfield timeout in seconds",
    )
    piece_timeout: float | None = Field(
        default=None,
        gt=0.0,
        description="Per-piece download timeout in seconds (None = wait forever)",
    )
    max_message_length: int = Field(
        default=2 * 1024 * 1024 + 13,
        ge=1024,
        description="Largest peer message accepted, in bytes",
    )
    work_queue_size: int = Field(
        default=16,
        ge=1,
        le=10000,
        description="Capacity of each connection's piece assignment queue",
    )
    listen_port: int = Field(
        default=6881,
        ge=1,
        le=65535,
        description="Port reported to the tracker",
    )
    peer_id_prefix: str = Field(
        default="-BL0100-",
        min_length=1,
        max_length=20,
        description="Prefix of the generated local peer id",
    )
    tracker_timeout: float = Field(
        default=30.0,
        gt=0.0,
        le=600.0,
        description="Tracker HTTP request timeout in seconds",
    )

    @property
    def block_size(self) -> int:
        """Block size in bytes."""
        return self.block_size_kib * 1024


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(default=LogLevel.WARNING, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Emit JSON log records instead of colored text",
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Include correlation IDs",
    )


class Config(BaseModel):
    """Main configuration model."""

    network: NetworkConfig = Field(
        default_factory=NetworkConfig,
        description="Network configuration",
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig,
        description="Observability configuration",
    )

    @model_validator(mode="after")
    def validate_config(self):
        """Validate configuration consistency."""
        if self.network.block_size > self.network.max_message_length:
            msg = "block_size_kib exceeds max_message_length"
            raise ValueError(msg)
        return self
