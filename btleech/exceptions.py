"""Exception hierarchy for btleech.

Network-level failures are local to one peer, protocol failures are local to
one piece download on one connection, and validation failures cover data that
did not match what the torrent promised.
"""

from __future__ import annotations

from typing import Any


class BTLeechError(Exception):
    """Base exception for all btleech errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize btleech error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class NetworkError(BTLeechError):
    """Network-related errors."""


class TrackerError(NetworkError):
    """Tracker communication errors."""


class PeerConnectionError(NetworkError):
    """TCP connect, read or write failure on a peer connection."""


class PeerTimeoutError(NetworkError):
    """A peer did not answer within the configured time."""


class NoPeersAvailableError(NetworkError):
    """No peer could be reached for a download."""


class ProtocolError(BTLeechError):
    """BitTorrent protocol errors."""


class HandshakeError(ProtocolError):
    """Handshake protocol errors."""


class MessageError(ProtocolError):
    """Message parsing/serialization errors."""


class ValidationError(BTLeechError):
    """Data validation errors."""


class VerificationError(ValidationError):
    """Downloaded piece does not match its expected SHA-1 digest."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""


class TorrentError(ValidationError):
    """Torrent file validation errors."""


class BencodeError(ValidationError):
    """Bencode encoding/decoding errors."""


class BencodeDecodeError(BencodeError):
    """Malformed bencoded input."""


class BencodeEncodeError(BencodeError):
    """Value that cannot be bencoded."""
