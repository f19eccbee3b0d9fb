"""Exception hierarchy for bitswarm.

Session-level errors (protocol, I/O) are contained by the download
coordinator; piece-level errors (hash mismatch) are recoverable; range and
state errors indicate programming mistakes and are never swallowed.
"""

from __future__ import annotations

from typing import Any


class BitswarmError(Exception):
    """Base exception for all bitswarm errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize bitswarm error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class NetworkError(BitswarmError):
    """Network-related errors."""


class PeerIOError(NetworkError):
    """Socket failure on a peer connection (session-fatal)."""


class TrackerError(NetworkError):
    """Tracker communication errors."""


class ProtocolError(BitswarmError):
    """BitTorrent protocol errors."""


class ProtocolViolation(ProtocolError):
    """Malformed frame or handshake received from a peer (session-fatal)."""


class HandshakeMismatch(ProtocolViolation):
    """Peer handshake carried the wrong protocol string or info hash."""


class RequestRejected(BitswarmError):
    """A block request could not be issued right now; retry later."""


class PipelineFull(RequestRejected):
    """Outstanding requests already reached the pipeline depth limit."""


class PeerChoking(RequestRejected):
    """Peer is choking us, requests are not allowed."""


class SessionNotConnected(RequestRejected):
    """Session is not in the CONNECTED state."""


class HashMismatch(BitswarmError):
    """Assembled piece did not match its expected SHA-1 digest."""

    def __init__(
        self,
        piece_index: int,
        expected: bytes,
        actual: bytes,
        details: dict[str, Any] | None = None,
    ):
        """Initialize hash mismatch error."""
        super().__init__(
            f"Hash mismatch for piece {piece_index}: "
            f"expected {expected.hex()}, got {actual.hex()}",
            details,
        )
        self.piece_index = piece_index
        self.expected = expected
        self.actual = actual


class InvalidRange(BitswarmError):
    """Block offset/length does not fit a block slot of the piece."""


class IndexOutOfRange(BitswarmError, IndexError):
    """Piece index outside [0, piece_count)."""


class InvalidStateTransition(BitswarmError):
    """Illegal peer session state transition."""


class DownloadStalled(BitswarmError):
    """No progress is possible: peers exhausted and nothing completing."""


class ValidationError(BitswarmError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""


class TorrentError(ValidationError):
    """Torrent file validation errors."""


class BencodeError(ValidationError):
    """Bencode encoding/decoding errors."""
