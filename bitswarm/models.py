"""Pydantic models for bitswarm.

Provides validated data models for torrent metadata, peer addresses and the
layered configuration.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from bitswarm.utils.exceptions import IndexOutOfRange

HASH_LENGTH = 20
DEFAULT_BLOCK_SIZE = 16 * 1024
_UNSAFE_PATH_CHARS = ("/", "\\", "\x00")


def _check_path_component(part: str) -> str:
    """Reject names that could leave the download directory."""
    if part in ("", ".", "..") or any(c in part for c in _UNSAFE_PATH_CHARS):
        msg = f"Unsafe path component: {part!r}"
        raise ValueError(msg)
    return part


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


class PeerAddress(BaseModel):
    """Address of a candidate peer as returned by a tracker."""

    host: str = Field(..., description="Peer host name or IP address")
    port: int = Field(..., ge=1, le=65535, description="Peer port number")

    model_config = {"frozen": True}

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        """Reject empty host names."""
        if not v:
            msg = "Host cannot be empty"
            raise ValueError(msg)
        return v

    @classmethod
    def parse(cls, value: str) -> PeerAddress:
        """Parse a ``host:port`` string."""
        host, sep, port = value.rpartition(":")
        if not sep or not host or not port.isdigit():
            msg = f"Invalid peer address: {value!r}"
            raise ValueError(msg)
        return cls(host=host.strip("[]"), port=int(port))

    def __str__(self) -> str:
        """String representation of the address."""
        return f"{self.host}:{self.port}"


class FileEntry(BaseModel):
    """One file of a multi-file torrent, in layout order."""

    path: list[str] = Field(..., min_length=1, description="Path components")
    length: int = Field(..., ge=0, description="File length in bytes")

    model_config = {"frozen": True}

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: list[str]) -> list[str]:
        """Each component is a plain name inside the torrent directory."""
        return [_check_path_component(part) for part in v]


class TorrentInfo(BaseModel):
    """Immutable torrent metadata consumed by the download engine."""

    info_hash: bytes = Field(
        ...,
        min_length=HASH_LENGTH,
        max_length=HASH_LENGTH,
        description="SHA-1 of the bencoded info dictionary",
    )
    piece_hashes: list[bytes] = Field(..., description="Per-piece SHA-1 digests")
    piece_length: int = Field(..., gt=0, description="Nominal piece length")
    total_length: int = Field(..., gt=0, description="Total content length")
    name: str = Field(default="download", description="Suggested name")
    announce: str | None = Field(default=None, description="Tracker URL")
    files: list[FileEntry] = Field(
        default_factory=list,
        description="Multi-file layout, empty for single-file torrents",
    )

    model_config = {"frozen": True}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """The name becomes a file or directory under the output directory."""
        return _check_path_component(v)

    @field_validator("piece_hashes")
    @classmethod
    def validate_piece_hashes(cls, v: list[bytes]) -> list[bytes]:
        """Every piece hash is a 20-byte digest."""
        for i, digest in enumerate(v):
            if len(digest) != HASH_LENGTH:
                msg = f"Piece hash {i} must be {HASH_LENGTH} bytes, got {len(digest)}"
                raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def validate_layout(self) -> TorrentInfo:
        """Piece count must match ceil(total_length / piece_length)."""
        expected = math.ceil(self.total_length / self.piece_length)
        if len(self.piece_hashes) != expected:
            msg = (
                f"Expected {expected} piece hashes for {self.total_length} bytes "
                f"at piece length {self.piece_length}, got {len(self.piece_hashes)}"
            )
            raise ValueError(msg)
        if self.files and sum(f.length for f in self.files) != self.total_length:
            msg = "File lengths do not add up to total_length"
            raise ValueError(msg)
        return self

    @property
    def piece_count(self) -> int:
        """Number of pieces."""
        return len(self.piece_hashes)

    def piece_length_of(self, piece_index: int) -> int:
        """Length of a piece; the last piece may be shorter."""
        if not 0 <= piece_index < self.piece_count:
            msg = f"Piece index {piece_index} out of range [0, {self.piece_count})"
            raise IndexOutOfRange(msg)
        if piece_index == self.piece_count - 1:
            return self.total_length - self.piece_length * (self.piece_count - 1)
        return self.piece_length


@dataclass(frozen=True, order=True)
class BlockRequest:
    """A requestable unit: (piece_index, offset, length)."""

    piece_index: int
    offset: int
    length: int

    def __str__(self) -> str:
        """Compact representation used in logs."""
        return f"{self.piece_index}:{self.offset}:{self.length}"


class NetworkConfig(BaseModel):
    """Network configuration."""

    max_peers: int = Field(
        default=30,
        ge=1,
        le=1000,
        description="Target number of concurrently open peer sessions",
    )
    pipeline_depth: int = Field(
        default=16,
        ge=1,
        le=128,
        description="Request pipeline depth per peer",
    )
    block_size_kib: int = Field(
        default=16,
        ge=1,
        le=128,
        description="Block size in KiB",
    )
    listen_port: int = Field(
        default=6881,
        ge=1024,
        le=65535,
        description="Port announced to trackers",
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
        le=60.0,
        description="Handshake timeout in seconds",
    )
    peer_timeout: float = Field(
        default=120.0,
        gt=0.0,
        le=3600.0,
        description="Peer inactivity timeout in seconds",
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0.0,
        le=600.0,
        description="Seconds before an unanswered block request is re-issued",
    )
    keep_alive_interval: float = Field(
        default=90.0,
        gt=0.0,
        le=600.0,
        description="Keep alive interval in seconds",
    )
    max_frame_length: int = Field(
        default=(1 << 17) + 9,
        ge=(1 << 14) + 9,
        le=1 << 24,
        description="Largest accepted frame length in bytes",
    )
    peer_refresh_interval: float = Field(
        default=300.0,
        gt=0.0,
        le=86400.0,
        description="Seconds between peer source refreshes",
    )
    maintenance_interval: float = Field(
        default=1.0,
        gt=0.0,
        le=60.0,
        description="Seconds between timeout sweeps and pool refills",
    )
    max_connect_failures: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Consecutive connect failures before an address is dropped",
    )
    connect_backoff_base: float = Field(
        default=1.0,
        gt=0.0,
        le=60.0,
        description="Base delay for connection retry backoff",
    )
    connect_backoff_max: float = Field(
        default=120.0,
        gt=0.0,
        le=3600.0,
        description="Maximum delay for connection retry backoff",
    )
    stall_timeout: float = Field(
        default=300.0,
        gt=0.0,
        le=86400.0,
        description="Seconds without progress before the download is stalled",
    )

    @property
    def block_size(self) -> int:
        """Block size in bytes."""
        return self.block_size_kib * 1024


class StrategyConfig(BaseModel):
    """Piece selection strategy configuration."""

    endgame_threshold_pieces: int = Field(
        default=4,
        ge=0,
        le=1000,
        description="Enter end-game when fewer than this many pieces remain (0 disables it)",
    )
    endgame_duplicates: int = Field(
        default=3,
        ge=1,
        le=16,
        description="Maximum peers claiming the same block in end-game",
    )
    max_hash_failures: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Hash failures of one piece before its peers are banned",
    )
    peer_ban_threshold: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Failed verifications a peer may contribute to before a ban",
    )


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Use JSON structured logging for the log file",
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
    strategy: StrategyConfig = Field(
        default_factory=StrategyConfig,
        description="Strategy configuration",
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig,
        description="Observability configuration",
    )

    @model_validator(mode="after")
    def validate_config(self) -> Config:
        """Validate cross-section consistency."""
        if self.network.request_timeout >= self.network.peer_timeout:
            msg = "request_timeout must be shorter than peer_timeout"
            raise ValueError(msg)
        if self.network.connect_backoff_base > self.network.connect_backoff_max:
            msg = "connect_backoff_base cannot exceed connect_backoff_max"
            raise ValueError(msg)
        return self
