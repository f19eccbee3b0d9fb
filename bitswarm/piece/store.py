"""Piece store: authoritative state of every piece and block.

The store owns the block bookkeeping for a download: which blocks are
requested and by whom, which bytes arrived, and which pieces passed SHA-1
verification. Mutations of one piece that span an await (block writes and
verification) hold that piece's ``asyncio.Lock``; claim bookkeeping never
awaits and so runs atomically on the event loop.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections.abc import Hashable
from concurrent.futures import Executor
from dataclasses import dataclass, field
from enum import Enum

from bitswarm.models import DEFAULT_BLOCK_SIZE, BlockRequest, TorrentInfo
from bitswarm.utils.exceptions import HashMismatch, IndexOutOfRange, InvalidRange

PeerKey = Hashable


class PieceStatus(Enum):
    """States of a piece download."""

    MISSING = "missing"  # nothing requested or received
    IN_PROGRESS = "in_progress"  # some blocks requested or received
    VERIFYING = "verifying"  # all blocks received, hash check pending
    COMPLETE = "complete"  # hash verified
    FAILED = "failed"  # hash retry budget exhausted, awaiting reset


class BlockStatus(Enum):
    """States of a block within a piece."""

    NOT_REQUESTED = "not_requested"
    REQUESTED = "requested"
    RECEIVED = "received"


@dataclass
class BlockState:
    """One block slot of a piece."""

    offset: int
    length: int
    status: BlockStatus = BlockStatus.NOT_REQUESTED
    claims: dict[PeerKey, float] = field(default_factory=dict)
    data: bytes | None = None
    contributor: PeerKey | None = None

    def reset(self) -> None:
        """Forget claims and data."""
        self.status = BlockStatus.NOT_REQUESTED
        self.claims.clear()
        self.data = None
        self.contributor = None


@dataclass
class PieceState:
    """Download state of one piece."""

    index: int
    length: int
    expected_hash: bytes
    blocks: list[BlockState]
    status: PieceStatus = PieceStatus.MISSING
    hash_failures: int = 0
    # Peers that contributed to attempts which failed verification.
    failed_contributors: set[PeerKey] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def contributors(self) -> set[PeerKey]:
        """Peers whose bytes are in the current attempt."""
        return {b.contributor for b in self.blocks if b.contributor is not None}

    def refresh_status(self) -> None:
        """Derive MISSING/IN_PROGRESS from block states."""
        if self.status not in (PieceStatus.MISSING, PieceStatus.IN_PROGRESS):
            return
        busy = any(b.status is not BlockStatus.NOT_REQUESTED for b in self.blocks)
        self.status = PieceStatus.IN_PROGRESS if busy else PieceStatus.MISSING

    def reset(self) -> None:
        """Discard every block and return to MISSING."""
        for block in self.blocks:
            block.reset()
        self.status = PieceStatus.MISSING


@dataclass(frozen=True)
class VerificationTask:
    """A piece whose blocks all arrived and that must now be hashed."""

    piece_index: int


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of hashing one piece."""

    piece_index: int
    data: bytes | None = None
    error: HashMismatch | None = None
    contributors: frozenset[PeerKey] = frozenset()
    exhausted: bool = False

    @property
    def ok(self) -> bool:
        """True when the piece matched its hash."""
        return self.error is None


def _sha1(data: bytes) -> bytes:
    return hashlib.sha1(data).digest()  # nosec B324 - SHA-1 required by BitTorrent protocol (BEP 3)


class PieceStore:
    """Block-level state for every piece of a torrent."""

    def __init__(
        self,
        torrent: TorrentInfo,
        block_size: int = DEFAULT_BLOCK_SIZE,
        max_hash_failures: int = 5,
        executor: Executor | None = None,
    ):
        """Initialize the store with every piece MISSING.

        Args:
            torrent: Torrent metadata
            block_size: Size of every block but the last of each piece
            max_hash_failures: Failed verifications of one piece before it is
                marked FAILED
            executor: Executor for SHA-1 work (loop default when None)
        """
        if block_size <= 0:
            msg = f"Block size must be positive, got {block_size}"
            raise ValueError(msg)
        self.torrent = torrent
        self.block_size = block_size
        self.max_hash_failures = max_hash_failures
        self.executor = executor
        self.logger = logging.getLogger(__name__)

        self._pieces: list[PieceState] = []
        for index in range(torrent.piece_count):
            length = torrent.piece_length_of(index)
            blocks = [
                BlockState(offset, min(block_size, length - offset))
                for offset in range(0, length, block_size)
            ]
            self._pieces.append(
                PieceState(index, length, torrent.piece_hashes[index], blocks)
            )

    def _piece(self, piece_index: int) -> PieceState:
        if not 0 <= piece_index < len(self._pieces):
            msg = f"Piece index {piece_index} out of range [0, {len(self._pieces)})"
            raise IndexOutOfRange(msg)
        return self._pieces[piece_index]

    def _block(self, piece: PieceState, offset: int, length: int) -> BlockState:
        """Find the block slot matching ``offset``/``length`` exactly."""
        if offset < 0 or offset >= piece.length or offset % self.block_size:
            msg = f"Offset {offset} is not a block boundary of piece {piece.index}"
            raise InvalidRange(msg, {"piece_length": piece.length})
        block = piece.blocks[offset // self.block_size]
        if length != block.length:
            msg = (
                f"Block {piece.index}:{offset} must be {block.length} bytes, "
                f"got {length}"
            )
            raise InvalidRange(msg)
        return block

    # Queries

    def piece_length_of(self, piece_index: int) -> int:
        """Length of a piece in bytes."""
        return self._piece(piece_index).length

    def blocks_for(self, piece_index: int) -> list[BlockRequest]:
        """Every block slot of a piece, in offset order."""
        piece = self._piece(piece_index)
        return [BlockRequest(piece_index, b.offset, b.length) for b in piece.blocks]

    def status(self, piece_index: int) -> PieceStatus:
        """Current status of a piece."""
        return self._piece(piece_index).status

    def block_status(self, request: BlockRequest) -> BlockStatus:
        """Current status of a block."""
        piece = self._piece(request.piece_index)
        return self._block(piece, request.offset, request.length).status

    def hash_failures(self, piece_index: int) -> int:
        """Failed verifications since the piece was last reset."""
        return self._piece(piece_index).hash_failures

    def is_complete(self) -> bool:
        """True when every piece is COMPLETE."""
        return all(p.status is PieceStatus.COMPLETE for p in self._pieces)

    def completed_count(self) -> int:
        """Number of COMPLETE pieces."""
        return sum(1 for p in self._pieces if p.status is PieceStatus.COMPLETE)

    def incomplete_pieces(self) -> list[int]:
        """Indices of pieces not yet COMPLETE."""
        return [p.index for p in self._pieces if p.status is not PieceStatus.COMPLETE]

    def missing_blocks(self, piece_index: int) -> list[BlockRequest]:
        """NOT_REQUESTED blocks of a piece that can still be downloaded."""
        piece = self._piece(piece_index)
        if piece.status not in (PieceStatus.MISSING, PieceStatus.IN_PROGRESS):
            return []
        return [
            BlockRequest(piece_index, b.offset, b.length)
            for b in piece.blocks
            if b.status is BlockStatus.NOT_REQUESTED
        ]

    def has_missing_blocks(self, piece_index: int) -> bool:
        """True when a piece has at least one NOT_REQUESTED block."""
        piece = self._piece(piece_index)
        return piece.status in (PieceStatus.MISSING, PieceStatus.IN_PROGRESS) and any(
            b.status is BlockStatus.NOT_REQUESTED for b in piece.blocks
        )

    def requested_blocks(self, piece_index: int) -> list[BlockRequest]:
        """REQUESTED blocks of a piece (end-game duplicate candidates)."""
        piece = self._piece(piece_index)
        if piece.status is not PieceStatus.IN_PROGRESS:
            return []
        return [
            BlockRequest(piece_index, b.offset, b.length)
            for b in piece.blocks
            if b.status is BlockStatus.REQUESTED
        ]

    def claimers(self, request: BlockRequest) -> set[PeerKey]:
        """Peers currently holding a claim on a block."""
        piece = self._piece(request.piece_index)
        return set(self._block(piece, request.offset, request.length).claims)

    # Claims

    def claim(
        self, request: BlockRequest, peer: PeerKey, now: float | None = None
    ) -> bool:
        """Record that ``peer`` was asked for a block.

        Returns False when the block no longer needs downloading.
        """
        piece = self._piece(request.piece_index)
        block = self._block(piece, request.offset, request.length)
        if piece.status not in (PieceStatus.MISSING, PieceStatus.IN_PROGRESS):
            return False
        if block.status is BlockStatus.RECEIVED:
            return False
        block.claims[peer] = time.monotonic() if now is None else now
        block.status = BlockStatus.REQUESTED
        piece.refresh_status()
        return True

    def unclaim(self, request: BlockRequest, peer: PeerKey) -> None:
        """Drop one peer's claim; the block reverts when nobody claims it."""
        piece = self._piece(request.piece_index)
        block = self._block(piece, request.offset, request.length)
        if block.claims.pop(peer, None) is None:
            return
        if block.status is BlockStatus.REQUESTED and not block.claims:
            block.status = BlockStatus.NOT_REQUESTED
            piece.refresh_status()

    def release_requests_for(self, peer: PeerKey) -> int:
        """Drop every claim held by ``peer``.

        Blocks still claimed by another peer stay REQUESTED and RECEIVED
        blocks are untouched. Returns the number of claims dropped.
        """
        released = 0
        for piece in self._pieces:
            touched = False
            for block in piece.blocks:
                if block.claims.pop(peer, None) is None:
                    continue
                released += 1
                touched = True
                if block.status is BlockStatus.REQUESTED and not block.claims:
                    block.status = BlockStatus.NOT_REQUESTED
            if touched:
                piece.refresh_status()
        if released:
            self.logger.debug("Released %d requests held by %s", released, peer)
        return released

    def expired_requests(
        self, timeout: float, now: float | None = None
    ) -> list[tuple[BlockRequest, PeerKey]]:
        """Claims older than ``timeout`` seconds, oldest first."""
        now = time.monotonic() if now is None else now
        expired: list[tuple[float, BlockRequest, PeerKey]] = []
        for piece in self._pieces:
            if piece.status is not PieceStatus.IN_PROGRESS:
                continue
            for block in piece.blocks:
                if block.status is not BlockStatus.REQUESTED:
                    continue
                for peer, claimed_at in block.claims.items():
                    if now - claimed_at >= timeout:
                        request = BlockRequest(piece.index, block.offset, block.length)
                        expired.append((claimed_at, request, peer))
        expired.sort(key=lambda item: (item[0], item[1]))
        return [(request, peer) for _, request, peer in expired]

    # Data

    async def write_block(
        self,
        piece_index: int,
        offset: int,
        data: bytes,
        peer: PeerKey | None = None,
    ) -> VerificationTask | None:
        """Store a received block.

        Returns a VerificationTask when this block completed the piece.
        Duplicate blocks and writes to pieces that are already verifying or
        complete are ignored.

        Raises:
            IndexOutOfRange: piece index outside the torrent
            InvalidRange: offset/length do not match a block slot
        """
        piece = self._piece(piece_index)
        block = self._block(piece, offset, len(data))
        async with piece.lock:
            if piece.status not in (PieceStatus.MISSING, PieceStatus.IN_PROGRESS):
                return None
            if block.status is BlockStatus.RECEIVED:
                return None

            block.data = bytes(data)
            block.status = BlockStatus.RECEIVED
            block.contributor = peer
            block.claims.clear()

            if all(b.status is BlockStatus.RECEIVED for b in piece.blocks):
                piece.status = PieceStatus.VERIFYING
                return VerificationTask(piece_index)
            piece.status = PieceStatus.IN_PROGRESS
            return None

    async def verify(self, piece_index: int) -> VerificationResult:
        """Hash a VERIFYING piece off the event loop and record the outcome.

        On a match the piece becomes COMPLETE and the result carries its
        bytes. On a mismatch every block is reset and the piece returns to
        MISSING, or to FAILED once ``max_hash_failures`` is reached.
        """
        piece = self._piece(piece_index)
        async with piece.lock:
            if piece.status is not PieceStatus.VERIFYING:
                msg = f"Piece {piece_index} is {piece.status.value}, not verifying"
                raise ValueError(msg)

            data = b"".join(b.data or b"" for b in piece.blocks)
            loop = asyncio.get_running_loop()
            digest = await loop.run_in_executor(self.executor, _sha1, data)

            if digest == piece.expected_hash:
                for block in piece.blocks:
                    block.data = None
                piece.status = PieceStatus.COMPLETE
                self.logger.debug("Piece %d verified", piece_index)
                return VerificationResult(piece_index, data=data)

            contributors = piece.contributors()
            piece.hash_failures += 1
            piece.failed_contributors |= contributors
            error = HashMismatch(
                piece_index,
                piece.expected_hash,
                digest,
                {"attempt": piece.hash_failures},
            )
            piece.reset()

            if piece.hash_failures >= self.max_hash_failures:
                piece.status = PieceStatus.FAILED
                self.logger.warning(
                    "Piece %d failed verification %d times",
                    piece_index,
                    piece.hash_failures,
                )
                return VerificationResult(
                    piece_index,
                    error=error,
                    contributors=frozenset(piece.failed_contributors),
                    exhausted=True,
                )
            return VerificationResult(
                piece_index, error=error, contributors=frozenset(contributors)
            )

    def reset_failed(self, piece_index: int) -> None:
        """Return a FAILED piece to MISSING with a fresh retry budget."""
        piece = self._piece(piece_index)
        if piece.status is not PieceStatus.FAILED:
            return
        piece.reset()
        piece.hash_failures = 0
        piece.failed_contributors.clear()
