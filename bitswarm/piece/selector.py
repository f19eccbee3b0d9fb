"""Rarest-first block selection with end-game duplicates."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from bitswarm.models import BlockRequest, StrategyConfig
from bitswarm.piece.store import PieceStatus, PieceStore

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Hashable

    from bitswarm.utils.bitfield import Bitfield


class SelectablePeer(Protocol):
    """What the selector needs to know about a peer session."""

    address: Hashable
    remote_bitfield: Bitfield
    outstanding: dict[BlockRequest, float]

    def can_request(self) -> bool: ...


class PieceSelector:
    """Chooses the next block to request from a peer."""

    def __init__(self, store: PieceStore, config: StrategyConfig | None = None):
        """Initialize selector.

        Args:
            store: Piece store consulted for block states
            config: End-game thresholds
        """
        self.store = store
        self.config = config or StrategyConfig()
        self._availability = [0] * store.torrent.piece_count
        self.logger = logging.getLogger(__name__)

    def availability(self, piece_index: int) -> int:
        """Number of connected peers advertising a piece."""
        return self._availability[piece_index]

    def add_peer(self, bitfield: Bitfield) -> None:
        """Count every piece of a newly announced bitfield."""
        for index in bitfield:
            self._availability[index] += 1

    def add_have(self, piece_index: int) -> None:
        """Count one newly announced piece."""
        self._availability[piece_index] += 1

    def remove_peer(self, bitfield: Bitfield) -> None:
        """Forget a departed peer's pieces."""
        for index in bitfield:
            self._availability[index] = max(0, self._availability[index] - 1)

    def in_endgame(self) -> bool:
        """True once fewer than the threshold of pieces remain incomplete."""
        return len(self.store.incomplete_pieces()) < self.config.endgame_threshold_pieces

    def _rank(self, piece_index: int) -> tuple[int, int]:
        # Rarity first, lowest index on ties.
        return (self._availability[piece_index], piece_index)

    def next_request(self, peer: SelectablePeer) -> BlockRequest | None:
        """Pick the next block to request from ``peer``, or None."""
        if not peer.can_request():
            return None

        candidates = [
            index for index in peer.remote_bitfield if self.store.has_missing_blocks(index)
        ]
        if candidates:
            piece_index = min(candidates, key=self._rank)
            return self.store.missing_blocks(piece_index)[0]

        if not self.in_endgame():
            return None
        return self._endgame_request(peer)

    def _endgame_request(self, peer: SelectablePeer) -> BlockRequest | None:
        pending = [
            index
            for index in peer.remote_bitfield
            if self.store.status(index) is PieceStatus.IN_PROGRESS
        ]
        for piece_index in sorted(pending, key=self._rank):
            for request in self.store.requested_blocks(piece_index):
                if request in peer.outstanding:
                    continue
                claimers = self.store.claimers(request)
                if peer.address in claimers:
                    continue
                if len(claimers) >= self.config.endgame_duplicates:
                    continue
                self.logger.debug("End-game duplicate request %s to %s", request, peer.address)
                return request
        return None
