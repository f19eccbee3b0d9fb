"""Piece bookkeeping and block selection."""

from __future__ import annotations

from bitswarm.piece.selector import PieceSelector
from bitswarm.piece.store import (
    BlockStatus,
    PieceStatus,
    PieceStore,
    VerificationResult,
    VerificationTask,
)

__all__ = [
    "BlockStatus",
    "PieceSelector",
    "PieceStatus",
    "PieceStore",
    "VerificationResult",
    "VerificationTask",
]
