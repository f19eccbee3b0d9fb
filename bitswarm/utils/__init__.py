"""Shared utilities: bitfield, backoff, exceptions and logging setup."""

from __future__ import annotations

from bitswarm.utils.bitfield import Bitfield
from bitswarm.utils.exceptions import BitswarmError

__all__ = ["Bitfield", "BitswarmError"]
