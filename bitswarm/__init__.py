"""bitswarm: BitTorrent piece-acquisition engine.

Downloads a torrent's content from a swarm of peers: rarest-first block
scheduling over concurrent peer sessions, SHA-1 verification of every piece
and end-game duplicate requests for the last few pieces.
"""

from __future__ import annotations

__version__ = "0.1.0"

from bitswarm.core.torrent import TorrentParser
from bitswarm.models import BlockRequest, Config, PeerAddress, TorrentInfo
from bitswarm.session.coordinator import DownloadCoordinator
from bitswarm.storage.sink import FileSink, MemorySink

__all__ = [
    "BlockRequest",
    "Config",
    "DownloadCoordinator",
    "FileSink",
    "MemorySink",
    "PeerAddress",
    "TorrentInfo",
    "TorrentParser",
    "__version__",
]
