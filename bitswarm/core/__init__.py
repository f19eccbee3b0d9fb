"""Core metainfo handling: bencode and torrent parsing."""

from __future__ import annotations

from bitswarm.core.bencode import BencodeDecoder, decode, encode
from bitswarm.core.torrent import TorrentParser

__all__ = ["BencodeDecoder", "TorrentParser", "decode", "encode"]
