"""Torrent file parsing.

Turns a .torrent file into the immutable ``TorrentInfo`` consumed by the
download engine. The info hash is the SHA-1 of the ``info`` value exactly as
it appears in the file.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from bitswarm.core.bencode import BencodeDecoder
from bitswarm.models import HASH_LENGTH, FileEntry, TorrentInfo
from bitswarm.utils.exceptions import BencodeError, TorrentError

logger = logging.getLogger(__name__)


class TorrentParser:
    """Parser for BitTorrent metainfo files."""

    def parse(self, source: str | Path | bytes) -> TorrentInfo:
        """Parse a torrent from a file path or raw bytes.

        Raises:
            TorrentError: unreadable file, malformed bencode or missing keys
        """
        raw = source if isinstance(source, bytes) else self._read_from_file(source)

        decoder = BencodeDecoder(raw)
        try:
            data = decoder.decode()
            if not isinstance(data, dict):
                msg = "Torrent root must be a dictionary"
                raise TorrentError(msg)
            self._validate_torrent(data)
            start, end = decoder.find_value_span(b"info")
        except BencodeError as e:
            msg = f"Failed to decode torrent: {e}"
            raise TorrentError(msg) from e

        info_hash = hashlib.sha1(raw[start:end]).digest()  # nosec B324 - SHA-1 required by BitTorrent protocol (BEP 3)
        return self._extract_torrent_data(data, info_hash)

    def _read_from_file(self, file_path: str | Path) -> bytes:
        path = Path(file_path)
        if not path.exists():
            msg = f"Torrent file not found: {path}"
            raise TorrentError(msg)
        try:
            return path.read_bytes()
        except OSError as e:
            msg = f"Failed to read torrent file {path}: {e}"
            raise TorrentError(msg) from e

    def _validate_torrent(self, data: dict[bytes, Any]) -> None:
        """Check the keys the engine relies on."""
        info = data.get(b"info")
        if not isinstance(info, dict):
            msg = "Missing or invalid info dictionary in torrent"
            raise TorrentError(msg)

        if b"length" not in info and b"files" not in info:
            msg = "Torrent must specify either length (single file) or files (multi-file)"
            raise TorrentError(msg)
        if not isinstance(info.get(b"piece length"), int):
            msg = "Missing piece length in torrent info"
            raise TorrentError(msg)
        if not isinstance(info.get(b"pieces"), bytes):
            msg = "Missing pieces in torrent info"
            raise TorrentError(msg)

    def _extract_torrent_data(
        self, data: dict[bytes, Any], info_hash: bytes
    ) -> TorrentInfo:
        info = data[b"info"]
        announce = data.get(b"announce")
        name = info.get(b"name", b"download")

        pieces = info[b"pieces"]
        if len(pieces) % HASH_LENGTH:
            msg = (
                f"Invalid pieces data length: {len(pieces)} bytes "
                f"(should be multiple of {HASH_LENGTH})"
            )
            raise TorrentError(msg)
        piece_hashes = [
            pieces[i : i + HASH_LENGTH] for i in range(0, len(pieces), HASH_LENGTH)
        ]

        files = self._extract_file_info(info)
        total_length = info[b"length"] if b"length" in info else sum(f.length for f in files)

        try:
            torrent = TorrentInfo(
                info_hash=info_hash,
                piece_hashes=piece_hashes,
                piece_length=info[b"piece length"],
                total_length=total_length,
                name=name.decode("utf-8", errors="replace"),
                announce=announce.decode("utf-8", errors="replace") if isinstance(announce, bytes) else None,
                files=files,
            )
        except PydanticValidationError as e:
            msg = f"Invalid torrent metadata: {e}"
            raise TorrentError(msg) from e

        logger.debug(
            "Parsed torrent %s: %d pieces, %d bytes",
            torrent.name,
            torrent.piece_count,
            torrent.total_length,
        )
        return torrent

    def _extract_file_info(self, info: dict[bytes, Any]) -> list[FileEntry]:
        """Multi-file layout, empty for single-file torrents."""
        if b"files" not in info:
            return []
        files = []
        for entry in info[b"files"]:
            try:
                path = [part.decode("utf-8") for part in entry[b"path"]]
                files.append(FileEntry(path=path, length=entry[b"length"]))
            except (KeyError, TypeError, AttributeError, PydanticValidationError) as e:
                msg = f"Invalid file entry in torrent: {e}"
                raise TorrentError(msg) from e
        return files
