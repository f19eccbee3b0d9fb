"""Storage sinks for verified pieces.

The coordinator hands every verified piece to a sink exactly once. Sinks
still tolerate repeated writes of the same piece.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from bitswarm.models import TorrentInfo
from bitswarm.utils.exceptions import IndexOutOfRange


class StorageSink(Protocol):
    """Destination for verified piece data."""

    async def write_piece(self, piece_index: int, data: bytes) -> None: ...


class MemorySink:
    """Keeps verified pieces in memory."""

    def __init__(self, torrent: TorrentInfo):
        """Create an empty sink for ``torrent``."""
        self.torrent = torrent
        self.pieces: dict[int, bytes] = {}
        self.write_count = 0

    async def write_piece(self, piece_index: int, data: bytes) -> None:
        """Store a piece; repeated writes replace the stored bytes."""
        if not 0 <= piece_index < self.torrent.piece_count:
            msg = f"Piece index {piece_index} out of range [0, {self.torrent.piece_count})"
            raise IndexOutOfRange(msg)
        self.pieces[piece_index] = bytes(data)
        self.write_count += 1

    def is_complete(self) -> bool:
        """True once every piece was written."""
        return len(self.pieces) == self.torrent.piece_count

    def assemble(self) -> bytes:
        """Concatenate all pieces into the original content."""
        missing = [i for i in range(self.torrent.piece_count) if i not in self.pieces]
        if missing:
            msg = f"Cannot assemble, {len(missing)} pieces missing"
            raise ValueError(msg)
        return b"".join(self.pieces[i] for i in range(self.torrent.piece_count))


@dataclass(frozen=True)
class FileSegment:
    """Part of a piece that lands in one file."""

    path: Path
    file_offset: int
    piece_offset: int
    length: int


class FileSink:
    """Writes pieces into the torrent's file layout under a directory."""

    def __init__(self, torrent: TorrentInfo, output_dir: str | Path = "."):
        """Create a sink rooted at ``output_dir``.

        Single-file torrents are written to ``output_dir/name``; multi-file
        torrents to ``output_dir/name/<path...>``.
        """
        self.torrent = torrent
        self.output_dir = Path(output_dir)
        self.written: set[int] = set()
        self.logger = logging.getLogger(__name__)

        if torrent.files:
            root = self.output_dir / torrent.name
            self._files = [(root.joinpath(*f.path), f.length) for f in torrent.files]
        else:
            self._files = [(self.output_dir / torrent.name, torrent.total_length)]
        self._prepared = False

    @property
    def paths(self) -> list[Path]:
        """Output file paths in layout order."""
        return [path for path, _ in self._files]

    def segments_for(self, piece_index: int) -> list[FileSegment]:
        """Split a piece into per-file segments."""
        piece_length = self.torrent.piece_length_of(piece_index)
        piece_start = piece_index * self.torrent.piece_length
        piece_end = piece_start + piece_length

        segments = []
        file_start = 0
        for path, length in self._files:
            file_end = file_start + length
            lo = max(piece_start, file_start)
            hi = min(piece_end, file_end)
            if lo < hi:
                segments.append(
                    FileSegment(path, lo - file_start, lo - piece_start, hi - lo)
                )
            file_start = file_end
            if file_start >= piece_end:
                break
        return segments

    def _prepare(self) -> None:
        for path, length in self._files:
            path.parent.mkdir(parents=True, exist_ok=True)
            if not path.exists():
                with open(path, "wb") as f:
                    f.truncate(length)
        self._prepared = True

    def _write(self, piece_index: int, data: bytes) -> None:
        if not self._prepared:
            self._prepare()
        view = memoryview(data)
        for segment in self.segments_for(piece_index):
            fd = os.open(segment.path, os.O_WRONLY)
            try:
                os.pwrite(
                    fd,
                    view[segment.piece_offset : segment.piece_offset + segment.length],
                    segment.file_offset,
                )
            finally:
                os.close(fd)

    async def write_piece(self, piece_index: int, data: bytes) -> None:
        """Write a piece in a worker thread; repeated writes are skipped."""
        if piece_index in self.written:
            self.logger.debug("Piece %d already written, skipping", piece_index)
            return
        expected = self.torrent.piece_length_of(piece_index)
        if len(data) != expected:
            msg = f"Piece {piece_index} must be {expected} bytes, got {len(data)}"
            raise ValueError(msg)
        await asyncio.to_thread(self._write, piece_index, data)
        self.written.add(piece_index)
