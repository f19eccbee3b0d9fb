"""Pytest configuration and shared fixtures for bitswarm tests."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import math
import os

import pytest
import pytest_asyncio

from bitswarm.config.config import reset_config
from bitswarm.models import (
    Config,
    NetworkConfig,
    PeerAddress,
    StrategyConfig,
    TorrentInfo,
)
from bitswarm.peer.messages import (
    BitfieldMessage,
    CancelMessage,
    Handshake,
    InterestedMessage,
    MessageDecoder,
    PieceMessage,
    RequestMessage,
    UnchokeMessage,
)
from bitswarm.utils.bitfield import Bitfield


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("asyncio", "marks tests as async (deselect with '-m \"not asyncio\"')"),
        ("slow", "marks tests as slow (deselect with '-m \"not slow\"')"),
        ("integration", "marks tests as integration tests"),
        ("unit", "marks tests as unit tests"),
        ("core", "marks tests as core functionality tests"),
        ("peer", "marks tests as peer protocol tests"),
        ("piece", "marks tests as piece management tests"),
        ("tracker", "marks tests as tracker tests"),
        ("storage", "marks tests as storage sink tests"),
        ("session", "marks tests as download coordinator tests"),
        ("config", "marks tests as configuration tests"),
        ("cli", "marks tests as CLI tests"),
        ("utils", "marks tests as utility tests"),
        ("observability", "marks tests as logging tests"),
        ("property", "marks tests as property-based tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    # setup_logging detaches the package logger from root; caplog needs it back
    package_logger = logging.getLogger("bitswarm")
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture(autouse=True)
def cleanup_config(monkeypatch):
    """Isolate the global configuration and BITSWARM_* environment."""
    for key in list(os.environ):
        if key.startswith("BITSWARM_"):
            monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    reset_config()


def build_torrent(
    content: bytes,
    piece_length: int,
    name: str = "test.bin",
    info_hash: bytes | None = None,
) -> TorrentInfo:
    """Metadata for ``content`` with correct piece hashes."""
    count = math.ceil(len(content) / piece_length)
    hashes = [
        hashlib.sha1(content[i * piece_length : (i + 1) * piece_length]).digest()
        for i in range(count)
    ]
    return TorrentInfo(
        info_hash=info_hash or hashlib.sha1(name.encode() + content[:64]).digest(),
        piece_hashes=hashes,
        piece_length=piece_length,
        total_length=len(content),
        name=name,
    )


@pytest.fixture
def make_torrent():
    """Factory building TorrentInfo for given content."""
    return build_torrent


@pytest.fixture
def fast_config() -> Config:
    """Configuration with short intervals for in-process swarms."""
    return Config(
        network=NetworkConfig(
            maintenance_interval=0.05,
            connection_timeout=2.0,
            handshake_timeout=2.0,
            request_timeout=5.0,
            peer_timeout=10.0,
            connect_backoff_base=0.05,
            connect_backoff_max=0.2,
            stall_timeout=5.0,
        ),
        strategy=StrategyConfig(),
    )


class FakeSeeder:
    """In-process peer that serves pieces of ``content`` over TCP.

    Options shape misbehaviour: ``info_hash`` overrides the handshake hash,
    ``corrupt`` pieces are served with flipped bytes, ``disconnect_after``
    closes the connection after that many blocks, ``max_connections`` makes
    later connections close before the handshake, and ``silent`` never
    answers requests.
    """

    def __init__(
        self,
        torrent: TorrentInfo,
        content: bytes,
        pieces: set[int],
        info_hash: bytes | None = None,
        corrupt: frozenset[int] = frozenset(),
        disconnect_after: int | None = None,
        max_connections: int | None = None,
        silent: bool = False,
    ):
        self.torrent = torrent
        self.content = content
        self.pieces = set(pieces)
        self.info_hash = info_hash or torrent.info_hash
        self.corrupt = corrupt
        self.disconnect_after = disconnect_after
        self.max_connections = max_connections
        self.silent = silent
        self.peer_id = b"-FS0001-" + os.urandom(12)

        self.connections = 0
        self.requests: list[tuple[int, int, int]] = []
        self.served: list[tuple[int, int, int]] = []
        self.cancels: list[tuple[int, int, int]] = []
        self.interested = False
        self._server: asyncio.AbstractServer | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    async def start(self) -> PeerAddress:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        port = self._server.sockets[0].getsockname()[1]
        self.address = PeerAddress(host="127.0.0.1", port=port)
        return self.address

    async def stop(self) -> None:
        for writer in list(self._writers):
            writer.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    def _block(self, index: int, begin: int, length: int) -> bytes:
        start = index * self.torrent.piece_length + begin
        data = self.content[start : start + length]
        if index in self.corrupt:
            data = bytes(b ^ 0xFF for b in data)
        return data

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.connections += 1
        self._writers.add(writer)
        try:
            if self.max_connections is not None and self.connections > self.max_connections:
                return
            await reader.readexactly(68)
            writer.write(Handshake(self.info_hash, self.peer_id).encode())
            bitfield = Bitfield.from_indices(self.pieces, self.torrent.piece_count)
            writer.write(BitfieldMessage(bitfield.to_bytes()).encode())
            await writer.drain()

            decoder = MessageDecoder()
            while True:
                data = await reader.read(65536)
                if not data:
                    return
                for message in decoder.feed(data):
                    if isinstance(message, InterestedMessage):
                        self.interested = True
                        writer.write(UnchokeMessage().encode())
                    elif isinstance(message, RequestMessage):
                        key = (message.piece_index, message.begin, message.length)
                        self.requests.append(key)
                        if self.silent:
                            continue
                        block = self._block(*key)
                        writer.write(
                            PieceMessage(message.piece_index, message.begin, block).encode()
                        )
                        self.served.append(key)
                        if (
                            self.disconnect_after is not None
                            and len(self.served) >= self.disconnect_after
                        ):
                            await writer.drain()
                            return
                    elif isinstance(message, CancelMessage):
                        self.cancels.append(
                            (message.piece_index, message.begin, message.length)
                        )
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            return
        finally:
            self._writers.discard(writer)
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()


@pytest_asyncio.fixture
async def seeder_factory():
    """Start FakeSeeders; all are stopped after the test."""
    seeders: list[FakeSeeder] = []

    async def _factory(*args, **kwargs) -> FakeSeeder:
        seeder = FakeSeeder(*args, **kwargs)
        await seeder.start()
        seeders.append(seeder)
        return seeder

    yield _factory
    for seeder in seeders:
        await seeder.stop()
