"""Tests for DownloadCoordinator policies, driven through listener callbacks."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

pytestmark = [pytest.mark.unit, pytest.mark.session]

from bitswarm.models import BlockRequest, Config, NetworkConfig, PeerAddress, StrategyConfig
from bitswarm.peer.session import PeerSession
from bitswarm.piece.store import BlockStatus, PieceStatus
from bitswarm.session.coordinator import DownloadCoordinator
from bitswarm.storage.sink import MemorySink
from bitswarm.tracker import StaticPeerSource
from bitswarm.utils.bitfield import Bitfield
from bitswarm.utils.exceptions import DownloadStalled, PeerChoking, PeerIOError, TrackerError

BLOCK = 16384
CONTENT = bytes((i * 31) % 256 for i in range(2 * BLOCK + 5000))


class FakeSession:
    """Stands in for a connected PeerSession."""

    def __init__(self, host: str, pieces, piece_count: int, depth: int = 4):
        self.address = PeerAddress(host=host, port=6881)
        self.remote_bitfield = Bitfield.from_indices(pieces, piece_count)
        self.outstanding: dict[BlockRequest, float] = {}
        self.is_connected = True
        self.peer_choking = False
        self.am_interested = False
        self.depth = depth
        self.reject: Exception | None = None
        self.cancel_block = AsyncMock()
        self.close = AsyncMock()

    def can_request(self) -> bool:
        return not self.peer_choking and len(self.outstanding) < self.depth

    async def request_block(self, request: BlockRequest) -> None:
        if self.reject is not None:
            raise self.reject
        self.outstanding[request] = time.monotonic()

    async def send_interested(self) -> None:
        self.am_interested = True

    async def send_not_interested(self) -> None:
        self.am_interested = False


@pytest.fixture
def torrent(make_torrent):
    """Two pieces: one of two blocks, one short single-block piece."""
    return make_torrent(CONTENT, 2 * BLOCK)


def _coordinator(torrent, peers=(), network=None, strategy=None, **kwargs):
    config = Config(
        network=network or NetworkConfig(),
        strategy=strategy or StrategyConfig(),
    )
    return DownloadCoordinator(
        torrent, StaticPeerSource(list(peers)), MemorySink(torrent), config=config, **kwargs
    )


def _attach(coordinator, session: FakeSession) -> FakeSession:
    coordinator.sessions[session.address] = session
    return session


async def _drain_verifications(coordinator) -> None:
    while coordinator._verify_tasks:
        await asyncio.gather(*list(coordinator._verify_tasks))


async def _deliver_piece(coordinator, session, index: int, data: bytes) -> None:
    for request in coordinator.store.blocks_for(index):
        coordinator.store.claim(request, session.address)
        block = data[request.offset : request.offset + request.length]
        await coordinator.on_block(session, request, block)
    await _drain_verifications(coordinator)


class TestScheduling:
    """Filling peer pipelines."""

    @pytest.mark.asyncio
    async def test_schedule_fills_pipeline(self, torrent):
        """Each free pipeline slot gets a claimed block."""
        coordinator = _coordinator(torrent, strategy=StrategyConfig(endgame_threshold_pieces=0))
        session = _attach(coordinator, FakeSession("10.0.0.1", [0, 1], 2, depth=2))
        coordinator.selector.add_peer(session.remote_bitfield)

        await coordinator._schedule()

        assert len(session.outstanding) == 2
        for request in session.outstanding:
            assert coordinator.store.claimers(request) == {session.address}

    @pytest.mark.asyncio
    async def test_schedule_stops_when_nothing_needed(self, torrent):
        """A peer with nothing useful gets no requests."""
        coordinator = _coordinator(torrent, strategy=StrategyConfig(endgame_threshold_pieces=0))
        session = _attach(coordinator, FakeSession("10.0.0.1", [], 2))
        await coordinator._schedule()
        assert session.outstanding == {}

    @pytest.mark.asyncio
    async def test_rejected_request_is_unclaimed(self, torrent):
        """A rejected request goes back to the pool."""
        coordinator = _coordinator(torrent)
        session = _attach(coordinator, FakeSession("10.0.0.1", [0], 2))
        session.reject = PeerChoking("choked")
        coordinator.selector.add_peer(session.remote_bitfield)

        await coordinator._schedule()

        assert coordinator.store.status(0) is PieceStatus.MISSING

    @pytest.mark.asyncio
    async def test_interest_follows_bitfield(self, torrent):
        """Interest is declared when the peer has pieces we lack."""
        coordinator = _coordinator(torrent)
        useful = _attach(coordinator, FakeSession("10.0.0.1", [1], 2))
        useless = _attach(coordinator, FakeSession("10.0.0.2", [], 2))

        await coordinator.on_bitfield(useful, useful.remote_bitfield)
        await coordinator.on_bitfield(useless, useless.remote_bitfield)

        assert useful.am_interested
        assert not useless.am_interested
        assert coordinator.selector.availability(1) == 1


class TestBlocksAndVerification:
    """Block arrival and piece verification."""

    @pytest.mark.asyncio
    async def test_verified_pieces_reach_sink(self, torrent):
        """Every verified piece is written once and progress is reported."""
        progress = MagicMock()
        coordinator = _coordinator(torrent, on_progress=progress)
        session = _attach(coordinator, FakeSession("10.0.0.1", [0, 1], 2))
        session.am_interested = True

        await _deliver_piece(coordinator, session, 0, CONTENT[: 2 * BLOCK])
        assert coordinator.have.get(0)
        assert not coordinator.done.is_set()
        progress.assert_called_with(1, 2)

        await _deliver_piece(coordinator, session, 1, CONTENT[2 * BLOCK :])
        assert coordinator.done.is_set()
        assert coordinator.sink.assemble() == CONTENT
        assert coordinator.sink.write_count == 2
        assert coordinator.progress() == (2, 2)
        assert not session.am_interested

    @pytest.mark.asyncio
    async def test_duplicate_requests_cancelled(self, torrent):
        """Other peers holding the same block are sent Cancel."""
        coordinator = _coordinator(torrent)
        winner = _attach(coordinator, FakeSession("10.0.0.1", [0], 2))
        loser = _attach(coordinator, FakeSession("10.0.0.2", [0], 2))
        request = BlockRequest(0, 0, BLOCK)
        coordinator.store.claim(request, winner.address)
        coordinator.store.claim(request, loser.address)

        await coordinator.on_block(winner, request, CONTENT[:BLOCK])

        loser.cancel_block.assert_awaited_once_with(request)
        winner.cancel_block.assert_not_awaited()
        assert coordinator.store.block_status(request) is BlockStatus.RECEIVED

    @pytest.mark.asyncio
    async def test_peer_banned_after_failed_pieces(self, torrent):
        """Contributors to bad pieces are banned at the threshold."""
        coordinator = _coordinator(
            torrent, strategy=StrategyConfig(peer_ban_threshold=1, max_hash_failures=5)
        )
        bad = _attach(coordinator, FakeSession("10.0.0.9", [0], 2))
        coordinator.addresses.add(bad.address)

        await _deliver_piece(coordinator, bad, 0, b"\x00" * (2 * BLOCK))

        assert bad.address in coordinator.banned
        assert bad.address not in coordinator.addresses
        bad.close.assert_awaited()
        assert coordinator.store.status(0) is PieceStatus.MISSING
        assert coordinator.store.hash_failures(0) == 1
        assert coordinator.sink.write_count == 0

    @pytest.mark.asyncio
    async def test_exhausted_piece_bans_all_contributors(self, torrent):
        """A piece out of retries bans every contributor and starts over."""
        coordinator = _coordinator(
            torrent, strategy=StrategyConfig(peer_ban_threshold=10, max_hash_failures=2)
        )
        first = _attach(coordinator, FakeSession("10.0.0.1", [0], 2))
        second = _attach(coordinator, FakeSession("10.0.0.2", [0], 2))

        await _deliver_piece(coordinator, first, 0, b"\x00" * (2 * BLOCK))
        assert coordinator.banned == set()
        await _deliver_piece(coordinator, second, 0, b"\x01" * (2 * BLOCK))

        assert coordinator.banned == {first.address, second.address}
        assert coordinator.store.status(0) is PieceStatus.MISSING
        assert coordinator.store.hash_failures(0) == 0

    @pytest.mark.asyncio
    async def test_sink_failure_surfaces(self, torrent, caplog):
        """Errors while storing a piece end the download and are logged."""
        coordinator = _coordinator(torrent)
        coordinator.sink.write_piece = AsyncMock(side_effect=OSError("disk full"))
        session = _attach(coordinator, FakeSession("10.0.0.1", [0], 2))

        await _deliver_piece(coordinator, session, 0, CONTENT[: 2 * BLOCK])

        assert isinstance(coordinator._failure, OSError)
        assert "Piece 0 could not be stored" in caplog.text
        assert "disk full" in caplog.text


class TestSessionEvents:
    """Choke, close and timeout handling."""

    @pytest.mark.asyncio
    async def test_choke_returns_requests(self, torrent):
        """Requests dropped by a choke become requestable again."""
        coordinator = _coordinator(torrent)
        session = _attach(coordinator, FakeSession("10.0.0.1", [0], 2))
        request = BlockRequest(0, 0, BLOCK)
        coordinator.store.claim(request, session.address)

        await coordinator.on_choke(session, [request])

        assert coordinator.store.block_status(request) is BlockStatus.NOT_REQUESTED

    @pytest.mark.asyncio
    async def test_session_closed_releases_everything(self, torrent):
        """A closed session's claims and availability are dropped."""
        coordinator = _coordinator(torrent)
        session = _attach(coordinator, FakeSession("10.0.0.1", [0, 1], 2))
        coordinator.selector.add_peer(session.remote_bitfield)
        kept = BlockRequest(0, 0, BLOCK)
        coordinator.store.claim(kept, session.address)
        await coordinator.store.write_block(0, BLOCK, CONTENT[BLOCK : 2 * BLOCK], session.address)

        await coordinator.on_session_closed(session)

        assert session.address not in coordinator.sessions
        assert coordinator.selector.availability(0) == 0
        assert coordinator.store.block_status(kept) is BlockStatus.NOT_REQUESTED
        assert coordinator.store.block_status(BlockRequest(0, BLOCK, BLOCK)) is BlockStatus.RECEIVED

    @pytest.mark.asyncio
    async def test_expired_requests_reissued(self, torrent):
        """Timed-out requests are released and cancelled at the slow peer."""
        coordinator = _coordinator(
            torrent, network=NetworkConfig(request_timeout=5.0, peer_timeout=60.0)
        )
        slow = _attach(coordinator, FakeSession("10.0.0.1", [0], 2))
        stale = BlockRequest(0, 0, BLOCK)
        fresh = BlockRequest(0, BLOCK, BLOCK)
        coordinator.store.claim(stale, slow.address, now=time.monotonic() - 10.0)
        coordinator.store.claim(fresh, slow.address)

        await coordinator._release_expired()

        assert coordinator.store.block_status(stale) is BlockStatus.NOT_REQUESTED
        assert coordinator.store.block_status(fresh) is BlockStatus.REQUESTED
        slow.cancel_block.assert_awaited_once_with(stale)
        assert slow.address in coordinator.snubbed

    @pytest.mark.asyncio
    async def test_snubbed_peer_skipped_until_it_delivers(self, torrent):
        """A snubbed peer gets no new requests until it sends a block."""
        coordinator = _coordinator(torrent, strategy=StrategyConfig(endgame_threshold_pieces=0))
        slow = _attach(coordinator, FakeSession("10.0.0.1", [0, 1], 2))
        coordinator.selector.add_peer(slow.remote_bitfield)
        coordinator.snubbed[slow.address] = time.monotonic() + 60.0

        await coordinator._schedule()
        assert slow.outstanding == {}

        late = BlockRequest(0, 0, BLOCK)
        await coordinator.on_block(slow, late, CONTENT[:BLOCK])
        assert slow.address not in coordinator.snubbed
        await coordinator._schedule()
        assert slow.outstanding


class TestPeerPool:
    """Peer discovery, retries and stalls."""

    @pytest.mark.asyncio
    async def test_refresh_skips_banned(self, torrent):
        """Banned peers are not re-added by a refresh."""
        good = PeerAddress(host="10.0.0.1", port=1)
        bad = PeerAddress(host="10.0.0.2", port=1)
        coordinator = _coordinator(torrent, peers=[good, bad])
        coordinator.banned.add(bad)
        await coordinator._refresh_peers()
        assert coordinator.addresses == {good}

    @pytest.mark.asyncio
    async def test_refresh_failure_is_logged(self, torrent):
        """A failing peer source does not abort the download."""
        coordinator = _coordinator(torrent)
        coordinator.peer_source = MagicMock()
        coordinator.peer_source.fetch = AsyncMock(side_effect=TrackerError("down"))
        await coordinator._refresh_peers()
        assert coordinator.addresses == set()

    @pytest.mark.asyncio
    async def test_connect_failure_backs_off(self, torrent):
        """Failed connections are retried only after a delay."""
        address = PeerAddress(host="10.0.0.1", port=6881)
        coordinator = _coordinator(torrent, peers=[address])
        await coordinator._refresh_peers()

        with patch.object(
            PeerSession, "connect", AsyncMock(side_effect=PeerIOError("refused"))
        ):
            coordinator._fill_pool()
            await asyncio.gather(*list(coordinator._session_tasks.values()))

        assert coordinator.retry.failures(address) == 1
        assert address not in coordinator._connectable()

    @pytest.mark.asyncio
    async def test_max_peers_respected(self, torrent):
        """No more than max_peers sessions are started."""
        peers = [PeerAddress(host=f"10.0.0.{i}", port=6881) for i in range(1, 6)]
        coordinator = _coordinator(torrent, peers=peers, network=NetworkConfig(max_peers=2))
        await coordinator._refresh_peers()

        async def _hang(self, *args, **kwargs):
            await asyncio.Event().wait()

        with patch.object(PeerSession, "connect", _hang):
            coordinator._fill_pool()
            coordinator._fill_pool()
            assert len(coordinator._session_tasks) == 2
            await coordinator.stop()

    @pytest.mark.asyncio
    async def test_stalls_without_peers(self, torrent):
        """With no peers to try the download fails instead of hanging."""
        coordinator = _coordinator(
            torrent,
            network=NetworkConfig(maintenance_interval=0.02, stall_timeout=0.1),
        )
        with pytest.raises(DownloadStalled):
            await asyncio.wait_for(coordinator.download(), timeout=5.0)

    @pytest.mark.asyncio
    async def test_stalls_when_connected_peers_offer_nothing(self, torrent):
        """A live peer without any missing piece does not hold off a stall."""
        coordinator = _coordinator(torrent, network=NetworkConfig(stall_timeout=1.0))
        _attach(coordinator, FakeSession("10.0.0.1", [0], 2))
        coordinator.have.set(0)
        coordinator._last_progress -= 5.0

        coordinator._check_stall()

        assert isinstance(coordinator._failure, DownloadStalled)
        assert coordinator._failure.details["connected"] == 1

    @pytest.mark.asyncio
    async def test_no_stall_while_a_peer_offers_a_missing_piece(self, torrent):
        """A connected peer holding a piece we lack keeps the download alive."""
        coordinator = _coordinator(torrent, network=NetworkConfig(stall_timeout=1.0))
        _attach(coordinator, FakeSession("10.0.0.1", [0, 1], 2))
        coordinator.have.set(0)
        coordinator._last_progress -= 5.0

        coordinator._check_stall()

        assert coordinator._failure is None
