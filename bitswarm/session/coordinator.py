"""Download coordinator: drives peer sessions until every piece verifies.

The coordinator owns the set of peer sessions and is the only component that
touches the piece store on their behalf. It runs one scheduling loop (inside
``download()``) and one maintenance task that sweeps timed-out requests,
refreshes the peer list and watches for stalls.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import Counter
from typing import Callable, Protocol

from bitswarm.models import BlockRequest, Config, PeerAddress, TorrentInfo
from bitswarm.peer.session import PeerSession, SessionListener
from bitswarm.piece.selector import PieceSelector
from bitswarm.piece.store import PieceStore, VerificationResult
from bitswarm.storage.sink import StorageSink
from bitswarm.tracker import generate_peer_id
from bitswarm.utils.backoff import ExponentialBackoff, RetryTracker
from bitswarm.utils.bitfield import Bitfield
from bitswarm.utils.exceptions import (
    BitswarmError,
    DownloadStalled,
    PeerIOError,
    RequestRejected,
)
from bitswarm.utils.logging_config import log_exception


class PeerSource(Protocol):
    """Supplies candidate peer addresses."""

    async def fetch(self) -> list[PeerAddress]: ...


ProgressCallback = Callable[[int, int], None]


class DownloadCoordinator(SessionListener):
    """Acquires every piece of a torrent from a swarm of peers."""

    def __init__(
        self,
        torrent: TorrentInfo,
        peer_source: PeerSource,
        sink: StorageSink,
        config: Config | None = None,
        peer_id: bytes | None = None,
        on_progress: ProgressCallback | None = None,
    ):
        """Initialize download coordinator.

        Args:
            torrent: Metadata of the torrent to download
            peer_source: Source of peer addresses, refreshed periodically
            sink: Receives each verified piece once
            config: Configuration (defaults when None)
            peer_id: Our 20-byte peer id (generated when None)
            on_progress: Called with (completed, total) after each verified piece
        """
        self.torrent = torrent
        self.peer_source = peer_source
        self.sink = sink
        self.config = config or Config()
        self.peer_id = peer_id or generate_peer_id()
        self.on_progress = on_progress

        network = self.config.network
        strategy = self.config.strategy
        self.store = PieceStore(
            torrent,
            block_size=network.block_size,
            max_hash_failures=strategy.max_hash_failures,
        )
        self.selector = PieceSelector(self.store, strategy)
        self.have = Bitfield(torrent.piece_count)
        self.done = asyncio.Event()

        self.addresses: set[PeerAddress] = set()
        self.banned: set[PeerAddress] = set()
        self.sessions: dict[PeerAddress, PeerSession] = {}
        self.retry = RetryTracker(
            ExponentialBackoff(
                base_delay=network.connect_backoff_base,
                max_delay=network.connect_backoff_max,
            ),
            max_failures=network.max_connect_failures,
        )
        self.peer_hash_failures: Counter[PeerAddress] = Counter()
        # Peers that let a request time out, with the time the snub ends.
        self.snubbed: dict[PeerAddress, float] = {}

        self._session_tasks: dict[PeerAddress, asyncio.Task] = {}
        self._verify_tasks: set[asyncio.Task] = set()
        self._maintenance_task: asyncio.Task | None = None
        self._wakeup = asyncio.Event()
        self._failure: BaseException | None = None
        self._last_progress = time.monotonic()
        self._last_refresh = 0.0
        self.logger = logging.getLogger(__name__)

    # Public API

    async def download(self) -> None:
        """Run until every piece is verified and written to the sink.

        Raises:
            DownloadStalled: no progress and no peer offers a missing piece
        """
        self.logger.info(
            "Starting download of %s (%d pieces, %d bytes)",
            self.torrent.name,
            self.torrent.piece_count,
            self.torrent.total_length,
        )
        self._last_progress = time.monotonic()
        await self._refresh_peers()
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        try:
            while not self.done.is_set():
                if self._failure is not None:
                    raise self._failure
                self._wakeup.clear()
                self._fill_pool()
                await self._schedule()
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(
                        self._wakeup.wait(),
                        timeout=self.config.network.maintenance_interval,
                    )
        finally:
            await self.stop()
        self.logger.info("Download of %s complete", self.torrent.name)

    async def stop(self) -> None:
        """Stop background tasks and close every session."""
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._maintenance_task
            self._maintenance_task = None

        for task in list(self._verify_tasks):
            task.cancel()
        for session in list(self.sessions.values()):
            await session.close()
        tasks = list(self._session_tasks.values()) + list(self._verify_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def progress(self) -> tuple[int, int]:
        """(completed, total) pieces."""
        return self.store.completed_count(), self.torrent.piece_count

    # Peer pool

    async def _refresh_peers(self) -> None:
        self._last_refresh = time.monotonic()
        try:
            peers = await self.peer_source.fetch()
        except (BitswarmError, OSError) as e:
            self.logger.warning("Failed to refresh peer list: %s", e)
            return
        new = {p for p in peers if p not in self.banned} - self.addresses
        self.addresses |= new
        if new:
            self.logger.info("Added %d peer addresses (%d known)", len(new), len(self.addresses))
            self._wakeup.set()

    def _connectable(self, now: float | None = None) -> list[PeerAddress]:
        return [
            address
            for address in self.addresses
            if address not in self.banned
            and address not in self._session_tasks
            and self.retry.ready(address, now)
        ]

    def _pool_exhausted(self) -> bool:
        """True when no known address may ever be tried again."""
        return all(
            address in self.banned or self.retry.exhausted(address)
            for address in self.addresses
            if address not in self._session_tasks
        )

    def _fill_pool(self) -> None:
        free = self.config.network.max_peers - len(self._session_tasks)
        if free <= 0:
            return
        for address in sorted(self._connectable(), key=str)[:free]:
            task = asyncio.create_task(self._run_session(address))
            self._session_tasks[address] = task
            task.add_done_callback(
                lambda _t, address=address: self._session_tasks.pop(address, None)
            )

    async def _run_session(self, address: PeerAddress) -> None:
        session = PeerSession(
            address, self.torrent, self.peer_id, self.config.network, listener=self
        )
        self.sessions[address] = session
        try:
            await session.connect()
        except BitswarmError as e:
            delay = self.retry.record_failure(address)
            self.logger.info(
                "Connection to %s failed (%s), retry in %.1fs", address, e, delay
            )
            return
        self.retry.record_success(address)
        await session.run()
        if session.error is not None and address not in self.banned:
            self.retry.record_failure(address)

    # Scheduling

    async def _schedule(self) -> None:
        """Fill every session's pipeline from the selector."""
        now = time.monotonic()
        for session in list(self.sessions.values()):
            if self.snubbed.get(session.address, 0.0) > now:
                continue
            while session.can_request():
                request = self.selector.next_request(session)
                if request is None:
                    break
                if not self.store.claim(request, session.address):
                    break
                try:
                    await session.request_block(request)
                except RequestRejected:
                    self.store.unclaim(request, session.address)
                    break
                except PeerIOError:
                    # The session closed and released its claims.
                    break

    async def _update_interest(self, session: PeerSession) -> None:
        if not session.is_connected:
            return
        wanted = bool(self.have.union_missing(session.remote_bitfield))
        try:
            if wanted and not session.am_interested:
                await session.send_interested()
            elif not wanted and session.am_interested:
                await session.send_not_interested()
        except (PeerIOError, RequestRejected) as e:
            self.logger.debug("Could not update interest for %s: %s", session.address, e)

    # Session events

    async def on_bitfield(self, session: PeerSession, bitfield: Bitfield) -> None:
        """Count the peer's pieces and declare interest."""
        self.selector.add_peer(bitfield)
        await self._update_interest(session)
        self._wakeup.set()

    async def on_have(self, session: PeerSession, piece_index: int) -> None:
        """Count the new piece and declare interest."""
        self.selector.add_have(piece_index)
        await self._update_interest(session)
        self._wakeup.set()

    async def on_choke(self, session: PeerSession, dropped: list[BlockRequest]) -> None:
        """Return the choked session's requests to the pool."""
        for request in dropped:
            self.store.unclaim(request, session.address)
        self._wakeup.set()

    async def on_unchoke(self, session: PeerSession) -> None:
        """Wake the scheduler."""
        self._wakeup.set()

    async def on_block(
        self, session: PeerSession, request: BlockRequest, data: bytes
    ) -> None:
        """Store a block, cancel duplicate requests and start verification."""
        self.snubbed.pop(session.address, None)
        losers = self.store.claimers(request) - {session.address}
        task = await self.store.write_block(
            request.piece_index, request.offset, data, peer=session.address
        )
        for address in losers:
            other = self.sessions.get(address)
            if other is None:
                continue
            try:
                await other.cancel_block(request)
            except PeerIOError as e:
                self.logger.debug("Cancel to %s failed: %s", address, e)
        if task is not None:
            verify = asyncio.create_task(self._verify(task.piece_index))
            self._verify_tasks.add(verify)
            verify.add_done_callback(self._verify_tasks.discard)
        self._wakeup.set()

    async def on_session_closed(self, session: PeerSession) -> None:
        """Release the session's claims before dropping it."""
        released = self.store.release_requests_for(session.address)
        self.snubbed.pop(session.address, None)
        self.selector.remove_peer(session.remote_bitfield)
        if self.sessions.get(session.address) is session:
            del self.sessions[session.address]
        self.logger.debug(
            "Session %s closed, released %d requests", session.address, released
        )
        self._wakeup.set()

    # Verification

    async def _verify(self, piece_index: int) -> None:
        try:
            result = await self.store.verify(piece_index)
            if result.ok:
                await self._piece_completed(result)
            else:
                await self._piece_failed(result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Surfaced by download(); a sink failure must not be lost.
            log_exception(self.logger, e, f"Piece {piece_index} could not be stored")
            self._failure = e
        self._wakeup.set()

    async def _piece_completed(self, result: VerificationResult) -> None:
        await self.sink.write_piece(result.piece_index, result.data)
        self.have.set(result.piece_index)
        self._last_progress = time.monotonic()
        completed, total = self.progress()
        self.logger.info("Piece %d verified (%d/%d)", result.piece_index, completed, total)
        if self.on_progress is not None:
            self.on_progress(completed, total)

        for session in list(self.sessions.values()):
            await self._update_interest(session)
        if self.store.is_complete():
            self.done.set()

    async def _piece_failed(self, result: VerificationResult) -> None:
        self.logger.warning("%s", result.error)
        strategy = self.config.strategy
        for address in result.contributors:
            self.peer_hash_failures[address] += 1
            if self.peer_hash_failures[address] >= strategy.peer_ban_threshold:
                await self._ban(address, "too many failed pieces")
        if result.exhausted:
            for address in result.contributors:
                await self._ban(address, f"piece {result.piece_index} exhausted retries")
            self.store.reset_failed(result.piece_index)

    async def _ban(self, address: PeerAddress, reason: str) -> None:
        if address in self.banned:
            return
        self.banned.add(address)
        self.addresses.discard(address)
        self.logger.warning("Banning peer %s: %s", address, reason)
        session = self.sessions.get(address)
        if session is not None:
            await session.close()

    # Maintenance

    async def _maintenance_loop(self) -> None:
        network = self.config.network
        while True:
            await asyncio.sleep(network.maintenance_interval)
            await self._release_expired()
            if time.monotonic() - self._last_refresh >= network.peer_refresh_interval:
                await self._refresh_peers()
            self._check_stall()
            self._wakeup.set()

    async def _release_expired(self) -> None:
        """Hand timed-out requests to other peers and cancel them at the slow one."""
        timeout = self.config.network.request_timeout
        expired = self.store.expired_requests(timeout)
        snub_until = time.monotonic() + timeout
        for request, address in expired:
            self.store.unclaim(request, address)
            self.snubbed[address] = snub_until
            session = self.sessions.get(address)
            self.logger.debug("Request %s to %s timed out", request, address)
            if session is None:
                continue
            try:
                await session.cancel_block(request)
            except PeerIOError as e:
                self.logger.debug("Cancel to %s failed: %s", address, e)

    def _has_useful_peer(self) -> bool:
        """True while some session is connecting or offers a piece we lack."""
        for address in self.sessions.keys() | self._session_tasks.keys():
            session = self.sessions.get(address)
            if session is None or not session.is_connected:
                return True
            if self.have.union_missing(session.remote_bitfield):
                return True
        return False

    def _check_stall(self) -> None:
        idle = time.monotonic() - self._last_progress
        if idle < self.config.network.stall_timeout:
            return
        if self._has_useful_peer() or not self._pool_exhausted():
            return
        self._failure = DownloadStalled(
            f"No progress for {idle:.0f}s and no peer offers a missing piece",
            {
                "completed": self.store.completed_count(),
                "total": self.torrent.piece_count,
                "banned": len(self.banned),
                "connected": len(self.sessions),
            },
        )
