"""Peer session: one TCP connection to one remote peer.

A session walks CONNECTING -> HANDSHAKING -> CONNECTED -> CLOSED. Every
state change goes through ``_transition`` so illegal moves fail loudly.
Inbound messages are handled in arrival order by ``run()``; anything the
download logic cares about is forwarded to a ``SessionListener``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum

from bitswarm.models import BlockRequest, NetworkConfig, PeerAddress, TorrentInfo
from bitswarm.peer.messages import (
    BitfieldMessage,
    CancelMessage,
    ChokeMessage,
    Handshake,
    HaveMessage,
    InterestedMessage,
    KeepAliveMessage,
    NotInterestedMessage,
    PeerMessage,
    PieceMessage,
    RequestMessage,
    UnchokeMessage,
    UnknownMessage,
    read_handshake,
    read_message,
)
from bitswarm.utils.bitfield import Bitfield
from bitswarm.utils.exceptions import (
    BitswarmError,
    HandshakeMismatch,
    InvalidStateTransition,
    PeerChoking,
    PeerIOError,
    PipelineFull,
    ProtocolViolation,
    SessionNotConnected,
)


class SessionState(Enum):
    """Lifecycle states of a peer session."""

    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    CONNECTED = "connected"
    CLOSED = "closed"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CONNECTING: frozenset({SessionState.HANDSHAKING, SessionState.CLOSED}),
    SessionState.HANDSHAKING: frozenset({SessionState.CONNECTED, SessionState.CLOSED}),
    SessionState.CONNECTED: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


class SessionListener:
    """Receives session events. Methods are no-ops unless overridden."""

    async def on_bitfield(self, session: PeerSession, bitfield: Bitfield) -> None:
        """Peer announced its full bitfield."""

    async def on_have(self, session: PeerSession, piece_index: int) -> None:
        """Peer announced a newly completed piece."""

    async def on_choke(
        self, session: PeerSession, dropped: list[BlockRequest]
    ) -> None:
        """Peer choked us; ``dropped`` are the requests it will not answer."""

    async def on_unchoke(self, session: PeerSession) -> None:
        """Peer unchoked us."""

    async def on_block(
        self, session: PeerSession, request: BlockRequest, data: bytes
    ) -> None:
        """A requested block arrived."""

    async def on_session_closed(self, session: PeerSession) -> None:
        """Session reached CLOSED; called exactly once."""


class PeerSession:
    """Download-side connection to a single peer."""

    def __init__(
        self,
        address: PeerAddress,
        torrent: TorrentInfo,
        our_peer_id: bytes,
        config: NetworkConfig | None = None,
        listener: SessionListener | None = None,
    ):
        """Initialize peer session.

        Args:
            address: Remote peer address
            torrent: Metadata of the torrent being downloaded
            our_peer_id: Our 20-byte peer id
            config: Network settings (timeouts, pipeline depth, frame limit)
            listener: Receiver of session events
        """
        self.address = address
        self.torrent = torrent
        self.our_peer_id = our_peer_id
        self.config = config or NetworkConfig()
        self.listener = listener or SessionListener()

        self.state = SessionState.CONNECTING
        self.remote_peer_id: bytes | None = None
        self.remote_bitfield = Bitfield(torrent.piece_count)

        self.am_choking = True
        self.am_interested = False
        self.peer_choking = True
        self.peer_interested = False

        self.outstanding: dict[BlockRequest, float] = {}
        # Requests we cancelled; late answers are still forwarded.
        self._cancelled: set[BlockRequest] = set()

        self.last_activity = time.monotonic()
        self.last_sent = time.monotonic()
        self.error: BaseException | None = None

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._messages_received = 0
        self._bitfield_received = False
        self._keepalive_task: asyncio.Task | None = None
        self.logger = logging.getLogger(__name__)

    def __str__(self) -> str:
        """Short description used in logs."""
        return f"PeerSession({self.address}, state={self.state.value})"

    def _transition(self, new_state: SessionState) -> None:
        """Move to ``new_state`` or raise InvalidStateTransition."""
        if new_state not in _TRANSITIONS[self.state]:
            msg = f"Illegal session transition {self.state.value} -> {new_state.value}"
            raise InvalidStateTransition(msg, {"peer": str(self.address)})
        self.logger.debug(
            "Peer %s: %s -> %s", self.address, self.state.value, new_state.value
        )
        self.state = new_state

    @property
    def is_connected(self) -> bool:
        """True while the message loop may run."""
        return self.state is SessionState.CONNECTED

    def can_request(self) -> bool:
        """True when a request_block() call would be accepted."""
        return (
            self.is_connected
            and not self.peer_choking
            and len(self.outstanding) < self.config.pipeline_depth
        )

    def available_slots(self) -> int:
        """Free pipeline slots."""
        return max(0, self.config.pipeline_depth - len(self.outstanding))

    async def connect(
        self,
        reader: asyncio.StreamReader | None = None,
        writer: asyncio.StreamWriter | None = None,
    ) -> None:
        """Open the connection and complete the handshake.

        Already-open streams may be passed in; otherwise a TCP connection
        to ``address`` is opened.

        Raises:
            PeerIOError: connect, timeout or socket failure
            HandshakeMismatch: wrong protocol identifier or info hash
            ProtocolViolation: truncated handshake
        """
        try:
            if reader is None or writer is None:
                reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(self.address.host, self.address.port),
                    timeout=self.config.connection_timeout,
                )
            if self.state is SessionState.CLOSED:
                # close() ran while connecting and had no writer to close.
                await self._discard_writer(writer)
                msg = f"Session with {self.address} closed while connecting"
                raise PeerIOError(msg)
            self._reader, self._writer = reader, writer
            self._transition(SessionState.HANDSHAKING)

            await self._send_raw(
                Handshake(self.torrent.info_hash, self.our_peer_id).encode()
            )
            handshake = await asyncio.wait_for(
                read_handshake(reader), timeout=self.config.handshake_timeout
            )
            if handshake.info_hash != self.torrent.info_hash:
                msg = (
                    f"Info hash mismatch: expected {self.torrent.info_hash.hex()}, "
                    f"got {handshake.info_hash.hex()}"
                )
                raise HandshakeMismatch(msg, {"peer": str(self.address)})
            if self.state is SessionState.CLOSED:
                msg = f"Session with {self.address} closed during handshake"
                raise PeerIOError(msg)
        except asyncio.TimeoutError as e:
            error = PeerIOError(f"Timed out connecting to {self.address}")
            await self.close(error)
            raise error from e
        except OSError as e:
            error = PeerIOError(f"Failed to connect to {self.address}: {e}")
            await self.close(error)
            raise error from e
        except BitswarmError as e:
            await self.close(e)
            raise

        self.remote_peer_id = handshake.peer_id
        self.last_activity = time.monotonic()
        self._transition(SessionState.CONNECTED)
        self.logger.info(
            "Connected to peer %s (id %s)", self.address, handshake.peer_id.hex()
        )

    async def run(self) -> None:
        """Process inbound messages until the session closes.

        Session-fatal errors close the session and are kept in ``error``;
        they are not raised.
        """
        if not self.is_connected:
            msg = f"Cannot run session in state {self.state.value}"
            raise SessionNotConnected(msg)

        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        try:
            while self.is_connected:
                message = await asyncio.wait_for(
                    read_message(self._reader, self.config.max_frame_length),
                    timeout=self.config.peer_timeout,
                )
                self.last_activity = time.monotonic()
                await self.handle_message(message)
        except asyncio.CancelledError:
            await self.close()
            raise
        except asyncio.TimeoutError:
            self.logger.info(
                "Peer %s inactive for %.0fs, closing",
                self.address,
                self.config.peer_timeout,
            )
            await self.close(PeerIOError(f"Peer {self.address} timed out"))
        except (BitswarmError, OSError) as e:
            if self.is_connected:
                self.logger.warning("Closing session with %s: %s", self.address, e)
            await self.close(e)
        finally:
            await self.close()

    async def handle_message(self, message: PeerMessage) -> None:
        """Apply one inbound message."""
        if isinstance(message, KeepAliveMessage):
            return

        first = self._messages_received == 0
        self._messages_received += 1

        match message:
            case ChokeMessage():
                self.peer_choking = True
                dropped = list(self.outstanding)
                self.outstanding.clear()
                self._cancelled.clear()
                self.logger.debug(
                    "Peer %s choked us, dropping %d requests", self.address, len(dropped)
                )
                await self.listener.on_choke(self, dropped)
            case UnchokeMessage():
                self.peer_choking = False
                self.logger.debug("Peer %s unchoked us", self.address)
                await self.listener.on_unchoke(self)
            case InterestedMessage():
                self.peer_interested = True
            case NotInterestedMessage():
                self.peer_interested = False
            case HaveMessage(piece_index=index):
                self._check_index(index)
                if not self.remote_bitfield.get(index):
                    self.remote_bitfield.set(index)
                    await self.listener.on_have(self, index)
            case BitfieldMessage(bitfield=payload):
                if self._bitfield_received:
                    msg = f"Peer {self.address} sent a second bitfield"
                    raise ProtocolViolation(msg)
                if not first:
                    msg = f"Peer {self.address} sent bitfield after other messages"
                    raise ProtocolViolation(msg)
                self._bitfield_received = True
                self.remote_bitfield = Bitfield.from_bytes(
                    payload, self.torrent.piece_count
                )
                self.logger.debug(
                    "Peer %s has %d/%d pieces",
                    self.address,
                    self.remote_bitfield.count(),
                    self.torrent.piece_count,
                )
                await self.listener.on_bitfield(self, self.remote_bitfield)
            case PieceMessage(piece_index=index, begin=begin, block=block):
                request = BlockRequest(index, begin, len(block))
                if self.outstanding.pop(request, None) is None:
                    if request not in self._cancelled:
                        self.logger.debug(
                            "Ignoring unrequested block %s from %s", request, self.address
                        )
                        return
                    self._cancelled.discard(request)
                await self.listener.on_block(self, request, block)
            case RequestMessage() | CancelMessage():
                # Uploading is not supported; requests are never served.
                self.logger.debug("Ignoring %s from %s", message, self.address)
            case UnknownMessage(message_id=message_id):
                self.logger.debug(
                    "Skipping unknown message id %d from %s", message_id, self.address
                )

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self.torrent.piece_count:
            msg = f"Peer {self.address} announced piece {index} out of range"
            raise ProtocolViolation(msg)

    async def request_block(self, request: BlockRequest) -> None:
        """Send a Request and track it as outstanding.

        Raises:
            SessionNotConnected: session is not CONNECTED
            PeerChoking: peer is choking us
            PipelineFull: pipeline depth reached
            PeerIOError: the send failed (the session is closed)
        """
        if not self.is_connected:
            msg = f"Session with {self.address} is {self.state.value}"
            raise SessionNotConnected(msg)
        if self.peer_choking:
            msg = f"Peer {self.address} is choking us"
            raise PeerChoking(msg)
        if request in self.outstanding:
            return
        if len(self.outstanding) >= self.config.pipeline_depth:
            msg = f"Pipeline to {self.address} is full"
            raise PipelineFull(msg, {"depth": self.config.pipeline_depth})

        self.outstanding[request] = time.monotonic()
        self._cancelled.discard(request)
        await self.send(
            RequestMessage(request.piece_index, request.offset, request.length)
        )

    async def cancel_block(self, request: BlockRequest) -> None:
        """Withdraw an outstanding request and send Cancel."""
        if self.outstanding.pop(request, None) is None:
            return
        self._cancelled.add(request)
        if self.is_connected:
            await self.send(
                CancelMessage(request.piece_index, request.offset, request.length)
            )

    async def send_interested(self) -> None:
        """Tell the peer we want some of its pieces."""
        self.am_interested = True
        await self.send(InterestedMessage())

    async def send_not_interested(self) -> None:
        """Tell the peer it has nothing we need."""
        self.am_interested = False
        await self.send(NotInterestedMessage())

    async def send(self, message: PeerMessage) -> None:
        """Encode and send a message."""
        if not self.is_connected:
            msg = f"Session with {self.address} is {self.state.value}"
            raise SessionNotConnected(msg)
        await self._send_raw(message.encode())

    async def _send_raw(self, data: bytes) -> None:
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as e:
            error = PeerIOError(f"Send to {self.address} failed: {e}")
            await self.close(error)
            raise error from e
        self.last_sent = time.monotonic()

    async def _keepalive_loop(self) -> None:
        interval = self.config.keep_alive_interval
        while self.is_connected:
            idle = time.monotonic() - self.last_sent
            if idle >= interval:
                try:
                    await self.send(KeepAliveMessage())
                except (PeerIOError, SessionNotConnected):
                    return
                idle = 0.0
            await asyncio.sleep(interval - idle)

    async def _discard_writer(self, writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            self.logger.debug("Error closing connection to %s: %s", self.address, e)

    async def close(self, error: BaseException | None = None) -> None:
        """Close the connection; idempotent.

        The listener's ``on_session_closed`` runs once, after the state is
        CLOSED and before this coroutine returns.
        """
        if self.state is SessionState.CLOSED:
            return
        if error is not None and self.error is None:
            self.error = error
        self._transition(SessionState.CLOSED)

        if self._keepalive_task is not None and self._keepalive_task is not asyncio.current_task():
            self._keepalive_task.cancel()
        if self._writer is not None:
            await self._discard_writer(self._writer)

        self.outstanding.clear()
        self._cancelled.clear()
        self.logger.debug("Session with %s closed (%s)", self.address, self.error)
        await self.listener.on_session_closed(self)
