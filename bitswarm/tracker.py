"""HTTP tracker communication and peer sources.

The download coordinator only needs an object with ``async fetch()``
returning peer addresses. ``TrackerPeerSource`` provides that on top of
``TrackerClient``; ``StaticPeerSource`` serves a fixed list.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import urllib.parse
from dataclasses import dataclass, field

import aiohttp

from bitswarm.core.bencode import decode
from bitswarm.models import PeerAddress, TorrentInfo
from bitswarm.utils.exceptions import BencodeError, TrackerError

PEER_ID_PREFIX = b"-BS0100-"
USER_AGENT = "bitswarm/0.1.0"


def generate_peer_id(prefix: bytes = PEER_ID_PREFIX) -> bytes:
    """Generate a 20-byte peer id: client prefix followed by random bytes."""
    return prefix + secrets.token_bytes(20 - len(prefix))


@dataclass
class TrackerResponse:
    """Tracker response data."""

    interval: int
    peers: list[PeerAddress] = field(default_factory=list)
    complete: int | None = None
    incomplete: int | None = None
    warning_message: str | None = None


def parse_compact_peers(peers_data: bytes) -> list[PeerAddress]:
    """Parse the compact peer format: 4-byte IPv4 + 2-byte port per peer."""
    if len(peers_data) % 6 != 0:
        msg = f"Invalid compact peer data length: {len(peers_data)} bytes"
        raise TrackerError(msg)

    peers = []
    for start in range(0, len(peers_data), 6):
        ip = ".".join(str(b) for b in peers_data[start : start + 4])
        port = int.from_bytes(peers_data[start + 4 : start + 6], byteorder="big")
        if port == 0:
            continue
        peers.append(PeerAddress(host=ip, port=port))
    return peers


def parse_response(response_data: bytes) -> TrackerResponse:
    """Parse a bencoded announce response.

    Raises:
        TrackerError: failure reason present, or the response is malformed
    """
    try:
        decoded = decode(response_data)
    except BencodeError as e:
        msg = f"Failed to parse tracker response: {e}"
        raise TrackerError(msg) from e
    if not isinstance(decoded, dict):
        msg = "Tracker response is not a dictionary"
        raise TrackerError(msg)

    if b"failure reason" in decoded:
        reason = decoded[b"failure reason"].decode("utf-8", errors="ignore")
        msg = f"Tracker failure: {reason}"
        raise TrackerError(msg)
    if b"peers" not in decoded:
        msg = "Missing peers in tracker response"
        raise TrackerError(msg)

    peers_data = decoded[b"peers"]
    if isinstance(peers_data, bytes):
        peers = parse_compact_peers(peers_data)
    else:
        # Non-compact form: list of dicts with ip and port.
        try:
            peers = [
                PeerAddress(host=p[b"ip"].decode("utf-8"), port=p[b"port"])
                for p in peers_data
            ]
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            msg = f"Invalid peer list in tracker response: {e}"
            raise TrackerError(msg) from e

    warning = decoded.get(b"warning message")
    return TrackerResponse(
        interval=decoded.get(b"interval", 1800),
        peers=peers,
        complete=decoded.get(b"complete"),
        incomplete=decoded.get(b"incomplete"),
        warning_message=warning.decode("utf-8", errors="ignore") if warning else None,
    )


class TrackerClient:
    """Announces to an HTTP tracker."""

    def __init__(
        self,
        peer_id: bytes | None = None,
        port: int = 6881,
        timeout: float = 10.0,
    ):
        """Initialize the tracker client.

        Args:
            peer_id: Our peer id (generated when None)
            port: Port reported to the tracker
            timeout: HTTP timeout in seconds
        """
        self.peer_id = peer_id or generate_peer_id()
        self.port = port
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def build_announce_url(
        self,
        torrent: TorrentInfo,
        uploaded: int = 0,
        downloaded: int = 0,
        left: int | None = None,
        event: str = "started",
    ) -> str:
        """Build the announce URL with query parameters."""
        if not torrent.announce:
            msg = "Torrent has no announce URL"
            raise TrackerError(msg)

        params: dict[str, str | bytes] = {
            "info_hash": torrent.info_hash,
            "peer_id": self.peer_id,
            "port": str(self.port),
            "uploaded": str(uploaded),
            "downloaded": str(downloaded),
            "left": str(torrent.total_length if left is None else left),
            "compact": "1",
        }
        if event:
            params["event"] = event

        separator = "&" if "?" in torrent.announce else "?"
        query = urllib.parse.urlencode(params, quote_via=urllib.parse.quote)
        return f"{torrent.announce}{separator}{query}"

    async def announce(
        self,
        torrent: TorrentInfo,
        uploaded: int = 0,
        downloaded: int = 0,
        left: int | None = None,
        event: str = "started",
    ) -> TrackerResponse:
        """Announce and return the tracker's peer list.

        Raises:
            TrackerError: HTTP, network or tracker-reported failure
        """
        url = self.build_announce_url(torrent, uploaded, downloaded, left, event)
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(
                timeout=timeout, headers={"User-Agent": USER_AGENT}
            ) as session, session.get(url) as response:
                if response.status != 200:
                    msg = f"HTTP {response.status}: {response.reason}"
                    raise TrackerError(msg)
                data = await response.read()
        except aiohttp.ClientError as e:
            msg = f"Network error: {e}"
            raise TrackerError(msg) from e
        except asyncio.TimeoutError as e:
            msg = f"Tracker request timed out after {self.timeout}s"
            raise TrackerError(msg) from e

        result = parse_response(data)
        if result.warning_message:
            self.logger.warning("Tracker warning: %s", result.warning_message)
        self.logger.info("Tracker returned %d peers", len(result.peers))
        return result


class TrackerPeerSource:
    """Peer source backed by a tracker announce."""

    def __init__(self, torrent: TorrentInfo, client: TrackerClient | None = None):
        """Create a source for ``torrent`` using ``client``."""
        self.torrent = torrent
        self.client = client or TrackerClient()
        self.interval: int | None = None
        self._announced = False

    async def fetch(self) -> list[PeerAddress]:
        """Announce (``started`` the first time) and return the peers."""
        event = "" if self._announced else "started"
        response = await self.client.announce(self.torrent, event=event)
        self._announced = True
        self.interval = response.interval
        return response.peers


class StaticPeerSource:
    """Peer source returning a fixed list."""

    def __init__(self, peers: list[PeerAddress]):
        """Create a source serving ``peers``."""
        self.peers = list(peers)

    async def fetch(self) -> list[PeerAddress]:
        """Return the configured peers."""
        return list(self.peers)
