"""Peer wire protocol: message codec and peer sessions."""

from __future__ import annotations

from bitswarm.peer.messages import Handshake, MessageDecoder, PeerMessage
from bitswarm.peer.session import PeerSession, SessionListener, SessionState

__all__ = [
    "Handshake",
    "MessageDecoder",
    "PeerMessage",
    "PeerSession",
    "SessionListener",
    "SessionState",
]
