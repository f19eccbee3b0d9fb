"""Peer wire protocol codec.

Handles the 68-byte handshake and the length-prefixed message frames.
Every message id maps to one frozen dataclass; frames with ids this client
does not know decode to ``UnknownMessage`` so callers can skip them.
"""

from __future__ import annotations

import asyncio
import struct
from dataclasses import dataclass
from typing import ClassVar, Union

from bitswarm.models import HASH_LENGTH, MessageType
from bitswarm.utils.exceptions import (
    HandshakeMismatch,
    PeerIOError,
    ProtocolViolation,
)

HANDSHAKE_LENGTH = 68
PROTOCOL_STRING = b"BitTorrent protocol"
RESERVED_BYTES = b"\x00" * 8

_LENGTH = struct.Struct("!I")
_HEADER = struct.Struct("!IB")
_INDEX = struct.Struct("!I")
_REQUEST = struct.Struct("!III")
_PIECE_HEADER = struct.Struct("!II")


@dataclass(frozen=True)
class Handshake:
    """BitTorrent handshake message.

    Format: <pstrlen=19><pstr><reserved:8><info_hash:20><peer_id:20>
    """

    info_hash: bytes
    peer_id: bytes
    reserved: bytes = RESERVED_BYTES

    def __post_init__(self) -> None:
        """Validate field sizes."""
        if len(self.info_hash) != HASH_LENGTH:
            msg = f"Info hash must be 20 bytes, got {len(self.info_hash)}"
            raise ValueError(msg)
        if len(self.peer_id) != HASH_LENGTH:
            msg = f"Peer ID must be 20 bytes, got {len(self.peer_id)}"
            raise ValueError(msg)
        if len(self.reserved) != len(RESERVED_BYTES):
            msg = f"Reserved must be 8 bytes, got {len(self.reserved)}"
            raise ValueError(msg)

    def encode(self) -> bytes:
        """Encode handshake to its 68-byte wire form."""
        return (
            bytes([len(PROTOCOL_STRING)])
            + PROTOCOL_STRING
            + self.reserved
            + self.info_hash
            + self.peer_id
        )

    @classmethod
    def decode(cls, data: bytes) -> Handshake:
        """Decode a handshake.

        Raises:
            ProtocolViolation: if the data is not 68 bytes
            HandshakeMismatch: if the protocol identifier is wrong
        """
        if len(data) != HANDSHAKE_LENGTH:
            msg = f"Handshake must be {HANDSHAKE_LENGTH} bytes, got {len(data)}"
            raise ProtocolViolation(msg)
        if data[0] != len(PROTOCOL_STRING) or data[1:20] != PROTOCOL_STRING:
            msg = f"Invalid protocol identifier: {data[0:20]!r}"
            raise HandshakeMismatch(msg)
        # Reserved bits advertise extensions; accepted and ignored.
        return cls(info_hash=data[28:48], peer_id=data[48:68], reserved=data[20:28])


class _Encodable:
    """Mixin providing frame encoding from an id and payload."""

    message_id: ClassVar[int]

    def payload(self) -> bytes:
        return b""

    def encode(self) -> bytes:
        """Encode the message as a length-prefixed frame."""
        body = self.payload()
        return _HEADER.pack(1 + len(body), self.message_id) + body


@dataclass(frozen=True)
class KeepAliveMessage:
    """Keep-alive message (zero-length frame)."""

    def encode(self) -> bytes:
        """Encode keep-alive message."""
        return _LENGTH.pack(0)


@dataclass(frozen=True)
class ChokeMessage(_Encodable):
    """Peer will not answer requests."""

    message_id: ClassVar[int] = MessageType.CHOKE


@dataclass(frozen=True)
class UnchokeMessage(_Encodable):
    """Peer will answer requests."""

    message_id: ClassVar[int] = MessageType.UNCHOKE


@dataclass(frozen=True)
class InterestedMessage(_Encodable):
    """Sender wants pieces the receiver has."""

    message_id: ClassVar[int] = MessageType.INTERESTED


@dataclass(frozen=True)
class NotInterestedMessage(_Encodable):
    """Sender no longer wants anything from the receiver."""

    message_id: ClassVar[int] = MessageType.NOT_INTERESTED


@dataclass(frozen=True)
class HaveMessage(_Encodable):
    """Sender completed and verified ``piece_index``."""

    piece_index: int
    message_id: ClassVar[int] = MessageType.HAVE

    def payload(self) -> bytes:
        return _INDEX.pack(self.piece_index)


@dataclass(frozen=True)
class BitfieldMessage(_Encodable):
    """Sender's full piece bitfield; only valid as the first message."""

    bitfield: bytes
    message_id: ClassVar[int] = MessageType.BITFIELD

    def payload(self) -> bytes:
        return self.bitfield


@dataclass(frozen=True)
class RequestMessage(_Encodable):
    """Request for a block."""

    piece_index: int
    begin: int
    length: int
    message_id: ClassVar[int] = MessageType.REQUEST

    def payload(self) -> bytes:
        return _REQUEST.pack(self.piece_index, self.begin, self.length)


@dataclass(frozen=True)
class PieceMessage(_Encodable):
    """Block payload answering a request."""

    piece_index: int
    begin: int
    block: bytes
    message_id: ClassVar[int] = MessageType.PIECE

    def payload(self) -> bytes:
        return _PIECE_HEADER.pack(self.piece_index, self.begin) + self.block


@dataclass(frozen=True)
class CancelMessage(_Encodable):
    """Withdraws an earlier request."""

    piece_index: int
    begin: int
    length: int
    message_id: ClassVar[int] = MessageType.CANCEL

    def payload(self) -> bytes:
        return _REQUEST.pack(self.piece_index, self.begin, self.length)


@dataclass(frozen=True)
class UnknownMessage:
    """Frame with an id outside the core protocol (e.g. extensions)."""

    message_id: int
    data: bytes

    def encode(self) -> bytes:
        """Re-encode the frame unchanged."""
        return _HEADER.pack(1 + len(self.data), self.message_id) + self.data


PeerMessage = Union[
    KeepAliveMessage,
    ChokeMessage,
    UnchokeMessage,
    InterestedMessage,
    NotInterestedMessage,
    HaveMessage,
    BitfieldMessage,
    RequestMessage,
    PieceMessage,
    CancelMessage,
    UnknownMessage,
]


def _expect_size(name: str, payload: bytes, size: int) -> None:
    if len(payload) != size:
        msg = f"{name} payload must be {size} bytes, got {len(payload)}"
        raise ProtocolViolation(msg)


def decode_message(message_id: int, payload: bytes) -> PeerMessage:
    """Decode the body of a non-empty frame.

    Args:
        message_id: First byte of the frame body
        payload: Remaining bytes of the frame body

    Raises:
        ProtocolViolation: if the payload size is wrong for the id
    """
    match message_id:
        case MessageType.CHOKE:
            _expect_size("Choke", payload, 0)
            return ChokeMessage()
        case MessageType.UNCHOKE:
            _expect_size("Unchoke", payload, 0)
            return UnchokeMessage()
        case MessageType.INTERESTED:
            _expect_size("Interested", payload, 0)
            return InterestedMessage()
        case MessageType.NOT_INTERESTED:
            _expect_size("NotInterested", payload, 0)
            return NotInterestedMessage()
        case MessageType.HAVE:
            _expect_size("Have", payload, _INDEX.size)
            return HaveMessage(*_INDEX.unpack(payload))
        case MessageType.BITFIELD:
            return BitfieldMessage(bytes(payload))
        case MessageType.REQUEST:
            _expect_size("Request", payload, _REQUEST.size)
            return RequestMessage(*_REQUEST.unpack(payload))
        case MessageType.PIECE:
            if len(payload) < _PIECE_HEADER.size:
                msg = f"Piece payload too short: {len(payload)} bytes"
                raise ProtocolViolation(msg)
            piece_index, begin = _PIECE_HEADER.unpack_from(payload)
            return PieceMessage(piece_index, begin, bytes(payload[_PIECE_HEADER.size :]))
        case MessageType.CANCEL:
            _expect_size("Cancel", payload, _REQUEST.size)
            return CancelMessage(*_REQUEST.unpack(payload))
        case _:
            return UnknownMessage(message_id, bytes(payload))


class MessageDecoder:
    """Incremental frame decoder over a byte buffer."""

    def __init__(self, max_frame_length: int = (1 << 17) + 9):
        """Initialize decoder.

        Args:
            max_frame_length: Largest frame length accepted before the peer is
                considered to be violating the protocol
        """
        self.max_frame_length = max_frame_length
        self.buffer = bytearray()

    def feed(self, data: bytes) -> list[PeerMessage]:
        """Add bytes and return every complete message now available."""
        self.buffer.extend(data)
        messages: list[PeerMessage] = []
        while len(self.buffer) >= _LENGTH.size:
            (length,) = _LENGTH.unpack_from(self.buffer)
            if length > self.max_frame_length:
                msg = f"Frame of length {length} exceeds limit {self.max_frame_length}"
                raise ProtocolViolation(msg)
            if len(self.buffer) < _LENGTH.size + length:
                break
            body = bytes(self.buffer[_LENGTH.size : _LENGTH.size + length])
            del self.buffer[: _LENGTH.size + length]
            if length == 0:
                messages.append(KeepAliveMessage())
            else:
                messages.append(decode_message(body[0], body[1:]))
        return messages

    def pending(self) -> int:
        """Bytes buffered but not yet forming a full frame."""
        return len(self.buffer)


async def read_handshake(reader: asyncio.StreamReader) -> Handshake:
    """Read and decode a handshake from a stream."""
    try:
        data = await reader.readexactly(HANDSHAKE_LENGTH)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            msg = "Connection closed before handshake"
            raise PeerIOError(msg) from e
        msg = f"Truncated handshake: {len(e.partial)} bytes"
        raise ProtocolViolation(msg) from e
    return Handshake.decode(data)


async def read_message(
    reader: asyncio.StreamReader,
    max_frame_length: int = (1 << 17) + 9,
) -> PeerMessage:
    """Read one frame from a stream and decode it.

    Raises:
        PeerIOError: if the stream ends cleanly between frames
        ProtocolViolation: on oversized or truncated frames
    """
    try:
        header = await reader.readexactly(_LENGTH.size)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            msg = "Connection closed by peer"
            raise PeerIOError(msg) from e
        msg = "Truncated frame length prefix"
        raise ProtocolViolation(msg) from e

    (length,) = _LENGTH.unpack(header)
    if length == 0:
        return KeepAliveMessage()
    if length > max_frame_length:
        msg = f"Frame of length {length} exceeds limit {max_frame_length}"
        raise ProtocolViolation(msg)

    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        msg = f"Truncated frame: expected {length} bytes, got {len(e.partial)}"
        raise ProtocolViolation(msg) from e
    return decode_message(body[0], body[1:])
