"""BitTorrent wire protocol: handshake and length-prefixed messages.

Every message on the wire is ``<length:uint32 BE><id:uint8><payload>``; a zero
length is a keep-alive. Decoders validate payload sizes for every known
message id and raise ``ProtocolViolation`` on mismatch. Unknown ids decode to
``None`` so callers can skip them.
"""

from __future__ import annotations

import asyncio
import secrets
import string
import struct

from swarmget.exceptions import HandshakeFailure, ProtocolViolation
from swarmget.models import MessageType

HANDSHAKE_LENGTH = 68
EXTENSION_BYTE = 5
EXTENSION_BIT = 0x10

_PEER_ID_ALPHABET = string.ascii_letters + string.digits


def generate_peer_id(prefix: str = "-SG0100-") -> bytes:
    """Azureus-style peer id: client prefix followed by random characters."""
    raw = prefix.encode("ascii")[:20]
    suffix = "".join(secrets.choice(_PEER_ID_ALPHABET) for _ in range(20 - len(raw)))
    return raw + suffix.encode("ascii")


class Handshake:
    """BitTorrent handshake message."""

    PROTOCOL_STRING: bytes = b"BitTorrent protocol"

    def __init__(
        self,
        info_hash: bytes,
        peer_id: bytes,
        reserved: bytes | None = None,
    ) -> None:
        """Initialize handshake.

        Args:
            info_hash: 20-byte SHA-1 hash of info dictionary
            peer_id: 20-byte peer ID
            reserved: 8 reserved bytes; defaults to advertising BEP 10 extensions
        """
        if len(info_hash) != 20:
            msg = f"Info hash must be 20 bytes, got {len(info_hash)}"
            raise HandshakeFailure(msg)
        if len(peer_id) != 20:
            msg = f"Peer ID must be 20 bytes, got {len(peer_id)}"
            raise HandshakeFailure(msg)
        if reserved is None:
            flags = bytearray(8)
            flags[EXTENSION_BYTE] |= EXTENSION_BIT
            reserved = bytes(flags)
        if len(reserved) != 8:
            msg = f"Reserved must be 8 bytes, got {len(reserved)}"
            raise HandshakeFailure(msg)

        self.info_hash = info_hash
        self.peer_id = peer_id
        self.reserved = reserved

    @property
    def supports_extensions(self) -> bool:
        """Whether the sender set the BEP 10 extension protocol bit."""
        return bool(self.reserved[EXTENSION_BYTE] & EXTENSION_BIT)

    def encode(self) -> bytes:
        """Encode handshake to bytes.

        Format: <protocol len><protocol><reserved><info_hash><peer_id>
        Total: 1 + 19 + 8 + 20 + 20 = 68 bytes
        """
        return (
            struct.pack("B", len(self.PROTOCOL_STRING))
            + self.PROTOCOL_STRING
            + self.reserved
            + self.info_hash
            + self.peer_id
        )

    @classmethod
    def decode(cls, data: bytes) -> Handshake:
        """Decode handshake from bytes.

        Raises:
            HandshakeFailure: If data is invalid
        """
        if len(data) != HANDSHAKE_LENGTH:
            msg = f"Handshake must be {HANDSHAKE_LENGTH} bytes, got {len(data)}"
            raise HandshakeFailure(msg)
        if data[0] != len(cls.PROTOCOL_STRING) or data[1:20] != cls.PROTOCOL_STRING:
            msg = f"Invalid protocol string: {data[1:20]!r}"
            raise HandshakeFailure(msg)
        return cls(info_hash=data[28:48], peer_id=data[48:68], reserved=data[20:28])


class PeerMessage:
    """Base class for peer messages."""

    message_id: int = -1
    payload_size: int | None = 0

    def payload(self) -> bytes:
        """Message payload without the id byte."""
        return b""

    def encode(self) -> bytes:
        """Encode message with its length prefix."""
        body = struct.pack("B", self.message_id) + self.payload()
        return struct.pack("!I", len(body)) + body

    @classmethod
    def from_payload(cls, payload: bytes) -> PeerMessage:
        """Decode the payload of a message with a known id."""
        cls._check_size(payload)
        return cls()

    @classmethod
    def _check_size(cls, payload: bytes) -> None:
        if cls.payload_size is not None and len(payload) != cls.payload_size:
            msg = (
                f"{cls.__name__} payload must be {cls.payload_size} bytes, "
                f"got {len(payload)}"
            )
            raise ProtocolViolation(msg)

    def __eq__(self, other: object) -> bool:
        return (
            type(self) is type(other)
            and self.__dict__ == other.__dict__  # type: ignore[union-attr]
        )

    def __repr__(self) -> str:
        fields = ", ".join(
            f"{k}={len(v)}B" if isinstance(v, bytes) else f"{k}={v!r}"
            for k, v in self.__dict__.items()
        )
        return f"{type(self).__name__}({fields})"


class KeepAliveMessage(PeerMessage):
    """Keep-alive message (length = 0)."""

    def encode(self) -> bytes:
        """Encode keep-alive message."""
        return struct.pack("!I", 0)


class ChokeMessage(PeerMessage):
    """Choke message."""

    message_id = MessageType.CHOKE


class UnchokeMessage(PeerMessage):
    """Unchoke message."""

    message_id = MessageType.UNCHOKE


class InterestedMessage(PeerMessage):
    """Interested message."""

    message_id = MessageType.INTERESTED


class NotInterestedMessage(PeerMessage):
    """Not interested message."""

    message_id = MessageType.NOT_INTERESTED


class HaveMessage(PeerMessage):
    """Have message (announces that peer has a piece)."""

    message_id = MessageType.HAVE
    payload_size = 4

    def __init__(self, piece_index: int):
        self.piece_index = piece_index

    def payload(self) -> bytes:
        return struct.pack("!I", self.piece_index)

    @classmethod
    def from_payload(cls, payload: bytes) -> HaveMessage:
        cls._check_size(payload)
        return cls(struct.unpack("!I", payload)[0])


class BitfieldMessage(PeerMessage):
    """Bitfield message (shows which pieces the peer has)."""

    message_id = MessageType.BITFIELD
    payload_size = None

    def __init__(self, bitfield: bytes):
        self.bitfield = bitfield

    def payload(self) -> bytes:
        return self.bitfield

    @classmethod
    def from_payload(cls, payload: bytes) -> BitfieldMessage:
        return cls(bytes(payload))


class _BlockRefMessage(PeerMessage):
    """Shared layout of request and cancel: index, begin, length."""

    payload_size = 12

    def __init__(self, piece_index: int, begin: int, length: int):
        self.piece_index = piece_index
        self.begin = begin
        self.length = length

    def payload(self) -> bytes:
        return struct.pack("!III", self.piece_index, self.begin, self.length)

    @classmethod
    def from_payload(cls, payload: bytes) -> _BlockRefMessage:
        cls._check_size(payload)
        return cls(*struct.unpack("!III", payload))


class RequestMessage(_BlockRefMessage):
    """Request message (request a block from a piece)."""

    message_id = MessageType.REQUEST


class CancelMessage(_BlockRefMessage):
    """Cancel message (cancel a previous request)."""

    message_id = MessageType.CANCEL


class PieceMessage(PeerMessage):
    """Piece message (contains a block of piece data)."""

    message_id = MessageType.PIECE
    payload_size = None

    def __init__(self, piece_index: int, begin: int, block: bytes):
        self.piece_index = piece_index
        self.begin = begin
        self.block = block

    def payload(self) -> bytes:
        return struct.pack("!II", self.piece_index, self.begin) + self.block

    @classmethod
    def from_payload(cls, payload: bytes) -> PieceMessage:
        if len(payload) < 8:
            msg = f"Piece payload too short: {len(payload)} bytes"
            raise ProtocolViolation(msg)
        piece_index, begin = struct.unpack("!II", payload[:8])
        return cls(piece_index, begin, bytes(payload[8:]))


class PortMessage(PeerMessage):
    """DHT port message; validated and otherwise ignored."""

    message_id = MessageType.PORT
    payload_size = 2

    def __init__(self, port: int):
        self.port = port

    def payload(self) -> bytes:
        return struct.pack("!H", self.port)

    @classmethod
    def from_payload(cls, payload: bytes) -> PortMessage:
        cls._check_size(payload)
        return cls(struct.unpack("!H", payload)[0])


class ExtendedMessage(PeerMessage):
    """BEP 10 extension message: one extended id byte then the body."""

    message_id = MessageType.EXTENDED
    payload_size = None

    def __init__(self, extended_id: int, body: bytes):
        self.extended_id = extended_id
        self.body = body

    def payload(self) -> bytes:
        return struct.pack("B", self.extended_id) + self.body

    @classmethod
    def from_payload(cls, payload: bytes) -> ExtendedMessage:
        if not payload:
            msg = "Extended message without an extended id"
            raise ProtocolViolation(msg)
        return cls(payload[0], bytes(payload[1:]))


MESSAGE_TYPES: dict[int, type[PeerMessage]] = {
    cls.message_id: cls
    for cls in (
        ChokeMessage,
        UnchokeMessage,
        InterestedMessage,
        NotInterestedMessage,
        HaveMessage,
        BitfieldMessage,
        RequestMessage,
        PieceMessage,
        CancelMessage,
        PortMessage,
        ExtendedMessage,
    )
}


def decode_message(body: bytes) -> PeerMessage | None:
    """Decode a message body (id byte plus payload, no length prefix)."""
    if not body:
        return KeepAliveMessage()
    message_cls = MESSAGE_TYPES.get(body[0])
    if message_cls is None:
        return None
    return message_cls.from_payload(body[1:])


async def read_message(
    reader: asyncio.StreamReader,
    max_length: int,
) -> PeerMessage | None:
    """Read one framed message from a stream.

    Raises:
        ProtocolViolation: If the length prefix exceeds ``max_length`` or a
            known message has the wrong payload size
        asyncio.IncompleteReadError: If the stream closes mid-message
    """
    header = await reader.readexactly(4)
    (length,) = struct.unpack("!I", header)
    if length == 0:
        return KeepAliveMessage()
    if length > max_length:
        msg = f"Message length {length} exceeds limit {max_length}"
        raise ProtocolViolation(msg, {"length": length})
    return decode_message(await reader.readexactly(length))

