"""Unit tests for wire message framing."""

from __future__ import annotations

import asyncio
import struct

import pytest

from swarmget.exceptions import HandshakeFailure, ProtocolViolation
from swarmget.peer.messages import (
    HANDSHAKE_LENGTH,
    BitfieldMessage,
    CancelMessage,
    ChokeMessage,
    ExtendedMessage,
    Handshake,
    HaveMessage,
    InterestedMessage,
    KeepAliveMessage,
    PieceMessage,
    PortMessage,
    RequestMessage,
    UnchokeMessage,
    decode_message,
    generate_peer_id,
    read_message,
)

pytestmark = [pytest.mark.unit, pytest.mark.peer]

INFO_HASH = b"\x11" * 20
PEER_ID = b"-SG0100-abcdefghijkl"


class TestHandshake:
    """Tests for the 68-byte handshake."""

    def test_layout(self):
        data = Handshake(INFO_HASH, PEER_ID).encode()
        assert len(data) == HANDSHAKE_LENGTH
        assert data[0] == 19
        assert data[1:20] == b"BitTorrent protocol"
        assert data[28:48] == INFO_HASH
        assert data[48:] == PEER_ID

    def test_extension_bit_advertised_by_default(self):
        data = Handshake(INFO_HASH, PEER_ID).encode()
        assert data[20 + 5] & 0x10
        assert Handshake.decode(data).supports_extensions

    def test_plain_reserved(self):
        decoded = Handshake.decode(Handshake(INFO_HASH, PEER_ID, reserved=bytes(8)).encode())
        assert not decoded.supports_extensions
        assert decoded.info_hash == INFO_HASH
        assert decoded.peer_id == PEER_ID

    def test_bad_protocol_string(self):
        data = bytearray(Handshake(INFO_HASH, PEER_ID).encode())
        data[1:20] = b"X" * 19
        with pytest.raises(HandshakeFailure):
            Handshake.decode(bytes(data))

    def test_wrong_lengths(self):
        with pytest.raises(HandshakeFailure):
            Handshake(b"short", PEER_ID)
        with pytest.raises(HandshakeFailure):
            Handshake.decode(b"\x13" * 10)

    def test_generate_peer_id(self):
        peer_id = generate_peer_id("-SG0100-")
        assert len(peer_id) == 20
        assert peer_id.startswith(b"-SG0100-")
        assert generate_peer_id() != generate_peer_id()


class TestMessages:
    """Encoding and decoding of framed messages."""

    @pytest.mark.parametrize(
        "message",
        [
            ChokeMessage(),
            UnchokeMessage(),
            InterestedMessage(),
            HaveMessage(7),
            BitfieldMessage(b"\xf0\x01"),
            RequestMessage(1, 16384, 16384),
            CancelMessage(1, 16384, 16384),
            PieceMessage(2, 0, b"data"),
            PortMessage(6881),
            ExtendedMessage(1, b"d1:ai1ee"),
        ],
        ids=lambda m: type(m).__name__,
    )
    def test_encode_decode(self, message):
        encoded = message.encode()
        (length,) = struct.unpack("!I", encoded[:4])
        assert length == len(encoded) - 4
        assert decode_message(encoded[4:]) == message

    def test_request_wire_format(self):
        assert RequestMessage(1, 2, 3).encode() == (
            b"\x00\x00\x00\x0d\x06" + struct.pack("!III", 1, 2, 3)
        )

    def test_keepalive(self):
        assert KeepAliveMessage().encode() == b"\x00\x00\x00\x00"
        assert isinstance(decode_message(b""), KeepAliveMessage)

    def test_unknown_id_skipped(self):
        assert decode_message(b"\x63payload") is None

    def test_wrong_payload_size(self):
        with pytest.raises(ProtocolViolation):
            decode_message(b"\x04\x00\x01")
        with pytest.raises(ProtocolViolation):
            decode_message(b"\x07\x00")
        with pytest.raises(ProtocolViolation):
            decode_message(b"\x14")


class TestStreamDecoding:
    """Reading framed messages from a stream."""

    @pytest.mark.asyncio
    async def test_read_message(self):
        reader = asyncio.StreamReader()
        reader.feed_data(HaveMessage(3).encode() + KeepAliveMessage().encode())
        reader.feed_eof()
        assert await read_message(reader, 1024) == HaveMessage(3)
        assert isinstance(await read_message(reader, 1024), KeepAliveMessage)
        with pytest.raises(asyncio.IncompleteReadError):
            await read_message(reader, 1024)

    @pytest.mark.asyncio
    async def test_read_message_length_limit(self):
        reader = asyncio.StreamReader()
        reader.feed_data(struct.pack("!I", 10_000) + b"\x07")
        with pytest.raises(ProtocolViolation, match="exceeds"):
            await read_message(reader, 1024)
