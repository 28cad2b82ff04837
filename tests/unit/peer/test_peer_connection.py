"""Tests for PeerConnection against an in-process seeder."""

from __future__ import annotations

import asyncio

import pytest

from swarmget.exceptions import HandshakeFailure, PeerBusy, PeerChoking
from swarmget.models import NetworkConfig, PeerAddress
from swarmget.peer.connection import PeerConnection
from swarmget.peer.messages import generate_peer_id
from swarmget.session.intents import (
    BitfieldReceived,
    BlockReceived,
    PeerClosed,
    PeerUnchoked,
)

from helpers.content import make_content
from helpers.inbox import next_intent
from helpers.seeder import SEEDER_UT_METADATA_ID, Seeder, SeederBehavior

pytestmark = [pytest.mark.unit, pytest.mark.peer]


@pytest.fixture
def content():
    return make_content(3 * 32 * 1024, piece_length=32 * 1024)


@pytest.fixture
def net_config():
    return NetworkConfig(connection_timeout=2.0, handshake_timeout=2.0, max_requests_per_peer=2)


async def _connect(seeder, content, inbox, config):
    connection = PeerConnection(seeder.address, content.info_hash, generate_peer_id(), config, inbox)
    await connection.connect()
    connection.start()
    return connection


class TestPeerConnection:
    """Protocol session behavior."""

    @pytest.mark.asyncio
    async def test_handshake_and_bitfield(self, content, net_config):
        inbox: asyncio.Queue = asyncio.Queue()
        async with Seeder(content) as seeder:
            connection = await _connect(seeder, content, inbox, net_config)
            try:
                assert connection.is_established
                assert connection.remote_supports_extensions
                bitfield = await next_intent(inbox, BitfieldReceived)
                assert bitfield.address == seeder.address
                assert bitfield.bitfield == b"\xe0"
                await asyncio.wait_for(connection.extensions_ready.wait(), 2)
                assert connection.remote_extensions == {"ut_metadata": SEEDER_UT_METADATA_ID}
                assert connection.metadata_size == len(content.info_bytes)
            finally:
                await connection.close()

    @pytest.mark.asyncio
    async def test_request_block_after_unchoke(self, content, net_config):
        inbox: asyncio.Queue = asyncio.Queue()
        async with Seeder(content) as seeder:
            connection = await _connect(seeder, content, inbox, net_config)
            try:
                with pytest.raises(PeerChoking):
                    await connection.request_block(0, 0, 16384)
                await connection.send_interested()
                await next_intent(inbox, PeerUnchoked)
                await connection.request_block(1, 16384, 16384)
                block = await next_intent(inbox, BlockReceived)
                assert (block.piece_index, block.offset) == (1, 16384)
                assert block.data == content.data[32 * 1024 + 16384 : 64 * 1024]
                assert connection.outstanding_requests == {}
                assert connection.bytes_received == 16384
                assert connection.throughput() > 0
            finally:
                await connection.close()

    @pytest.mark.asyncio
    async def test_request_cap(self, content, net_config):
        inbox: asyncio.Queue = asyncio.Queue()
        behavior = SeederBehavior(block_delay=0.5)
        async with Seeder(content, behavior) as seeder:
            connection = await _connect(seeder, content, inbox, net_config)
            try:
                await connection.send_interested()
                await next_intent(inbox, PeerUnchoked)
                await connection.request_block(0, 0, 16384)
                await connection.request_block(0, 16384, 16384)
                assert connection.available_slots() == 0
                with pytest.raises(PeerBusy):
                    await connection.request_block(1, 0, 16384)
                await connection.cancel_block(0, 16384)
                assert connection.available_slots() == 1
            finally:
                await connection.close()

    @pytest.mark.asyncio
    async def test_remote_disconnect_reports_closed(self, content, net_config):
        inbox: asyncio.Queue = asyncio.Queue()
        behavior = SeederBehavior(disconnect_after_blocks=1)
        async with Seeder(content, behavior) as seeder:
            connection = await _connect(seeder, content, inbox, net_config)
            await connection.send_interested()
            await next_intent(inbox, PeerUnchoked)
            await connection.request_block(0, 0, 16384)
            await connection.request_block(0, 16384, 16384)
            await next_intent(inbox, BlockReceived)
            closed = await next_intent(inbox, PeerClosed)
            assert closed.address == seeder.address
            assert closed.connection is connection
            assert closed.penalize is False
            assert connection.is_closed

    @pytest.mark.asyncio
    async def test_local_close_reports_closed(self, content, net_config):
        inbox: asyncio.Queue = asyncio.Queue()
        async with Seeder(content) as seeder:
            connection = await _connect(seeder, content, inbox, net_config)
            await connection.close()
            closed = await next_intent(inbox, PeerClosed)
            assert closed.connection is connection
            await asyncio.wait_for(connection.wait_closed(), 1)


class TestConnectFailures:
    @pytest.mark.asyncio
    async def test_info_hash_mismatch(self, content, net_config):
        other = make_content(1000, seed=99)
        async with Seeder(content) as seeder:
            connection = PeerConnection(
                seeder.address, other.info_hash, generate_peer_id(), net_config, asyncio.Queue()
            )
            with pytest.raises(HandshakeFailure):
                await connection.connect()
            assert connection.is_closed

    @pytest.mark.asyncio
    async def test_nothing_listening(self, content, net_config):
        seeder = Seeder(content)
        address = await seeder.start()
        await seeder.stop()
        connection = PeerConnection(
            PeerAddress(ip=address.ip, port=address.port),
            content.info_hash,
            generate_peer_id(),
            net_config,
            asyncio.Queue(),
        )
        with pytest.raises(HandshakeFailure):
            await connection.connect()
