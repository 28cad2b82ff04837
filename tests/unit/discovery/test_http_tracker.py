"""Tests for the HTTP tracker discovery source."""

from __future__ import annotations

import socket
import struct
import urllib.parse
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from aiohttp import web

from swarmget.core.bencode import encode
from swarmget.discovery.tracker import HTTPTrackerSource, parse_compact_peers, parse_compact_peers6
from swarmget.exceptions import DiscoveryFailure
from swarmget.models import DiscoveryConfig, PeerAddress

pytestmark = [pytest.mark.unit, pytest.mark.tracker]

INFO_HASH = b"\xab" * 20
PEER_ID = b"-SG0100-123456789012"


def _compact(*peers: tuple[str, int]) -> bytes:
    return b"".join(socket.inet_aton(ip) + struct.pack("!H", port) for ip, port in peers)


@pytest.fixture
def source():
    return HTTPTrackerSource("http://tracker.example/announce", PEER_ID, DiscoveryConfig())


class TestCompactPeers:
    def test_ipv4(self):
        data = _compact(("1.2.3.4", 6881), ("10.0.0.1", 0), ("5.6.7.8", 51413))
        assert parse_compact_peers(data) == [
            PeerAddress(ip="1.2.3.4", port=6881),
            PeerAddress(ip="5.6.7.8", port=51413),
        ]

    def test_ipv6(self):
        data = socket.inet_pton(socket.AF_INET6, "2001:db8::1") + struct.pack("!H", 6881)
        assert parse_compact_peers6(data) == [PeerAddress(ip="2001:db8::1", port=6881)]

    def test_bad_length(self):
        with pytest.raises(DiscoveryFailure):
            parse_compact_peers(b"\x00" * 7)
        with pytest.raises(DiscoveryFailure):
            parse_compact_peers6(b"\x00" * 7)


class TestParseResponse:
    """Tests for parse_response."""

    def test_compact_response(self, source):
        body = encode({b"interval": 1800, b"peers": _compact(("1.2.3.4", 6881))})
        assert source.parse_response(body) == [PeerAddress(ip="1.2.3.4", port=6881)]
        assert source.next_interval() == 1800.0

    def test_dict_peers(self, source):
        body = encode(
            {
                b"interval": 60,
                b"peers": [
                    {b"ip": b"1.2.3.4", b"port": 1},
                    {b"ip": b"bad"},
                    {b"ip": b"5.6.7.8", b"port": 99999},
                ],
            }
        )
        assert source.parse_response(body) == [PeerAddress(ip="1.2.3.4", port=1)]

    def test_failure_reason(self, source):
        with pytest.raises(DiscoveryFailure, match="torrent not registered"):
            source.parse_response(encode({b"failure reason": b"torrent not registered"}))

    def test_non_string_failure_reason(self, source):
        with pytest.raises(DiscoveryFailure, match="Malformed tracker failure reason: 5"):
            source.parse_response(b"d14:failure reasoni5ee")

    def test_tracker_id_remembered(self, source):
        source.parse_response(encode({b"tracker id": b"abc", b"peers": b""}))
        assert "trackerid=abc" in source.build_announce_url(INFO_HASH, None)

    @pytest.mark.parametrize("body", [b"not bencode", encode([1, 2]), encode({b"peers": 5})])
    def test_malformed(self, source, body):
        with pytest.raises(DiscoveryFailure):
            source.parse_response(body)


class TestAnnounceUrl:
    def test_parameters(self, source):
        url = source.build_announce_url(INFO_HASH, "started")
        query = urllib.parse.parse_qs(urllib.parse.urlsplit(url).query)
        assert urllib.parse.unquote_to_bytes(url.split("info_hash=")[1].split("&")[0]) == INFO_HASH
        assert query["compact"] == ["1"]
        assert query["event"] == ["started"]
        assert query["port"] == ["6881"]
        assert query["left"] == ["0"]

    def test_existing_query_string(self):
        source = HTTPTrackerSource("http://t.example/announce?key=1", PEER_ID, DiscoveryConfig())
        assert "announce?key=1&info_hash=" in source.build_announce_url(INFO_HASH, None)


class TestQueryPeers:
    """query_peers against mocked and real HTTP servers."""

    def _session(self, status=200, body=b"", exc=None):
        response = MagicMock(status=status, reason="Status")
        response.read = AsyncMock(return_value=body)
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=response, side_effect=exc)
        context.__aexit__ = AsyncMock(return_value=False)
        session = MagicMock()
        session.get.return_value = context
        return session

    @pytest.mark.asyncio
    async def test_started_event_sent_once(self):
        body = encode({b"interval": 10, b"peers": _compact(("1.1.1.1", 1))})
        session = self._session(body=body)
        source = HTTPTrackerSource("http://t/announce", PEER_ID, DiscoveryConfig(), session=session)
        assert await source.query_peers(INFO_HASH) == [PeerAddress(ip="1.1.1.1", port=1)]
        await source.query_peers(INFO_HASH)
        first, second = (call.args[0] for call in session.get.call_args_list)
        assert "event=started" in first
        assert "event=" not in second
        await source.close()
        session.close.assert_not_called()

    @pytest.mark.asyncio
    async def test_http_error(self):
        source = HTTPTrackerSource(
            "http://t/announce", PEER_ID, DiscoveryConfig(), session=self._session(status=503)
        )
        with pytest.raises(DiscoveryFailure, match="HTTP 503"):
            await source.query_peers(INFO_HASH)

    @pytest.mark.asyncio
    async def test_network_error(self):
        session = self._session(exc=aiohttp.ClientConnectionError("refused"))
        source = HTTPTrackerSource("http://t/announce", PEER_ID, DiscoveryConfig(), session=session)
        with pytest.raises(DiscoveryFailure, match="Network error"):
            await source.query_peers(INFO_HASH)

    @pytest.mark.asyncio
    async def test_real_tracker(self):
        seen = []

        async def announce(request: web.Request) -> web.Response:
            seen.append(request.query)
            return web.Response(body=encode({b"interval": 900, b"peers": _compact(("9.9.9.9", 9))}))

        app = web.Application()
        app.router.add_get("/announce", announce)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", 0)
        await site.start()
        port = site._server.sockets[0].getsockname()[1]
        source = HTTPTrackerSource(
            f"http://127.0.0.1:{port}/announce", PEER_ID, DiscoveryConfig(), left=lambda: 1234
        )
        try:
            assert await source.query_peers(INFO_HASH) == [PeerAddress(ip="9.9.9.9", port=9)]
            assert seen[0]["left"] == "1234"
            assert seen[0]["event"] == "started"
        finally:
            await source.close()
            await runner.cleanup()
