"""HTTP tracker discovery source (BEP 3 announce, BEP 23 compact peers)."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import struct
import urllib.parse
from typing import Any, Callable

import aiohttp

from swarmget.core.bencode import decode
from swarmget.discovery.base import DiscoverySource
from swarmget.exceptions import BencodeError, DiscoveryFailure
from swarmget.models import DiscoveryConfig, PeerAddress

USER_AGENT = "swarmget/0.1.0"


class HTTPTrackerSource(DiscoverySource):
    """Announces to one HTTP(S) tracker and returns its peer list."""

    def __init__(
        self,
        url: str,
        peer_id: bytes,
        config: DiscoveryConfig,
        left: Callable[[], int] | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.url = url
        self.name = url
        self.peer_id = peer_id
        self.config = config
        self.left = left or (lambda: 0)
        self.logger = logging.getLogger(__name__)
        self.interval: float | None = None
        self.tracker_id: bytes | None = None
        self._session = session
        self._owns_session = session is None
        self._started = False

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(
                total=self.config.request_timeout,
                connect=self.config.request_timeout,
            )
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                connector=aiohttp.TCPConnector(limit_per_host=2),
                headers={"User-Agent": USER_AGENT},
            )
        return self._session

    def build_announce_url(self, info_hash: bytes, event: str | None) -> str:
        """Build the complete tracker URL with all required parameters."""
        params: dict[str, Any] = {
            "info_hash": info_hash,
            "peer_id": self.peer_id,
            "port": str(self.config.listen_port),
            "uploaded": "0",
            "downloaded": "0",
            "left": str(self.left()),
            "compact": "1",
        }
        if event:
            params["event"] = event
        if self.tracker_id:
            params["trackerid"] = self.tracker_id
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urllib.parse.urlencode(params)}"

    async def query_peers(self, info_hash: bytes) -> list[PeerAddress]:
        url = self.build_announce_url(info_hash, None if self._started else "started")
        try:
            async with self._get_session().get(url) as response:
                if response.status != 200:
                    msg = f"HTTP {response.status}: {response.reason}"
                    raise DiscoveryFailure(msg, {"tracker": self.url})
                body = await response.read()
        except aiohttp.ClientError as e:
            msg = f"Network error: {e}"
            raise DiscoveryFailure(msg, {"tracker": self.url}) from e
        except asyncio.TimeoutError as e:
            msg = "Tracker request timed out"
            raise DiscoveryFailure(msg, {"tracker": self.url}) from e
        peers = self.parse_response(body)
        self._started = True
        self.logger.debug("Tracker %s returned %d peers", self.url, len(peers))
        return peers

    def next_interval(self) -> float | None:
        return self.interval

    def parse_response(self, response_data: bytes) -> list[PeerAddress]:
        """Parse a bencoded announce response.

        Raises:
            DiscoveryFailure: On a failure reason or malformed response

        """
        try:
            decoded = decode(response_data)
        except BencodeError as e:
            msg = f"Failed to parse tracker response: {e}"
            raise DiscoveryFailure(msg, {"tracker": self.url}) from e
        if not isinstance(decoded, dict):
            msg = "Tracker response is not a dictionary"
            raise DiscoveryFailure(msg, {"tracker": self.url})

        if b"failure reason" in decoded:
            raw_reason = decoded[b"failure reason"]
            if isinstance(raw_reason, bytes):
                msg = f"Tracker failure: {raw_reason.decode('utf-8', errors='ignore')}"
            else:
                msg = f"Malformed tracker failure reason: {raw_reason!r}"
            raise DiscoveryFailure(msg, {"tracker": self.url})

        warning = decoded.get(b"warning message")
        if isinstance(warning, bytes):
            self.logger.warning("Tracker %s: %s", self.url, warning.decode("utf-8", errors="ignore"))

        interval = decoded.get(b"interval")
        if isinstance(interval, int) and interval > 0:
            self.interval = float(interval)
        tracker_id = decoded.get(b"tracker id")
        if isinstance(tracker_id, bytes):
            self.tracker_id = tracker_id

        peers: list[PeerAddress] = []
        raw_peers = decoded.get(b"peers", b"")
        if isinstance(raw_peers, bytes):
            peers.extend(parse_compact_peers(raw_peers))
        elif isinstance(raw_peers, list):
            peers.extend(self._parse_dict_peers(raw_peers))
        else:
            msg = "Invalid peers field in tracker response"
            raise DiscoveryFailure(msg, {"tracker": self.url})
        raw_peers6 = decoded.get(b"peers6")
        if isinstance(raw_peers6, bytes):
            peers.extend(parse_compact_peers6(raw_peers6))
        return peers

    def _parse_dict_peers(self, entries: list[Any]) -> list[PeerAddress]:
        peers = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            ip = entry.get(b"ip")
            port = entry.get(b"port")
            if not isinstance(ip, bytes) or not isinstance(port, int):
                continue
            try:
                peers.append(PeerAddress(ip=ip.decode("utf-8"), port=port))
            except ValueError:
                self.logger.debug("Skipping invalid peer entry %r", entry)
        return peers

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None


def parse_compact_peers(peers_data: bytes) -> list[PeerAddress]:
    """Parse compact IPv4 peers: 4 bytes address + 2 bytes port each."""
    if len(peers_data) % 6 != 0:
        msg = f"Invalid compact peer data length: {len(peers_data)} bytes"
        raise DiscoveryFailure(msg)
    peers = []
    for start in range(0, len(peers_data), 6):
        ip = str(ipaddress.IPv4Address(peers_data[start : start + 4]))
        (port,) = struct.unpack("!H", peers_data[start + 4 : start + 6])
        if port:
            peers.append(PeerAddress(ip=ip, port=port))
    return peers


def parse_compact_peers6(peers_data: bytes) -> list[PeerAddress]:
    """Parse compact IPv6 peers: 16 bytes address + 2 bytes port each."""
    if len(peers_data) % 18 != 0:
        msg = f"Invalid compact peers6 data length: {len(peers_data)} bytes"
        raise DiscoveryFailure(msg)
    peers = []
    for start in range(0, len(peers_data), 18):
        ip = str(ipaddress.IPv6Address(peers_data[start : start + 16]))
        (port,) = struct.unpack("!H", peers_data[start + 16 : start + 18])
        if port:
            peers.append(PeerAddress(ip=ip, port=port))
    return peers
