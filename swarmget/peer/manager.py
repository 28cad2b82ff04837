"""Peer manager: admission, de-duplication, cooldowns and replenishment.

All methods except the connect coroutine are called from the controller's run
loop only. Connection attempts run as background tasks bounded by a semaphore
and report back through the controller inbox.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from swarmget.exceptions import HandshakeFailure
from swarmget.models import NetworkConfig, PeerAddress
from swarmget.peer.connection import PeerConnection
from swarmget.session.intents import ConnectFailed, PeerEstablished
from swarmget.utils.backoff import Cooldowns
from swarmget.utils.tasks import BackgroundTaskGroup
from swarmget.utils.time import Clock


class PeerManager:
    """Maintains the active peer window for one swarm."""

    def __init__(
        self,
        info_hash: bytes,
        peer_id: bytes,
        config: NetworkConfig,
        inbox: asyncio.Queue,
        tasks: BackgroundTaskGroup,
        clock: Clock | None = None,
    ) -> None:
        self.info_hash = info_hash
        self.peer_id = peer_id
        self.config = config
        self.inbox = inbox
        self.tasks = tasks
        self.clock = clock or Clock()
        self.logger = logging.getLogger(__name__)

        self.sessions: dict[PeerAddress, PeerConnection] = {}
        self.pending: set[PeerAddress] = set()
        self.backlog: dict[PeerAddress, None] = {}
        self.ever_established = False
        self.accepting = True

        self._semaphore = asyncio.Semaphore(config.max_concurrent_connects)
        self.cooldowns: Cooldowns[PeerAddress] = Cooldowns(
            config.cooldown_base, config.cooldown_max, clock=self.clock
        )

    @property
    def peer_count(self) -> int:
        return len(self.sessions)

    def known(self, address: PeerAddress) -> bool:
        return address in self.sessions or address in self.pending or address in self.backlog

    @property
    def wants_more_peers(self) -> bool:
        """Whether active and pending sessions are below the ``min_peers`` target."""
        return self.accepting and len(self.sessions) + len(self.pending) < self.config.min_peers

    def is_cooling_down(self, address: PeerAddress) -> bool:
        return self.cooldowns.blocked(address)

    def add_candidates(self, addresses: Iterable[PeerAddress]) -> int:
        """Queue newly discovered addresses and connect as capacity allows."""
        added = 0
        for address in addresses:
            if self.known(address):
                continue
            self.backlog[address] = None
            added += 1
        if added:
            self.logger.debug("Queued %d new peer candidates", added)
        self.replenish()
        return added

    def admit_candidate(self, address: PeerAddress) -> bool:
        """Start a connection attempt unless capped, duplicate or cooling down."""
        if not self.accepting or address in self.sessions or address in self.pending:
            return False
        if self.is_cooling_down(address):
            self.backlog.setdefault(address, None)
            return False
        if len(self.sessions) + len(self.pending) >= self.config.max_peers:
            self.backlog.setdefault(address, None)
            return False
        self.backlog.pop(address, None)
        self.pending.add(address)
        self.tasks.create(self._connect(address), name=f"connect-{address}")
        return True

    def replenish(self) -> int:
        """Admit backlog addresses until the window is full."""
        started = 0
        for address in list(self.backlog):
            if len(self.sessions) + len(self.pending) >= self.config.max_peers:
                break
            if self.is_cooling_down(address):
                continue
            if self.admit_candidate(address):
                started += 1
        return started

    async def _connect(self, address: PeerAddress) -> None:
        async with self._semaphore:
            connection = PeerConnection(
                address, self.info_hash, self.peer_id, self.config, self.inbox
            )
            try:
                await connection.connect()
            except HandshakeFailure as e:
                self.logger.debug("Connection to %s failed: %s", address, e)
                self.inbox.put_nowait(ConnectFailed(address, e))
                return
            self.inbox.put_nowait(PeerEstablished(connection))

    def on_established(self, connection: PeerConnection) -> bool:
        """Register a handshaken connection; False means the caller must close it."""
        address = connection.address
        self.pending.discard(address)
        if (
            not self.accepting
            or address in self.sessions
            or len(self.sessions) >= self.config.max_peers
        ):
            return False
        self.sessions[address] = connection
        self.cooldowns.clear(address)
        self.ever_established = True
        connection.start()
        self.logger.info("Connected to %s (%d peers)", address, len(self.sessions))
        return True

    def on_connect_failed(self, address: PeerAddress, penalize: bool = False) -> None:
        self.pending.discard(address)
        self._penalize(address, violation=penalize)
        self.replenish()

    def on_disconnect(
        self,
        address: PeerAddress,
        penalize: bool = False,
        connection: PeerConnection | None = None,
    ) -> PeerConnection | None:
        """Remove a session and replenish from the backlog.

        Returns the removed connection, or None if ``connection`` is given and
        is no longer the registered session for ``address``.
        """
        current = self.sessions.get(address)
        if current is None or (connection is not None and current is not connection):
            return None
        del self.sessions[address]
        self._penalize(address, violation=penalize)
        self.logger.info(
            "Disconnected from %s%s (%d peers)",
            address,
            " (penalized)" if penalize else "",
            len(self.sessions),
        )
        self.replenish()
        return current

    def _penalize(self, address: PeerAddress, violation: bool) -> None:
        self.cooldowns.record_failure(
            address, self.config.violation_cooldown if violation else None
        )
        if self.accepting:
            self.backlog[address] = None

    async def close_all(self) -> None:
        """Stop admitting and close every session."""
        self.accepting = False
        self.backlog.clear()
        connections = list(self.sessions.values())
        self.sessions.clear()
        await asyncio.gather(*(c.close() for c in connections), return_exceptions=True)
