"""Discovery coordinator: polls every source and feeds the controller inbox."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from swarmget.discovery.base import DiscoverySource
from swarmget.exceptions import DiscoveryFailure
from swarmget.models import DiscoveryConfig
from swarmget.session.intents import DiscoveryFailed, PeersDiscovered
from swarmget.utils.backoff import Cooldowns
from swarmget.utils.logging_config import log_exception
from swarmget.utils.tasks import BackgroundTaskGroup
from swarmget.utils.time import Clock


class DiscoveryCoordinator:
    """Runs one polling task per discovery source.

    Successful queries are re-polled every ``poll_interval`` seconds (or the
    interval the source asks for, if longer), or earlier when the swarm asks
    for more peers through ``request_refresh``. Failed queries are retried
    with per-source exponential backoff and never stop the swarm.
    """

    def __init__(
        self,
        info_hash: bytes,
        sources: Sequence[DiscoverySource],
        config: DiscoveryConfig,
        inbox: asyncio.Queue,
        clock: Clock | None = None,
    ) -> None:
        self.info_hash = info_hash
        self.sources = list(sources)
        self.config = config
        self.inbox = inbox
        self.clock = clock or Clock()
        self.logger = logging.getLogger(__name__)
        self.retries: Cooldowns[str] = Cooldowns(
            config.retry_base_delay, config.retry_max_delay, jitter=0.1, clock=self.clock
        )
        self.last_success: dict[str, float] = {}
        self._wake: dict[str, asyncio.Event] = {}
        self._tasks = BackgroundTaskGroup()

    @property
    def failures(self) -> dict[str, int]:
        """Consecutive failures per source name."""
        return self.retries.failures

    def start(self) -> None:
        for source in self.sources:
            self._tasks.create(self._poll(source), name=f"discovery-{source.name}")
        self.logger.debug("Started %d discovery sources", len(self.sources))

    async def poll_once(self, source: DiscoverySource) -> float:
        """Query one source, report the result and return the delay until the next query."""
        try:
            addresses = await source.query_peers(self.info_hash)
        except DiscoveryFailure as e:
            return self._failed(source, e)
        except Exception as e:
            log_exception(self.logger, e, f"Discovery source {source.name} raised")
            error = DiscoveryFailure(f"{type(e).__name__}: {e}", {"source": source.name})
            return self._failed(source, error)

        self.retries.clear(source.name)
        self.last_success[source.name] = self.clock.now()
        self.inbox.put_nowait(PeersDiscovered(source.name, tuple(addresses)))
        requested = source.next_interval()
        return max(self.config.poll_interval, requested or 0.0)

    def _failed(self, source: DiscoverySource, error: DiscoveryFailure) -> float:
        delay = self.retries.record_failure(source.name)
        self.logger.warning(
            "Discovery via %s failed: %s (retry in %.1fs)", source.name, error, delay
        )
        self.inbox.put_nowait(DiscoveryFailed(source.name, error, delay))
        return delay

    def request_refresh(self) -> list[str]:
        """Wake sources idling on their regular interval; returns their names.

        Sources in backoff keep their retry delay. A source is not re-polled
        within ``refresh_interval`` of its last successful query.
        """
        now = self.clock.now()
        woken = []
        for name, wake in self._wake.items():
            last = self.last_success.get(name)
            if wake.is_set() or last is None or name in self.retries.failures:
                continue
            if now - last < self.config.refresh_interval:
                continue
            wake.set()
            woken.append(name)
        if woken:
            self.logger.debug("Refreshing discovery early via %s", ", ".join(woken))
        return woken

    async def _poll(self, source: DiscoverySource) -> None:
        while True:
            delay = await self.poll_once(source)
            if source.name in self.retries.failures:
                await self.clock.sleep(delay)
            else:
                await self._idle(source.name, delay)

    async def _idle(self, name: str, delay: float) -> None:
        """Sleep for ``delay`` unless ``request_refresh`` wakes this source first."""
        wake = self._wake.setdefault(name, asyncio.Event())
        wake.clear()
        sleeper = asyncio.ensure_future(self.clock.sleep(delay))
        woken = asyncio.ensure_future(wake.wait())
        try:
            await asyncio.wait({sleeper, woken}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            woken.cancel()

    async def stop(self) -> None:
        await self._tasks.cancel_and_wait(timeout=2.0)
        for source in self.sources:
            try:
                await source.close()
            except Exception:
                self.logger.exception("Error closing discovery source %s", source.name)
