"""Retry delays and per-key cooldowns for peers and discovery sources."""

from __future__ import annotations

import random
from typing import Generic, Hashable, TypeVar

from swarmget.utils.time import Clock

K = TypeVar("K", bound=Hashable)


def backoff_delay(
    retries: int,
    base_delay: float,
    max_delay: float,
    multiplier: float = 2.0,
    jitter: float = 0.0,
) -> float:
    """Delay before retry number ``retries`` (0-based), capped at ``max_delay``.

    ``jitter`` spreads the result uniformly over +/- that fraction.
    """
    delay = min(base_delay * (multiplier ** max(0, retries)), max_delay)
    if jitter > 0:
        spread = delay * jitter
        delay = max(0.0, delay - spread) + random.random() * (2 * spread)  # nosec B311
    return delay


class Cooldowns(Generic[K]):
    """Consecutive failure counts and retry deadlines, keyed by peer or source."""

    def __init__(
        self,
        base_delay: float,
        max_delay: float,
        jitter: float = 0.0,
        clock: Clock | None = None,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.clock = clock or Clock()
        self.failures: dict[K, int] = {}
        self.until: dict[K, float] = {}

    def record_failure(self, key: K, delay: float | None = None) -> float:
        """Count a failure for ``key`` and block it for the returned delay.

        A fixed ``delay`` replaces the exponential one (protocol violations).
        """
        retries = self.failures.get(key, 0)
        self.failures[key] = retries + 1
        if delay is None:
            delay = backoff_delay(retries, self.base_delay, self.max_delay, jitter=self.jitter)
        self.until[key] = self.clock.now() + delay
        return delay

    def clear(self, key: K) -> None:
        """Forget the failure history of ``key`` after a success."""
        self.failures.pop(key, None)
        self.until.pop(key, None)

    def blocked(self, key: K) -> bool:
        until = self.until.get(key)
        return until is not None and self.clock.now() < until
