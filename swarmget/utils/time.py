"""Clock abstraction to aid testability and deterministic sleeps."""

from __future__ import annotations

import asyncio
import time as _time


class Clock:
    """Monotonic clock used for every timeout and event timestamp."""

    def now(self) -> float:
        """Return monotonic time in seconds."""
        return _time.monotonic()

    async def sleep(self, seconds: float) -> None:
        """Async sleep for the specified number of seconds."""
        await asyncio.sleep(seconds)
