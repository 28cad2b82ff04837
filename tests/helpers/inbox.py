"""Helpers for reading intents off a controller inbox in tests."""

from __future__ import annotations

import asyncio


async def next_intent(inbox: asyncio.Queue, kind: type, timeout: float = 3.0):
    """Return the first queued intent of ``kind``, discarding others."""

    async def _find():
        while True:
            item = await inbox.get()
            if isinstance(item, kind):
                return item

    return await asyncio.wait_for(_find(), timeout)
