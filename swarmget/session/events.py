"""Swarm event stream.

Each significant transition of a swarm (found, progress tick, warning,
terminal outcome) is published as a ``SwarmEvent``. Records serialize to one
JSON line each with the payload fields at top level, next to ``status``,
``message`` and a monotonic ``timestamp``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventStatus(str, Enum):
    """Status tags carried by swarm events."""

    INIT = "init"
    FOUND = "found"
    DOWNLOADING = "downloading"
    WARNING = "warning"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (EventStatus.COMPLETE, EventStatus.ERROR, EventStatus.CANCELLED)


@dataclass(frozen=True)
class SwarmEvent:
    """One record of the event stream."""

    status: EventStatus
    timestamp: float
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Flatten the payload next to the status, message and timestamp."""
        return {
            **self.data,
            "status": self.status.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        """Convert event to a single JSON line."""
        return json.dumps(self.to_dict(), default=str)


class EventStream:
    """Fan-out of swarm events to any number of subscribers.

    Late subscribers first receive the buffered history. Iteration ends after
    the terminal event.
    """

    def __init__(self, max_replay_events: int = 1000) -> None:
        self.history: deque[SwarmEvent] = deque(maxlen=max_replay_events)
        self.closed = False
        self._subscribers: set[asyncio.Queue[SwarmEvent]] = set()
        self.logger = logging.getLogger(__name__)

    def emit(self, event: SwarmEvent) -> None:
        """Publish an event; events after the terminal one are dropped."""
        if self.closed:
            self.logger.debug("Dropping %s event after terminal event", event.status.value)
            return
        self.history.append(event)
        for queue in self._subscribers:
            queue.put_nowait(event)
        if event.status.is_terminal:
            self.closed = True

    async def subscribe(self, replay: bool = True) -> AsyncIterator[SwarmEvent]:
        """Yield events until the terminal event has been delivered."""
        queue: asyncio.Queue[SwarmEvent] = asyncio.Queue()
        if replay:
            for event in self.history:
                queue.put_nowait(event)
        if not self.closed:
            self._subscribers.add(queue)
        elif queue.empty():
            return
        try:
            while True:
                event = await queue.get()
                yield event
                if event.status.is_terminal:
                    return
        finally:
            self._subscribers.discard(queue)

    def __aiter__(self) -> AsyncIterator[SwarmEvent]:
        return self.subscribe()
