"""Best-effort progress channel for scrape sessions."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from .logging_config import get_logger
from .models import ProgressEvent

logger = get_logger("progress")

ALL_SESSIONS = "*"


class ProgressBroadcaster:
    """Fan out progress events to per-session subscriber queues.

    Publishing never blocks and never raises: a full subscriber queue simply
    misses the event. Session counters in the store remain authoritative.
    """

    def __init__(self, max_queue_size: int = 100) -> None:
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.dropped_events = 0

    def subscribe(self, session_id: str = ALL_SESSIONS) -> asyncio.Queue:
        """Return a queue receiving events for ``session_id`` (``"*"`` for all)."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.setdefault(session_id, []).append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue, session_id: Optional[str] = None) -> None:
        keys = [session_id] if session_id else list(self._subscribers)
        for key in keys:
            queues = self._subscribers.get(key, [])
            if queue in queues:
                queues.remove(queue)

    def publish(self, event: ProgressEvent) -> int:
        """Deliver ``event`` to every matching subscriber; returns deliveries made."""
        delivered = 0
        targets = self._subscribers.get(event.session_id, []) + self._subscribers.get(ALL_SESSIONS, [])
        for queue in targets:
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                self.dropped_events += 1
                logger.debug("Dropped %s event for session %s", event.event, event.session_id)
        return delivered
