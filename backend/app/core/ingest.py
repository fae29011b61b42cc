"""
SilentLine - Ingest Buffer

Bounded per-call FIFO of raw audio chunks and still frames waiting for the
next analysis round.

Ingestion is best-effort: once the buffer is full, new items are dropped
and the push still reports success to the sender. Stalling the caller's
media producer is worse than losing a sample.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, List

from app.core.types import IngestItem

logger = logging.getLogger(__name__)


class IngestBuffer:
    """
    Bounded FIFO owned by exactly one call session.

    `drain()` is the only consumption path; there is no peek.

    Usage:
        buffer = IngestBuffer(capacity=500)
        buffer.push(IngestItem.audio(pcm))
        items = buffer.drain()
    """

    def __init__(self, capacity: int = 500):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._items: Deque[IngestItem] = deque()
        self._accepted = 0
        self._dropped = 0

    def __len__(self) -> int:
        return len(self._items)

    def push(self, item: IngestItem) -> bool:
        """
        Append an item, or drop it if the buffer is full.

        Returns:
            Always True: a dropped item is still a successful push for the
            sender. Drops are only visible in `stats`. Never raises, never blocks.
        """
        if len(self._items) >= self._capacity:
            self._dropped += 1
            # First drop, then every 100th
            if self._dropped == 1 or self._dropped % 100 == 0:
                logger.warning(
                    "Ingest buffer full (%d items), dropped %d item(s) so far",
                    self._capacity,
                    self._dropped,
                )
            return True

        self._items.append(item)
        self._accepted += 1
        return True

    def drain(self) -> List[IngestItem]:
        """Remove and return every queued item in arrival order."""
        items = list(self._items)
        self._items.clear()
        return items

    @property
    def stats(self) -> dict:
        return {
            "queued": len(self._items),
            "capacity": self._capacity,
            "accepted": self._accepted,
            "dropped": self._dropped,
        }
