"""
SilentLine - Vitals Cache

Holds vitals readings that arrive before their call is registered.

The caller's device finishes its contactless scan and may push the reading
before (or racing with) the call registration. Rather than relying on
timing, the reading is parked here and the registry pulls it in when the
call registers. Whichever of {registration, reading} happens first, the
other causes delivery.

Only the newest pending reading per call survives.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional, Tuple

from app.core.types import VitalsReading

logger = logging.getLogger(__name__)


class VitalsCache:
    """
    Pending (pre-registration) vitals keyed by call id.

    Per-session `last_vitals` lives on the CallSession itself; the registry
    is the only component that moves readings between the two.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            ttl_seconds: Pending entries older than this are discarded on access
                (0 disables expiry)
            clock: Monotonic clock, injectable for tests
        """
        self._pending: Dict[str, Tuple[VitalsReading, float]] = {}
        self._ttl = ttl_seconds
        self._clock = clock

    def stash(self, call_id: str, reading: VitalsReading) -> None:
        """Store a reading for a not-yet-registered call, replacing any prior one."""
        replaced = call_id in self._pending
        self._pending[call_id] = (reading, self._clock())
        self._evict_expired()

        logger.info(
            "Vitals buffered before registration (replaced=%s, pending=%d)",
            replaced,
            len(self._pending),
        )

    def take_pending(self, call_id: str) -> Optional[VitalsReading]:
        """Remove and return the pending reading for `call_id`, if any."""
        entry = self._pending.pop(call_id, None)
        if entry is None:
            return None

        reading, stored_at = entry
        if self._is_expired(stored_at):
            logger.info("Discarded expired pending vitals on registration")
            return None
        return reading

    @property
    def pending_count(self) -> int:
        self._evict_expired()
        return len(self._pending)

    def clear(self) -> None:
        self._pending.clear()

    def _is_expired(self, stored_at: float) -> bool:
        return self._ttl > 0 and (self._clock() - stored_at) > self._ttl

    def _evict_expired(self) -> None:
        if self._ttl <= 0:
            return
        stale = [cid for cid, (_, stored_at) in self._pending.items() if self._is_expired(stored_at)]
        for cid in stale:
            del self._pending[cid]
        if stale:
            logger.debug("Evicted %d expired pending vitals entries", len(stale))
