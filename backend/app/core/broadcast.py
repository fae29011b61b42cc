"""
SilentLine - Broadcast Hub

Fans call-lifecycle and triage events out to dispatcher-facing channels.

Delivery is best-effort per observer: sends run concurrently and a failing
observer is logged and skipped, never allowed to block the others.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, List, Optional, Set

from app.core.types import Channel, Location, TriageReport

logger = logging.getLogger(__name__)


class BroadcastHub:
    """
    Global dispatcher-console observers plus per-call fan-out helpers.

    Every connected dispatcher console subscribes globally so it hears
    about incoming calls that have no dispatcher yet. Per-call observers
    (the session's dashboard channels) are passed in by the caller.
    """

    def __init__(self):
        self._observers: Set[Channel] = set()

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, channel: Channel) -> None:
        self._observers.add(channel)
        logger.debug("Observer subscribed (total=%d)", len(self._observers))

    def unsubscribe(self, channel: Channel) -> None:
        self._observers.discard(channel)
        logger.debug("Observer unsubscribed (total=%d)", len(self._observers))

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def notify_incoming(self, call_id: str, location: Optional[Location]) -> int:
        """Tell every dispatcher console a new call is waiting."""
        return await self.fan_out(
            {
                "type": "incoming_call",
                "call_id": call_id,
                "location": location.to_dict() if location else None,
            },
            self._observers,
        )

    async def notify_triage(
        self,
        call_id: str,
        report: TriageReport,
        observers: Iterable[Channel],
    ) -> int:
        """Publish a triage update to the call's dashboard observers."""
        return await self.fan_out(
            {
                "type": "triage_update",
                "call_id": call_id,
                "report": report.to_dict(),
            },
            observers,
        )

    async def notify_ended(
        self,
        call_id: str,
        reason: str,
        observers: Iterable[Channel],
    ) -> int:
        """
        Publish call termination to the given channels and all global observers.

        Each distinct channel receives the message exactly once, even when it
        is both the call's dispatcher and a global observer.
        """
        targets = set(observers) | self._observers
        return await self.fan_out(
            {
                "type": "call_ended",
                "call_id": call_id,
                "reason": reason,
            },
            targets,
        )

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def fan_out(self, message: dict, channels: Iterable[Channel]) -> int:
        """
        Send `message` to each channel concurrently.

        Returns:
            Number of channels the message was delivered to.
        """
        targets: List[Channel] = list(dict.fromkeys(channels))
        if not targets:
            return 0

        results = await asyncio.gather(
            *(self._send(channel, message) for channel in targets)
        )
        delivered = sum(1 for ok in results if ok)

        if delivered < len(targets):
            logger.warning(
                "Broadcast %s delivered to %d/%d observers",
                message.get("type"),
                delivered,
                len(targets),
            )
        return delivered

    @staticmethod
    async def _send(channel: Channel, message: Any) -> bool:
        try:
            await channel.send_json(message)
            return True
        except Exception as e:
            logger.debug("Observer send failed: %s", e)
            return False
