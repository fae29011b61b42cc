"""
SilentLine - Signaling Relay

Forwards peer-media negotiation payloads (offer/answer/ICE candidates)
between the caller and dispatcher of a call.

Payloads are opaque: they are forwarded verbatim, in the order received,
and never parsed. If the opposing endpoint is not connected the payload is
dropped rather than queued, since replaying a stale handshake out of order
is not meaningful.
"""

from __future__ import annotations

import logging
from typing import Any

from app.core.logging import mask_call_id
from app.core.registry import CallRegistry
from app.core.types import Role

logger = logging.getLogger(__name__)


class SignalingRelay:
    """Routes a handshake payload to the other side of the call."""

    def __init__(self, registry: CallRegistry):
        self._registry = registry
        self._forwarded = 0
        self._dropped = 0

    async def forward(self, call_id: str, from_role: Role, payload: Any) -> bool:
        """
        Send `payload` to the endpoint opposite `from_role`.

        Returns:
            True if delivered; False if the call or the opposing channel is
            absent, or the send failed. Never raises to the sender.
        """
        view = self._registry.lookup(call_id)
        if view is None:
            self._dropped += 1
            logger.info("Signal dropped, unknown call=%s", mask_call_id(call_id))
            return False

        target_role = from_role.opposite
        target = view.dispatcher_channel if target_role is Role.DISPATCHER else view.caller_channel
        if target is None:
            self._dropped += 1
            logger.info(
                "Signal dropped, no %s attached: call=%s",
                target_role.value,
                mask_call_id(call_id),
            )
            return False

        try:
            await target.send_json({
                "type": "signal",
                "call_id": call_id,
                "from": from_role.value,
                "payload": payload,
            })
        except Exception as e:
            self._dropped += 1
            logger.warning(
                "Signal delivery to %s failed: call=%s, error=%s",
                target_role.value,
                mask_call_id(call_id),
                e,
            )
            return False

        self._forwarded += 1
        return True

    @property
    def stats(self) -> dict:
        return {"forwarded": self._forwarded, "dropped": self._dropped}
