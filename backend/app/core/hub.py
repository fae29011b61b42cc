"""
SilentLine - Dispatch Hub

Composition root for the call-session orchestration core. This is the
single entry point the websocket and REST layers talk to.

Architecture:
    DispatchHub wires together:

    - CallRegistry: session map, lifecycle, ingest and vitals bookkeeping
    - VitalsCache: readings that arrive before registration
    - SignalingRelay: opaque handshake forwarding
    - BroadcastHub: dispatcher-console fan-out
    - AnalysisScheduler: one periodic triage task per joined call
    - TriageAnalyzer: external analysis backend

    Transport handlers translate wire messages into hub calls; the hub
    turns registry results into outbound messages.

Design Principles:
    - Single event loop: no locks, registry mutations never straddle an await
    - Fail-soft: unknown calls and send failures are logged, never raised
      back to the sender (except duplicate registration / unknown join,
      which the sender must hear about)
    - Privacy-aware: ephemeral state, masked call ids and no coordinates in logs

Usage:
    from app.core.hub import create_hub
    from app.config import get_settings

    hub = create_hub(get_settings())
    await hub.register_call("c1", caller_ws, Location(35.91, -79.06))
    await hub.join_call("c1", dispatcher_ws)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from app.config import Settings
from app.core.broadcast import BroadcastHub
from app.core.logging import mask_call_id
from app.core.registry import CallRegistry, SessionView
from app.core.relay import SignalingRelay
from app.core.scheduler import AnalysisScheduler
from app.core.types import (
    Channel,
    IngestItem,
    Location,
    Role,
    VitalsOutcome,
    VitalsReading,
)
from app.core.vitals import VitalsCache
from app.services.triage_analyzer import TriageAnalyzer, create_analyzer

logger = logging.getLogger(__name__)


class DispatchHub:
    """
    Orchestrates registration, join, relay, ingest, vitals and teardown.

    Attributes:
        registry: Call session registry
        vitals: Pre-registration vitals cache
        relay: Signaling relay
        broadcast: Dispatcher-console fan-out
        analyzer: External triage analyzer
    """

    def __init__(
        self,
        settings: Settings,
        analyzer: TriageAnalyzer,
        broadcast: Optional[BroadcastHub] = None,
        vitals: Optional[VitalsCache] = None,
    ):
        self._settings = settings
        self.analyzer = analyzer
        self.broadcast = broadcast or BroadcastHub()
        self.vitals = vitals or VitalsCache(ttl_seconds=settings.pending_vitals_ttl_seconds)
        self.registry = CallRegistry(
            vitals=self.vitals,
            broadcast=self.broadcast,
            scheduler_factory=self._create_scheduler,
            ingest_capacity=settings.ingest_queue_capacity,
        )
        self.relay = SignalingRelay(self.registry)

        logger.info(
            "DispatchHub initialized: analyzer=%s, interval=%.1fs, ingest_capacity=%d",
            analyzer.model_id,
            settings.analysis_interval_seconds,
            settings.ingest_queue_capacity,
        )

    def _create_scheduler(self, call_id: str, registry: CallRegistry) -> AnalysisScheduler:
        return AnalysisScheduler(
            call_id=call_id,
            registry=registry,
            analyzer=self.analyzer,
            broadcast=self.broadcast,
            interval_seconds=self._settings.analysis_interval_seconds,
            sample_rate=self._settings.audio_sample_rate,
            channels=self._settings.audio_channels,
            sample_width=self._settings.audio_sample_width_bytes,
        )

    # -------------------------------------------------------------------------
    # Call Lifecycle
    # -------------------------------------------------------------------------

    async def register_call(
        self,
        call_id: str,
        caller: Channel,
        location: Optional[Location] = None,
    ) -> SessionView:
        """
        Register a new call and announce it to dispatcher consoles.

        Raises:
            DuplicateCallError: If the call id is already live
        """
        view = self.registry.register(call_id, caller, location)

        await self._send(caller, {
            "type": "call_registered",
            "call_id": call_id,
            "vitals_buffered": view.last_vitals is not None,
        })
        await self.broadcast.notify_incoming(call_id, location)
        return view

    async def join_call(self, call_id: str, dispatcher: Channel) -> Optional[VitalsReading]:
        """
        Attach a dispatcher, replay cached vitals to it, and tell the caller.

        Raises:
            CallNotFoundError: If the call is not live
        """
        self.registry.join(call_id, dispatcher)
        view = self.registry.lookup(call_id)

        await self._send(dispatcher, {
            "type": "call_joined",
            "call_id": call_id,
            "location": view.location.to_dict() if view and view.location else None,
            "started_at": view.started_at.isoformat() if view else None,
        })

        # Re-read after the send: a newer reading may have arrived meanwhile
        current = self.registry.lookup(call_id)
        vitals = current.last_vitals if current is not None else None
        if vitals is not None:
            await self._send_vitals(dispatcher, call_id, vitals)

        if view is not None:
            await self._send(view.caller_channel, {
                "type": "dispatcher_joined",
                "call_id": call_id,
            })
        return vitals

    async def watch_call(self, call_id: str, observer: Channel) -> SessionView:
        """Add a dashboard observer to a call and bring it up to date."""
        view = self.registry.watch(call_id, observer)
        if view.last_vitals is not None:
            await self._send_vitals(observer, call_id, view.last_vitals)
        if view.last_report is not None:
            await self._send(observer, {
                "type": "triage_update",
                "call_id": call_id,
                "report": view.last_report.to_dict(),
            })
        return view

    async def end_call(self, call_id: str, reason: str) -> bool:
        """Idempotent teardown; False if there was nothing to end."""
        return await self.registry.end(call_id, reason)

    # -------------------------------------------------------------------------
    # Data Channels
    # -------------------------------------------------------------------------

    async def record_vitals(self, call_id: str, reading: VitalsReading) -> VitalsOutcome:
        """
        Record a vitals reading, forwarding it right away if a dispatcher is attached.

        Returns:
            FORWARDED if a dispatcher received it now, otherwise what the
            registry did with it (STORED, BUFFERED or DROPPED).
        """
        outcome, dispatcher = self.registry.record_vitals(call_id, reading)
        if dispatcher is not None and await self._send_vitals(dispatcher, call_id, reading):
            return VitalsOutcome.FORWARDED
        return outcome

    async def replay_vitals(self, call_id: str) -> bool:
        """
        Re-send cached vitals to the dispatcher after a peer-media reconnect.

        A transient transport reconnect on the dispatcher side can lose
        earlier push events; replaying the cached reading is idempotent.
        """
        view = self.registry.lookup(call_id)
        if view is None or view.dispatcher_channel is None or view.last_vitals is None:
            return False
        logger.info("Replaying vitals after reconnect: call=%s", mask_call_id(call_id))
        return await self._send_vitals(view.dispatcher_channel, call_id, view.last_vitals)

    def ingest(self, call_id: str, item: IngestItem, source: Optional[Channel] = None) -> bool:
        """
        Queue raw audio/frame for analysis. Best-effort, never raises.

        With a `source`, only the socket that registered the call may feed it.
        """
        return self.registry.push_ingest(call_id, item, source=source)

    def is_caller(self, call_id: str, channel: Channel) -> bool:
        return self.registry.is_caller(call_id, channel)

    async def forward_signal(self, call_id: str, from_role: Role, payload: Any) -> bool:
        return await self.relay.forward(call_id, from_role, payload)

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    def connect_dispatcher(self, channel: Channel) -> None:
        """Subscribe a dispatcher console to incoming-call notices."""
        self.broadcast.subscribe(channel)

    def disconnect_dispatcher(self, channel: Channel) -> None:
        """A dispatcher console went away: detach it, never end its calls."""
        self.broadcast.unsubscribe(channel)
        self.registry.detach(channel)

    async def disconnect_caller(self, channel: Channel) -> int:
        """
        A caller socket closed: treat it as an implicit end for its calls.

        Every teardown is claimed before the first await, and the wait is
        shielded, so the dispatcher still hears `call_ended` if the socket
        handler is cancelled here.
        """
        teardowns = [
            task
            for task in (
                self.registry.begin_end(call_id, "caller_disconnected")
                for call_id in self.registry.calls_for_caller(channel)
            )
            if task is not None
        ]
        if teardowns:
            await asyncio.shield(asyncio.gather(*teardowns))
        return len(teardowns)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _send_vitals(self, channel: Channel, call_id: str, reading: VitalsReading) -> bool:
        return await self._send(channel, {
            "type": "vitals",
            "call_id": call_id,
            "vitals": reading.to_dict(),
        })

    @staticmethod
    async def _send(channel: Channel, message: dict) -> bool:
        try:
            await channel.send_json(message)
            return True
        except Exception as e:
            logger.warning("Send of %s failed: %s", message.get("type"), e)
            return False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def startup(self) -> None:
        logger.info("Hub startup complete (analyzer=%s)", self.analyzer.model_id)

    async def shutdown(self) -> None:
        """End every live call so no analysis task outlives the process."""
        ended = await self.registry.end_all("server_shutdown")
        self.vitals.clear()
        logger.info("Hub shutdown complete: ended %d call(s)", ended)

    @property
    def stats(self) -> dict:
        return {
            "active_calls": self.registry.active_count,
            "pending_vitals": self.vitals.pending_count,
            "observers": self.broadcast.observer_count,
            "relay": self.relay.stats,
        }


# =============================================================================
# Factory Function
# =============================================================================

def create_hub(
    settings: Settings,
    analyzer: Optional[TriageAnalyzer] = None,
) -> DispatchHub:
    """
    Build a DispatchHub with the analyzer selected by settings.

    Args:
        settings: Application settings
        analyzer: Optional explicit analyzer (tests inject scripted fakes)
    """
    if analyzer is None:
        analyzer = create_analyzer(settings)

    logger.info(
        "Hub configured: analyzer=%s, pending_vitals_ttl=%.0fs",
        type(analyzer).__name__,
        settings.pending_vitals_ttl_seconds,
    )
    return DispatchHub(settings=settings, analyzer=analyzer)
