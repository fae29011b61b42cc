"""
SilentLine - Call Registry

Single source of truth for active call sessions.

Concurrency:
    The hub runs on one asyncio event loop. Every check-and-mutate in this
    module happens without an intervening `await`, so two coroutines can
    never interleave inside one registration, join or teardown decision and
    no lock is needed. Termination flips the session to ENDED synchronously
    before any suspension point, which is what makes duplicate/concurrent
    termination a no-op. The rest of the teardown runs in a task the
    registry owns, so cancelling whoever asked for the end (a socket
    handler torn down with its connection) cannot strand the other side
    without a `call_ended`.

Privacy:
    Sessions are ephemeral (memory-only) and destroyed when the call ends.
    Caller coordinates are never logged.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, FrozenSet, List, Optional, Set, Tuple

from app.core.exceptions import CallNotFoundError, DuplicateCallError
from app.core.ingest import IngestBuffer
from app.core.logging import mask_call_id
from app.core.types import (
    CallStatus,
    Channel,
    IngestItem,
    Location,
    TriageReport,
    VitalsOutcome,
    VitalsReading,
)
from app.core.vitals import VitalsCache

if TYPE_CHECKING:
    from app.core.broadcast import BroadcastHub
    from app.core.scheduler import AnalysisScheduler

logger = logging.getLogger(__name__)

SchedulerFactory = Callable[[str, "CallRegistry"], "AnalysisScheduler"]


# =============================================================================
# Session State
# =============================================================================

@dataclass
class CallSession:
    """
    Mutable server-side record of one call. Never leaves this module;
    other components see `SessionView` snapshots.
    """
    call_id: str
    caller_channel: Channel
    ingest: IngestBuffer
    location: Optional[Location] = None
    status: CallStatus = CallStatus.REGISTERED
    dispatcher_channel: Optional[Channel] = None
    dashboard_channels: Set[Channel] = field(default_factory=set)
    last_vitals: Optional[VitalsReading] = None
    analysis: Optional["AnalysisScheduler"] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    joined_at: Optional[datetime] = None

    # Metrics
    vitals_received: int = 0
    triage_rounds: int = 0
    last_report: Optional[TriageReport] = None


@dataclass(frozen=True)
class SessionView:
    """Read-only snapshot of a live CallSession."""
    call_id: str
    status: CallStatus
    caller_channel: Channel
    dispatcher_channel: Optional[Channel]
    dashboard_channels: FrozenSet[Channel]
    last_vitals: Optional[VitalsReading]
    location: Optional[Location]
    started_at: datetime
    joined_at: Optional[datetime]
    analysis_running: bool
    ingest_stats: Dict[str, int]
    vitals_received: int
    triage_rounds: int
    last_report: Optional[TriageReport]

    @classmethod
    def from_session(cls, session: CallSession) -> "SessionView":
        return cls(
            call_id=session.call_id,
            status=session.status,
            caller_channel=session.caller_channel,
            dispatcher_channel=session.dispatcher_channel,
            dashboard_channels=frozenset(session.dashboard_channels),
            last_vitals=session.last_vitals,
            location=session.location,
            started_at=session.started_at,
            joined_at=session.joined_at,
            analysis_running=session.analysis is not None and session.analysis.running,
            ingest_stats=session.ingest.stats,
            vitals_received=session.vitals_received,
            triage_rounds=session.triage_rounds,
            last_report=session.last_report,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serializable summary for the REST API (channels omitted)."""
        duration = (datetime.now(timezone.utc) - self.started_at).total_seconds()
        return {
            "call_id": self.call_id,
            "status": self.status.value,
            "location": self.location.to_dict() if self.location else None,
            "started_at": self.started_at.isoformat(),
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
            "duration_seconds": round(duration, 1),
            "dispatcher_attached": self.dispatcher_channel is not None,
            "observers": len(self.dashboard_channels),
            "analysis_running": self.analysis_running,
            "last_vitals": self.last_vitals.to_dict() if self.last_vitals else None,
            "vitals_received": self.vitals_received,
            "triage_rounds": self.triage_rounds,
            "last_report": self.last_report.to_dict() if self.last_report else None,
            "ingest": dict(self.ingest_stats),
        }


# =============================================================================
# Registry
# =============================================================================

class CallRegistry:
    """
    Owns the session map; its methods are the only mutation surface.

    Usage:
        registry = CallRegistry(vitals=VitalsCache(), broadcast=BroadcastHub())
        view = registry.register("c1", caller_ws, Location(35.91, -79.06))
        vitals = registry.join("c1", dispatcher_ws)
        await registry.end("c1", "caller_ended")
    """

    def __init__(
        self,
        vitals: VitalsCache,
        broadcast: "BroadcastHub",
        scheduler_factory: Optional[SchedulerFactory] = None,
        ingest_capacity: int = 500,
    ):
        """
        Args:
            vitals: Pending (pre-registration) vitals cache
            broadcast: Fan-out used for termination notices
            scheduler_factory: Builds the per-call AnalysisScheduler at join time
            ingest_capacity: Bound of each session's ingest buffer
        """
        self._sessions: Dict[str, CallSession] = {}
        self._vitals = vitals
        self._broadcast = broadcast
        self._scheduler_factory = scheduler_factory
        self._ingest_capacity = ingest_capacity
        self._teardowns: Set[asyncio.Task] = set()

    def set_scheduler_factory(self, factory: SchedulerFactory) -> None:
        self._scheduler_factory = factory

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def register(
        self,
        call_id: str,
        caller_channel: Channel,
        location: Optional[Location] = None,
    ) -> SessionView:
        """
        Create a session in REGISTERED state.

        Any vitals buffered before registration are pulled into the new
        session's `last_vitals`.

        Raises:
            DuplicateCallError: If a session for `call_id` already exists
                (including one that is currently being torn down)
        """
        if call_id in self._sessions:
            logger.warning("Duplicate registration rejected: call=%s", mask_call_id(call_id))
            raise DuplicateCallError(
                "A live session already exists for this call",
                details={"call_id": call_id},
            )

        session = CallSession(
            call_id=call_id,
            caller_channel=caller_channel,
            ingest=IngestBuffer(capacity=self._ingest_capacity),
            location=location,
        )

        pending = self._vitals.take_pending(call_id)
        if pending is not None:
            session.last_vitals = pending
            session.vitals_received += 1

        self._sessions[call_id] = session

        logger.info(
            "Call registered: call=%s, location=%s, pending_vitals=%s",
            mask_call_id(call_id),
            "yes" if location else "no",
            "replayed" if pending else "none",
        )
        return SessionView.from_session(session)

    def join(self, call_id: str, dispatcher_channel: Channel) -> Optional[VitalsReading]:
        """
        Attach a dispatcher and start analysis.

        A rejoin (dispatcher reconnect or hand-over) replaces the dispatcher
        channel and keeps the already-running scheduler.

        Returns:
            The session's cached vitals for immediate replay, if any.

        Raises:
            CallNotFoundError: If no live session exists
        """
        session = self._live_session(call_id)
        if session is None:
            raise CallNotFoundError(
                "Call not found",
                details={"call_id": call_id},
            )

        rejoin = session.status is CallStatus.DISPATCHER_JOINED
        session.status = CallStatus.DISPATCHER_JOINED
        session.dispatcher_channel = dispatcher_channel
        session.dashboard_channels.add(dispatcher_channel)
        if session.joined_at is None:
            session.joined_at = datetime.now(timezone.utc)

        if session.analysis is None and self._scheduler_factory is not None:
            session.analysis = self._scheduler_factory(call_id, self)
            session.analysis.start()

        logger.info(
            "Dispatcher %s: call=%s, cached_vitals=%s",
            "rejoined" if rejoin else "joined",
            mask_call_id(call_id),
            "yes" if session.last_vitals else "no",
        )
        return session.last_vitals

    def lookup(self, call_id: str) -> Optional[SessionView]:
        """Snapshot of a live session, or None (absent or being torn down)."""
        session = self._live_session(call_id)
        if session is None:
            return None
        return SessionView.from_session(session)

    async def end(self, call_id: str, reason: str) -> bool:
        """
        Tear down a call. Idempotent.

        If the awaiting coroutine is cancelled, the teardown still runs to
        completion in its own task.

        Returns:
            True if this invocation performed the teardown, False if the
            session was absent or already ending (no side effects).
        """
        teardown = self.begin_end(call_id, reason)
        if teardown is None:
            return False
        await asyncio.shield(teardown)
        return True

    def begin_end(self, call_id: str, reason: str) -> Optional[asyncio.Task]:
        """
        Claim a call's teardown and start it in a registry-owned task.

        The session is marked ENDED and its analysis handle taken before
        this returns, so a concurrent `end()` is already a no-op.

        Returns:
            The teardown task, or None if the session was absent or already ending.
        """
        session = self._sessions.get(call_id)
        if session is None or session.status is CallStatus.ENDED:
            logger.debug("End ignored, no live session: call=%s", mask_call_id(call_id))
            return None

        previous_status = session.status
        session.status = CallStatus.ENDED
        analysis, session.analysis = session.analysis, None

        task = asyncio.create_task(
            self._teardown(session, analysis, reason, previous_status),
            name=f"teardown:{call_id}",
        )
        self._teardowns.add(task)
        task.add_done_callback(self._teardowns.discard)
        return task

    async def _teardown(
        self,
        session: CallSession,
        analysis: Optional["AnalysisScheduler"],
        reason: str,
        previous_status: CallStatus,
    ) -> None:
        """Cancel analysis, notify every endpoint once, then remove the session."""
        try:
            if analysis is not None:
                await analysis.cancel()

            targets: List[Channel] = [session.caller_channel]
            if session.dispatcher_channel is not None:
                targets.append(session.dispatcher_channel)
            targets.extend(session.dashboard_channels)
            await self._broadcast.notify_ended(session.call_id, reason, targets)
        finally:
            session.ingest.drain()
            self._sessions.pop(session.call_id, None)

        logger.info(
            "Call ended: call=%s, reason=%s, from_status=%s, triage_rounds=%d, ingest=%s",
            mask_call_id(session.call_id),
            reason,
            previous_status.value,
            session.triage_rounds,
            session.ingest.stats,
        )

    async def end_all(self, reason: str) -> int:
        """End every live session (used on shutdown) and wait for all teardowns."""
        started = [self.begin_end(call_id, reason) for call_id in list(self._sessions)]
        await self.wait_for_teardowns()
        return sum(1 for task in started if task is not None)

    async def wait_for_teardowns(self) -> None:
        """Block until no teardown is in progress."""
        while self._teardowns:
            await asyncio.gather(*list(self._teardowns), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def watch(self, call_id: str, channel: Channel) -> SessionView:
        """
        Add an extra dashboard observer to a call without making it the dispatcher.

        Raises:
            CallNotFoundError: If no live session exists
        """
        session = self._live_session(call_id)
        if session is None:
            raise CallNotFoundError("Call not found", details={"call_id": call_id})
        session.dashboard_channels.add(channel)
        return SessionView.from_session(session)

    def detach(self, channel: Channel) -> List[str]:
        """
        Remove a disconnected dispatcher/observer channel from every session.

        Never ends a call; a dispatcher may reconnect and rejoin.

        Returns:
            Call ids the channel was detached from.
        """
        detached = []
        for session in self._sessions.values():
            touched = False
            if session.dispatcher_channel is channel:
                session.dispatcher_channel = None
                touched = True
            if channel in session.dashboard_channels:
                session.dashboard_channels.discard(channel)
                touched = True
            if touched:
                detached.append(session.call_id)

        if detached:
            logger.info("Channel detached from %d call(s)", len(detached))
        return detached

    def is_caller(self, call_id: str, channel: Channel) -> bool:
        """True if `channel` registered the live call `call_id`."""
        session = self._live_session(call_id)
        return session is not None and session.caller_channel is channel

    def calls_for_caller(self, channel: Channel) -> List[str]:
        """Live call ids whose caller endpoint is `channel`."""
        return [
            s.call_id for s in self._sessions.values()
            if s.caller_channel is channel and s.status is not CallStatus.ENDED
        ]

    # -------------------------------------------------------------------------
    # Vitals
    # -------------------------------------------------------------------------

    def record_vitals(
        self, call_id: str, reading: VitalsReading
    ) -> Tuple[VitalsOutcome, Optional[Channel]]:
        """
        Store a vitals reading.

        With a live session the reading overwrites `last_vitals`; without one
        it is parked in the VitalsCache until registration. Readings for a
        call that is being torn down are dropped.

        Returns:
            (outcome, dispatcher): BUFFERED, STORED or DROPPED, plus the
            dispatcher channel to forward to now (STORED only, if attached).
        """
        session = self._sessions.get(call_id)
        if session is None:
            self._vitals.stash(call_id, reading)
            return VitalsOutcome.BUFFERED, None

        if session.status is CallStatus.ENDED:
            logger.debug("Vitals dropped for ending call=%s", mask_call_id(call_id))
            return VitalsOutcome.DROPPED, None

        session.last_vitals = reading
        session.vitals_received += 1
        return VitalsOutcome.STORED, session.dispatcher_channel

    # -------------------------------------------------------------------------
    # Ingest
    # -------------------------------------------------------------------------

    def push_ingest(
        self,
        call_id: str,
        item: IngestItem,
        source: Optional[Channel] = None,
    ) -> bool:
        """
        Queue an audio chunk or frame for the call's next analysis round.

        Unknown calls drop the item silently, as do items from a `source`
        that is not the call's caller. A full buffer also drops the item
        but still counts as accepted (see IngestBuffer.push).

        Returns:
            False if the call is unknown or the source is not its caller.
        """
        session = self._live_session(call_id)
        if session is None:
            logger.debug("Ingest for unknown call=%s dropped", mask_call_id(call_id))
            return False
        if source is not None and session.caller_channel is not source:
            logger.warning("Ingest from a foreign socket dropped: call=%s", mask_call_id(call_id))
            return False
        return session.ingest.push(item)

    def drain_ingest(self, call_id: str) -> List[IngestItem]:
        """Remove and return all queued ingest items in arrival order."""
        session = self._live_session(call_id)
        if session is None:
            return []
        return session.ingest.drain()

    # -------------------------------------------------------------------------
    # Analysis Results
    # -------------------------------------------------------------------------

    def record_report(self, call_id: str, report: TriageReport) -> bool:
        """
        Attach a finished triage report to its session.

        Returns:
            False if the session ended while the round was in flight; the
            caller must then discard the report instead of publishing it.
        """
        session = self._live_session(call_id)
        if session is None:
            return False
        session.last_report = report
        session.triage_rounds += 1
        return True

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def active_sessions(self) -> List[SessionView]:
        return [
            SessionView.from_session(s)
            for s in self._sessions.values()
            if s.status is not CallStatus.ENDED
        ]

    @property
    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.status is not CallStatus.ENDED)

    def _live_session(self, call_id: str) -> Optional[CallSession]:
        session = self._sessions.get(call_id)
        if session is None or session.status is CallStatus.ENDED:
            return None
        return session
