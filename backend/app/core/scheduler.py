"""
SilentLine - Analysis Scheduler

One periodic task per call with a joined dispatcher. Each round drains the
call's ingest buffer, assembles a multimodal request, calls the external
triage analyzer and publishes the result to the call's dashboards.

Timing:
    Ticks are laid on a fixed grid (start + n * interval). A round that
    overruns the next tick causes that tick to be skipped, never
    overlapped, so at most one analysis call per call is ever in flight.
    The inter-round sleep is the only suspension point between rounds and
    is where cancellation normally lands.

Failure handling:
    A failed round publishes a degraded report (error flag, severity 0)
    so dashboards never sit on an indefinite "waiting" state. The carried
    context is left at the last successful summary.

Cancellation:
    Safe at any point, including mid-call to the analyzer. A result that
    completes after the session ended is discarded, never published.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from app.core.broadcast import BroadcastHub
from app.core.exceptions import AnalysisError
from app.core.logging import call_id_var, mask_call_id
from app.core.registry import CallRegistry
from app.core.types import (
    AnalysisRequest,
    CallId,
    IngestItem,
    IngestKind,
    TriageReport,
)
from app.services.audio import detect_image_mime, pcm_duration_seconds, pcm_to_wav
from app.services.triage_analyzer import SYSTEM_INSTRUCTION, TriageAnalyzer, build_prompt

logger = logging.getLogger(__name__)


class AnalysisScheduler:
    """
    Periodic, stateful analysis loop for a single call.

    Attributes:
        call_id: The call this scheduler belongs to
        context: Summary carried into the next round's prompt
        rounds: Analysis calls issued so far
        skipped_ticks: Ticks skipped because a round was still running
    """

    def __init__(
        self,
        call_id: str,
        registry: CallRegistry,
        analyzer: TriageAnalyzer,
        broadcast: BroadcastHub,
        interval_seconds: float = 10.0,
        sample_rate: int = 16000,
        channels: int = 1,
        sample_width: int = 2,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")
        self.call_id = call_id
        self._registry = registry
        self._analyzer = analyzer
        self._broadcast = broadcast
        self._interval = interval_seconds
        self._sample_rate = sample_rate
        self._channels = channels
        self._sample_width = sample_width

        self._task: Optional[asyncio.Task] = None
        self._stopped = False
        self._in_flight = False

        self.context = ""
        self.rounds = 0
        self.failed_rounds = 0
        self.skipped_ticks = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Spawn the periodic task. Must be called from the running loop."""
        if self._task is not None or self._stopped:
            return
        self._task = asyncio.create_task(self._run(), name=f"analysis:{self.call_id}")
        logger.info(
            "Analysis scheduler started: call=%s, interval=%.1fs, analyzer=%s",
            mask_call_id(self.call_id),
            self._interval,
            self._analyzer.model_id,
        )

    async def cancel(self) -> None:
        """Stop the loop and wait for the task to unwind. Idempotent."""
        self._stopped = True
        task, self._task = self._task, None
        if task is None or task.done():
            return

        task.cancel()
        if task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

        logger.info(
            "Analysis scheduler cancelled: call=%s, rounds=%d, failed=%d, skipped_ticks=%d",
            mask_call_id(self.call_id),
            self.rounds,
            self.failed_rounds,
            self.skipped_ticks,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def _run(self) -> None:
        call_id_var.set(self.call_id)
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self._interval

        while not self._stopped:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))

            try:
                await self.run_round()
            except asyncio.CancelledError:
                raise
            except Exception:
                # run_round already degrades analyzer failures; this is a bug guard
                logger.exception("Analysis round crashed")

            next_tick += self._interval
            now = loop.time()
            if next_tick <= now:
                missed = int((now - next_tick) // self._interval) + 1
                self.skipped_ticks += missed
                next_tick += missed * self._interval
                logger.warning(
                    "Analysis round overran its window, skipped %d tick(s)",
                    missed,
                )

    async def run_round(self) -> Optional[TriageReport]:
        """
        Execute one analysis round.

        Returns:
            The published report, or None when the round was skipped
            (no audio, already in flight, or the call ended meanwhile).
        """
        if self._in_flight:
            self.skipped_ticks += 1
            return None

        self._in_flight = True
        try:
            request = self.assemble(self._registry.drain_ingest(self.call_id))
            if request is None:
                logger.debug("No audio this window, skipping analysis")
                return None

            self.rounds += 1
            logger.info(
                "Analysis round %d: audio=%.1fs, frame=%s, context=%s",
                self.rounds,
                pcm_duration_seconds(
                    request.pcm_bytes,
                    sample_rate=self._sample_rate,
                    channels=self._channels,
                    sample_width=self._sample_width,
                ),
                "yes" if request.frame is not None else "no",
                "yes" if self.context else "no",
            )

            try:
                report = await self._analyzer.analyze(request)
            except asyncio.CancelledError:
                raise
            except AnalysisError as e:
                self.failed_rounds += 1
                logger.warning("Analysis failed (%s): %s", e.code, e.message)
                report = TriageReport.create_error(
                    f"Analysis unavailable: {e.message}",
                    model_version=self._analyzer.model_id,
                )
            except Exception as e:
                self.failed_rounds += 1
                logger.error("Analysis failed unexpectedly: %s", e, exc_info=True)
                report = TriageReport.create_error(
                    f"Analysis unavailable: {type(e).__name__}",
                    model_version=self._analyzer.model_id,
                )
            else:
                self.context = report.summary

            return await self._publish(report)
        finally:
            self._in_flight = False

    # -------------------------------------------------------------------------
    # Round Helpers
    # -------------------------------------------------------------------------

    def assemble(self, items: List[IngestItem]) -> Optional[AnalysisRequest]:
        """
        Build the request for one round from drained ingest items.

        Audio chunks are concatenated in arrival order; only the newest
        frame is kept. Returns None if there is no audio.
        """
        audio = b"".join(item.data for item in items if item.kind is IngestKind.AUDIO)
        if not audio:
            return None

        frame = None
        for item in reversed(items):
            if item.kind is IngestKind.FRAME:
                frame = item.data
                break

        view = self._registry.lookup(self.call_id)
        vitals = view.last_vitals if view is not None else None

        return AnalysisRequest(
            call_id=CallId(self.call_id),
            audio_wav=pcm_to_wav(
                audio,
                sample_rate=self._sample_rate,
                channels=self._channels,
                sample_width=self._sample_width,
            ),
            system_instruction=SYSTEM_INSTRUCTION,
            prompt=build_prompt(self.context, vitals),
            frame=frame,
            frame_mime_type=detect_image_mime(frame) if frame is not None else None,
            pcm_bytes=len(audio),
            vitals=vitals,
        )

    async def _publish(self, report: TriageReport) -> Optional[TriageReport]:
        if self._stopped or not self._registry.record_report(self.call_id, report):
            logger.info("Discarding triage result for ended call=%s", mask_call_id(self.call_id))
            return None

        view = self._registry.lookup(self.call_id)
        observers = view.dashboard_channels if view is not None else frozenset()
        await self._broadcast.notify_triage(self.call_id, report, observers)

        logger.info(
            "Triage published: severity=%d, state=%s, response=%s, error=%s, observers=%d",
            report.severity,
            report.emotional_state.value,
            report.response_category.value,
            report.error,
            len(observers),
        )
        return report
