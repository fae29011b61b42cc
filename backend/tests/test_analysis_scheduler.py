"""
SilentLine - Analysis Scheduler Tests

Tests the per-call analysis loop:
- Request assembly (audio concatenation, newest frame, WAV container)
- Context carry-over between rounds
- Degraded reports on analyzer failure
- No overlapping rounds, skipped ticks
- Results for ended calls are discarded

Rounds are driven directly through run_round() except where the
periodic loop itself is under test.

Run with: pytest tests/test_analysis_scheduler.py -v
"""

import asyncio
import io
import wave

import pytest

from app.core.broadcast import BroadcastHub
from app.core.exceptions import AnalysisRateLimitedError, AnalysisTimeoutError
from app.core.registry import CallRegistry
from app.core.scheduler import AnalysisScheduler
from app.core.types import IngestItem

from conftest import FakeAnalyzer, FakeChannel, make_report, make_vitals

PNG_FRAME = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
JPEG_FRAME = b"\xff\xd8\xff\xe0" + b"\x00" * 16


def joined_call(registry: CallRegistry, caller: FakeChannel, dispatcher: FakeChannel, call_id: str = "c1"):
    registry.register(call_id, caller)
    registry.join(call_id, dispatcher)


def make_scheduler(
    registry: CallRegistry,
    analyzer: FakeAnalyzer,
    broadcast: BroadcastHub,
    interval: float = 3600.0,
) -> AnalysisScheduler:
    return AnalysisScheduler("c1", registry, analyzer, broadcast, interval_seconds=interval)


async def wait_for(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class TestRoundAssembly:
    """Tests for what one round sends to the analyzer."""

    @pytest.mark.asyncio
    async def test_two_chunks_and_frame_become_one_request(
        self,
        registry: CallRegistry,
        broadcast: BroadcastHub,
        caller: FakeChannel,
        dispatcher: FakeChannel,
        pcm_chunk: bytes,
    ):
        """Two 3200-byte chunks are analyzed as 6400 bytes (0.2 s) of WAV audio."""
        joined_call(registry, caller, dispatcher)
        registry.push_ingest("c1", IngestItem.audio(pcm_chunk))
        registry.push_ingest("c1", IngestItem.frame(PNG_FRAME))
        registry.push_ingest("c1", IngestItem.audio(pcm_chunk))
        analyzer = FakeAnalyzer([make_report("Caller hiding, whispering")])
        scheduler = make_scheduler(registry, analyzer, broadcast)

        report = await scheduler.run_round()

        assert report is not None
        request = analyzer.requests[0]
        assert request.pcm_bytes == 6400
        with wave.open(io.BytesIO(request.audio_wav), "rb") as wav_file:
            assert wav_file.getframerate() == 16000
            assert wav_file.getnchannels() == 1
            assert wav_file.getsampwidth() == 2
            assert wav_file.readframes(wav_file.getnframes()) == pcm_chunk * 2
        assert request.frame == PNG_FRAME
        assert request.frame_mime_type == "image/png"

        updates = dispatcher.of_type("triage_update")
        assert len(updates) == 1
        assert updates[0]["call_id"] == "c1"
        assert updates[0]["report"]["summary"] == "Caller hiding, whispering"
        assert registry.drain_ingest("c1") == []

    @pytest.mark.asyncio
    async def test_newest_frame_wins(
        self,
        registry: CallRegistry,
        broadcast: BroadcastHub,
        caller: FakeChannel,
        dispatcher: FakeChannel,
        pcm_chunk: bytes,
    ):
        joined_call(registry, caller, dispatcher)
        registry.push_ingest("c1", IngestItem.frame(PNG_FRAME))
        registry.push_ingest("c1", IngestItem.audio(pcm_chunk))
        registry.push_ingest("c1", IngestItem.frame(JPEG_FRAME))
        analyzer = FakeAnalyzer()

        await make_scheduler(registry, analyzer, broadcast).run_round()

        assert analyzer.requests[0].frame == JPEG_FRAME
        assert analyzer.requests[0].frame_mime_type == "image/jpeg"

    @pytest.mark.asyncio
    async def test_no_audio_skips_analysis(
        self,
        registry: CallRegistry,
        broadcast: BroadcastHub,
        caller: FakeChannel,
        dispatcher: FakeChannel,
    ):
        joined_call(registry, caller, dispatcher)
        registry.push_ingest("c1", IngestItem.frame(PNG_FRAME))
        analyzer = FakeAnalyzer()
        scheduler = make_scheduler(registry, analyzer, broadcast)

        assert await scheduler.run_round() is None
        assert analyzer.requests == []
        assert scheduler.rounds == 0
        assert dispatcher.of_type("triage_update") == []

    @pytest.mark.asyncio
    async def test_latest_vitals_in_prompt(
        self,
        registry: CallRegistry,
        broadcast: BroadcastHub,
        caller: FakeChannel,
        dispatcher: FakeChannel,
        pcm_chunk: bytes,
    ):
        joined_call(registry, caller, dispatcher)
        registry.record_vitals("c1", make_vitals(heart_rate=131.0))
        registry.push_ingest("c1", IngestItem.audio(pcm_chunk))
        analyzer = FakeAnalyzer()

        await make_scheduler(registry, analyzer, broadcast).run_round()

        request = analyzer.requests[0]
        assert request.vitals.heart_rate == 131.0
        assert "131" in request.prompt


class TestContextCarryOver:
    """Tests for the summary carried between rounds."""

    @pytest.mark.asyncio
    async def test_previous_summary_sent_next_round(
        self,
        registry: CallRegistry,
        broadcast: BroadcastHub,
        caller: FakeChannel,
        dispatcher: FakeChannel,
        pcm_chunk: bytes,
    ):
        joined_call(registry, caller, dispatcher)
        analyzer = FakeAnalyzer([make_report("Glass breaking in background"), make_report("Second")])
        scheduler = make_scheduler(registry, analyzer, broadcast)

        registry.push_ingest("c1", IngestItem.audio(pcm_chunk))
        await scheduler.run_round()
        registry.push_ingest("c1", IngestItem.audio(pcm_chunk))
        await scheduler.run_round()

        assert "Glass breaking in background" not in analyzer.requests[0].prompt
        assert "Glass breaking in background" in analyzer.requests[1].prompt
        assert scheduler.context == "Second"

    @pytest.mark.asyncio
    async def test_failure_publishes_degraded_report_and_keeps_context(
        self,
        registry: CallRegistry,
        broadcast: BroadcastHub,
        caller: FakeChannel,
        dispatcher: FakeChannel,
        pcm_chunk: bytes,
    ):
        joined_call(registry, caller, dispatcher)
        analyzer = FakeAnalyzer([
            make_report("Caller tapping phone twice"),
            AnalysisTimeoutError("Analysis call timed out"),
            make_report("Recovered"),
        ])
        scheduler = make_scheduler(registry, analyzer, broadcast)

        registry.push_ingest("c1", IngestItem.audio(pcm_chunk))
        await scheduler.run_round()
        registry.push_ingest("c1", IngestItem.audio(pcm_chunk))
        degraded = await scheduler.run_round()

        assert degraded.error is True
        assert degraded.severity == 0
        assert degraded.summary
        assert scheduler.context == "Caller tapping phone twice"
        assert scheduler.failed_rounds == 1

        published = dispatcher.of_type("triage_update")[-1]["report"]
        assert published["error"] is True
        assert published["severity"] == 0

        registry.push_ingest("c1", IngestItem.audio(pcm_chunk))
        await scheduler.run_round()
        assert "Caller tapping phone twice" in analyzer.requests[2].prompt

    @pytest.mark.asyncio
    async def test_unexpected_exception_also_degrades(
        self,
        registry: CallRegistry,
        broadcast: BroadcastHub,
        caller: FakeChannel,
        dispatcher: FakeChannel,
        pcm_chunk: bytes,
    ):
        joined_call(registry, caller, dispatcher)
        analyzer = FakeAnalyzer([RuntimeError("boom")])
        registry.push_ingest("c1", IngestItem.audio(pcm_chunk))

        report = await make_scheduler(registry, analyzer, broadcast).run_round()

        assert report.error is True
        assert report.severity == 0


class TestConcurrency:
    """Tests for overlap prevention and cancellation."""

    @pytest.mark.asyncio
    async def test_second_round_skipped_while_first_in_flight(
        self,
        registry: CallRegistry,
        broadcast: BroadcastHub,
        caller: FakeChannel,
        dispatcher: FakeChannel,
        pcm_chunk: bytes,
    ):
        joined_call(registry, caller, dispatcher)
        gate = asyncio.Event()
        analyzer = FakeAnalyzer(gate=gate)
        scheduler = make_scheduler(registry, analyzer, broadcast)
        registry.push_ingest("c1", IngestItem.audio(pcm_chunk))

        first = asyncio.create_task(scheduler.run_round())
        await wait_for(lambda: analyzer.in_flight == 1)

        registry.push_ingest("c1", IngestItem.audio(pcm_chunk))
        assert await scheduler.run_round() is None
        assert scheduler.skipped_ticks == 1

        gate.set()
        assert await first is not None
        assert analyzer.max_in_flight == 1
        assert len(analyzer.requests) == 1

    @pytest.mark.asyncio
    async def test_result_discarded_when_call_ends_mid_round(
        self,
        scheduled_registry: CallRegistry,
        fake_analyzer: FakeAnalyzer,
        caller: FakeChannel,
        dispatcher: FakeChannel,
        pcm_chunk: bytes,
    ):
        joined_call(scheduled_registry, caller, dispatcher)
        scheduler = scheduled_registry._sessions["c1"].analysis
        gate = asyncio.Event()
        fake_analyzer.gate = gate
        scheduled_registry.push_ingest("c1", IngestItem.audio(pcm_chunk))

        round_task = asyncio.create_task(scheduler.run_round())
        await wait_for(lambda: fake_analyzer.in_flight == 1)

        await scheduled_registry.end("c1", "caller_ended")
        gate.set()

        assert await round_task is None
        assert dispatcher.of_type("triage_update") == []
        assert len(dispatcher.of_type("call_ended")) == 1

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(
        self,
        registry: CallRegistry,
        broadcast: BroadcastHub,
        fake_analyzer: FakeAnalyzer,
        caller: FakeChannel,
        dispatcher: FakeChannel,
    ):
        joined_call(registry, caller, dispatcher)
        scheduler = make_scheduler(registry, fake_analyzer, broadcast)
        scheduler.start()
        assert scheduler.running

        await scheduler.cancel()
        await scheduler.cancel()

        assert not scheduler.running

        scheduler.start()
        assert not scheduler.running

    def test_rejects_non_positive_interval(self, registry: CallRegistry, broadcast: BroadcastHub):
        with pytest.raises(ValueError):
            AnalysisScheduler("c1", registry, FakeAnalyzer(), broadcast, interval_seconds=0)


class TestPeriodicLoop:
    """Tests that exercise the real timer loop with short intervals."""

    @pytest.mark.asyncio
    async def test_loop_runs_rounds_on_interval(
        self,
        registry: CallRegistry,
        broadcast: BroadcastHub,
        caller: FakeChannel,
        dispatcher: FakeChannel,
        pcm_chunk: bytes,
    ):
        joined_call(registry, caller, dispatcher)
        analyzer = FakeAnalyzer()
        scheduler = make_scheduler(registry, analyzer, broadcast, interval=0.02)
        registry.push_ingest("c1", IngestItem.audio(pcm_chunk))

        scheduler.start()
        try:
            await wait_for(lambda: len(dispatcher.of_type("triage_update")) == 1)
            registry.push_ingest("c1", IngestItem.audio(pcm_chunk))
            await wait_for(lambda: len(dispatcher.of_type("triage_update")) == 2)
        finally:
            await scheduler.cancel()

        assert scheduler.rounds == 2

    @pytest.mark.asyncio
    async def test_overrun_skips_ticks_without_overlap(
        self,
        registry: CallRegistry,
        broadcast: BroadcastHub,
        caller: FakeChannel,
        dispatcher: FakeChannel,
        pcm_chunk: bytes,
    ):
        joined_call(registry, caller, dispatcher)
        analyzer = FakeAnalyzer(delay=0.1)
        scheduler = make_scheduler(registry, analyzer, broadcast, interval=0.02)
        registry.push_ingest("c1", IngestItem.audio(pcm_chunk))

        scheduler.start()
        try:
            await wait_for(lambda: analyzer.in_flight == 1)
            registry.push_ingest("c1", IngestItem.audio(pcm_chunk))
            await wait_for(lambda: analyzer.completed >= 2)
        finally:
            await scheduler.cancel()

        assert analyzer.max_in_flight == 1
        assert scheduler.skipped_ticks >= 1


class TestRateLimit:
    """Rate limiting is just another degraded round."""

    @pytest.mark.asyncio
    async def test_rate_limited_round(
        self,
        registry: CallRegistry,
        broadcast: BroadcastHub,
        caller: FakeChannel,
        dispatcher: FakeChannel,
        pcm_chunk: bytes,
    ):
        joined_call(registry, caller, dispatcher)
        analyzer = FakeAnalyzer([AnalysisRateLimitedError("Analysis API rate limit exceeded")])
        registry.push_ingest("c1", IngestItem.audio(pcm_chunk))

        report = await make_scheduler(registry, analyzer, broadcast).run_round()

        assert report.error is True
        assert "rate limit" in report.summary
