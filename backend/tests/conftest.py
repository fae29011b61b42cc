"""
SilentLine - Test Configuration and Fixtures

Shared fixtures for all test modules.
"""

import asyncio
import os
import sys
from typing import Any, Generator, List, Optional

import pytest
from fastapi.testclient import TestClient

# Ensure backend package is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import Settings
from app.core.broadcast import BroadcastHub
from app.core.hub import DispatchHub
from app.core.registry import CallRegistry
from app.core.scheduler import AnalysisScheduler
from app.core.types import (
    AnalysisRequest,
    EmotionalState,
    ResponseCategory,
    TriageReport,
    VitalsReading,
)
from app.core.vitals import VitalsCache


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests requiring external dependencies")


# =============================================================================
# Fakes
# =============================================================================

class FakeChannel:
    """
    In-memory stand-in for a websocket.

    Records every JSON message sent to it; can be told to fail sends.
    """

    def __init__(self, name: str = "channel", fail: bool = False):
        self.name = name
        self.fail = fail
        self.sent: List[dict] = []

    async def send_json(self, data: Any, mode: str = "text") -> None:
        if self.fail:
            raise ConnectionError(f"{self.name} is gone")
        self.sent.append(data)

    def of_type(self, message_type: str) -> List[dict]:
        return [m for m in self.sent if m.get("type") == message_type]

    def __repr__(self) -> str:
        return f"FakeChannel({self.name})"


class YieldingChannel(FakeChannel):
    """FakeChannel whose sends suspend once, like a real socket write."""

    async def send_json(self, data: Any, mode: str = "text") -> None:
        await asyncio.sleep(0)
        await super().send_json(data, mode)


class FakeAnalyzer:
    """
    Scripted triage analyzer.

    Each call pops the next scripted outcome: a TriageReport is returned,
    an exception is raised. When the script runs out a default report is
    returned. Records every request and the peak number of concurrent calls.
    """

    def __init__(
        self,
        outcomes: Optional[list] = None,
        delay: float = 0.0,
        gate: Optional[asyncio.Event] = None,
    ):
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.gate = gate
        self.requests: List[AnalysisRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.completed = 0

    @property
    def model_id(self) -> str:
        return "fake-analyzer"

    async def analyze(self, request: AnalysisRequest) -> TriageReport:
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.outcomes.pop(0) if self.outcomes else make_report()
            if isinstance(outcome, BaseException):
                raise outcome
            self.completed += 1
            return outcome
        finally:
            self.in_flight -= 1


def make_report(summary: str = "Caller breathing heavily, no speech", severity: int = 3) -> TriageReport:
    return TriageReport(
        summary=summary,
        keywords=["breathing"],
        emotional_state=EmotionalState.DISTRESSED,
        response_category=ResponseCategory.EMS,
        severity=severity,
        can_speak=False,
        model_version="fake-analyzer",
    )


def make_vitals(heart_rate: float = 112.0, breathing_rate: float = 24.0) -> VitalsReading:
    return VitalsReading(
        heart_rate=heart_rate,
        heart_rate_confidence=0.8,
        breathing_rate=breathing_rate,
        breathing_confidence=0.7,
        timestamp=1_700_000_000_000.0,
    )


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """
    Create test settings with safe defaults.

    The analysis interval is long enough that no periodic round fires during
    a test unless the test drives the scheduler itself.
    """
    return Settings(
        app_env="testing",
        app_debug=True,
        app_log_level="WARNING",  # Reduce noise in tests
        analysis_backend="dummy",
        analysis_interval_seconds=3600.0,
        turn_secret="test-turn-secret",
        turn_ttl_seconds=600,
        turn_uris="turn:turn.example.org:3478?transport=udp",
    )


# =============================================================================
# Core Fixtures
# =============================================================================

@pytest.fixture
def caller() -> FakeChannel:
    return FakeChannel("caller")


@pytest.fixture
def dispatcher() -> FakeChannel:
    return FakeChannel("dispatcher")


@pytest.fixture
def fake_analyzer() -> FakeAnalyzer:
    return FakeAnalyzer()


@pytest.fixture
def broadcast() -> BroadcastHub:
    return BroadcastHub()


@pytest.fixture
def vitals_cache() -> VitalsCache:
    return VitalsCache(ttl_seconds=300.0)


@pytest.fixture
def registry(vitals_cache: VitalsCache, broadcast: BroadcastHub) -> CallRegistry:
    """Registry without a scheduler factory: join never starts analysis."""
    return CallRegistry(vitals=vitals_cache, broadcast=broadcast, ingest_capacity=500)


@pytest.fixture
def scheduled_registry(
    vitals_cache: VitalsCache,
    broadcast: BroadcastHub,
    fake_analyzer: FakeAnalyzer,
) -> CallRegistry:
    """Registry whose join starts a long-interval scheduler driven by the test."""
    registry = CallRegistry(vitals=vitals_cache, broadcast=broadcast)
    registry.set_scheduler_factory(
        lambda call_id, reg: AnalysisScheduler(
            call_id, reg, fake_analyzer, broadcast, interval_seconds=3600.0,
        )
    )
    return registry


@pytest.fixture
def hub(test_settings: Settings, fake_analyzer: FakeAnalyzer) -> DispatchHub:
    return DispatchHub(settings=test_settings, analyzer=fake_analyzer)


@pytest.fixture
def pcm_chunk() -> bytes:
    """0.1 s of a non-silent PCM16 mono square wave at 16 kHz (3200 bytes)."""
    high = (8000).to_bytes(2, "little", signed=True)
    low = (-8000).to_bytes(2, "little", signed=True)
    return (high * 20 + low * 20) * 40


# =============================================================================
# FastAPI App Fixture
# =============================================================================

@pytest.fixture
def app(test_settings: Settings, fake_analyzer: FakeAnalyzer):
    """Create a FastAPI app instance with a scripted analyzer."""
    # Import here so sys.path is set up first
    from main import create_app

    return create_app(test_settings, analyzer=fake_analyzer)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app (runs the lifespan)."""
    with TestClient(app) as c:
        yield c
