"""
SilentLine - Core Domain Types

Internal type definitions shared by the registry, scheduler and services.
These are domain objects independent of wire serialization; the API layer
converts them to/from Pydantic schemas.

Design Notes:
- Dataclasses for simplicity, frozen where a value must not change after
  it is handed to another component.
- Enums are str-valued so they serialize directly into JSON messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, NewType, Optional, Protocol, runtime_checkable
import time


# =============================================================================
# Type Aliases
# =============================================================================

CallId = NewType("CallId", str)
"""Caller-supplied call identifier. Opaque, immutable for the session lifetime."""


# =============================================================================
# Channels
# =============================================================================

@runtime_checkable
class Channel(Protocol):
    """
    One endpoint the hub can push JSON messages to.

    A FastAPI WebSocket satisfies this protocol; tests use in-memory fakes.
    """

    async def send_json(self, data: Any, mode: str = "text") -> None:
        ...


# =============================================================================
# Enums
# =============================================================================

class CallStatus(str, Enum):
    """Call session lifecycle status."""
    REGISTERED = "registered"
    DISPATCHER_JOINED = "dispatcher_joined"
    ENDED = "ended"


class Role(str, Enum):
    """Which endpoint of a call a message came from."""
    CALLER = "caller"
    DISPATCHER = "dispatcher"

    @property
    def opposite(self) -> "Role":
        return Role.DISPATCHER if self is Role.CALLER else Role.CALLER


class VitalsOutcome(str, Enum):
    """Where a recorded vitals reading ended up."""
    BUFFERED = "buffered"    # no session yet, parked until registration
    STORED = "stored"        # kept as the session's last_vitals
    FORWARDED = "forwarded"  # stored and delivered to the attached dispatcher
    DROPPED = "dropped"      # call was being torn down


class IngestKind(str, Enum):
    """Kind of raw media item queued for analysis."""
    AUDIO = "audio"
    FRAME = "frame"


class EmotionalState(str, Enum):
    """Caller emotional state as judged from audio/visual context."""
    CALM = "calm"
    ANXIOUS = "anxious"
    DISTRESSED = "distressed"
    PANICKED = "panicked"
    UNRESPONSIVE = "unresponsive"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "EmotionalState":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


class ResponseCategory(str, Enum):
    """Recommended emergency response for the dispatcher."""
    EMS = "ems"
    FIRE = "fire"
    POLICE = "police"
    MULTIPLE = "multiple"
    NONE = "none"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "ResponseCategory":
        if value is None:
            return cls.UNKNOWN
        token = str(value).strip().lower()
        aliases = {
            "medical": cls.EMS,
            "ambulance": cls.EMS,
            "law_enforcement": cls.POLICE,
            "fire_department": cls.FIRE,
        }
        if token in aliases:
            return aliases[token]
        try:
            return cls(token)
        except ValueError:
            return cls.UNKNOWN


# =============================================================================
# Call Data
# =============================================================================

@dataclass(frozen=True)
class Location:
    """Last-known caller coordinate."""
    lat: float
    lng: float

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(frozen=True)
class VitalsReading:
    """
    One contactless vitals reading from the caller's device.

    Attributes:
        heart_rate: Beats per minute
        heart_rate_confidence: 0-1 confidence of the heart rate estimate
        breathing_rate: Breaths per minute
        breathing_confidence: 0-1 confidence of the breathing estimate
        timestamp: Client-side capture time (epoch ms), if supplied
        received_at: Server receive time (monotonic seconds)
    """
    heart_rate: Optional[float] = None
    heart_rate_confidence: Optional[float] = None
    breathing_rate: Optional[float] = None
    breathing_confidence: Optional[float] = None
    timestamp: Optional[float] = None
    received_at: float = field(default_factory=time.monotonic, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "heart_rate": self.heart_rate,
            "heart_rate_confidence": self.heart_rate_confidence,
            "breathing_rate": self.breathing_rate,
            "breathing_confidence": self.breathing_confidence,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class IngestItem:
    """A raw audio chunk (PCM) or an encoded still frame."""
    kind: IngestKind
    data: bytes
    received_at: float = field(default_factory=time.monotonic, compare=False)

    @classmethod
    def audio(cls, data: bytes) -> "IngestItem":
        return cls(kind=IngestKind.AUDIO, data=data)

    @classmethod
    def frame(cls, data: bytes) -> "IngestItem":
        return cls(kind=IngestKind.FRAME, data=data)


# =============================================================================
# Analysis
# =============================================================================

@dataclass(frozen=True)
class AnalysisRequest:
    """
    Everything one analysis round sends to the external triage API.

    The external API holds no session state, so `prompt` carries the previous
    round's summary every time.
    """
    call_id: CallId
    audio_wav: bytes
    system_instruction: str
    prompt: str
    frame: Optional[bytes] = None
    frame_mime_type: Optional[str] = None
    pcm_bytes: int = 0
    vitals: Optional[VitalsReading] = None


@dataclass
class TriageReport:
    """
    Structured output of one analysis round.

    Attributes:
        summary: Situation summary (carried forward as context)
        keywords: Salient words/phrases heard or seen
        emotional_state: Caller emotional state
        response_category: Recommended response type
        severity: 1-5, or 0 for a degraded (error) report
        can_speak: Whether the caller appears able to speak
        error: True when the round failed and this is a fallback
        timestamp_ms: Wall-clock time the report was produced
        model_version: Identifier of the analyzer that produced it
    """
    summary: str
    keywords: List[str] = field(default_factory=list)
    emotional_state: EmotionalState = EmotionalState.UNKNOWN
    response_category: ResponseCategory = ResponseCategory.UNKNOWN
    severity: int = 0
    can_speak: Optional[bool] = None
    error: bool = False
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    model_version: str = "unknown"

    def __post_init__(self):
        """Validate constraints."""
        if self.error:
            if self.severity != 0:
                raise ValueError(f"degraded reports must have severity 0, got {self.severity}")
        elif not 1 <= self.severity <= 5:
            raise ValueError(f"severity must be 1-5, got {self.severity}")

    @classmethod
    def create_error(cls, reason: str, model_version: str = "unknown") -> "TriageReport":
        """Factory for the degraded report published when a round fails."""
        return cls(
            summary=reason or "Analysis unavailable",
            severity=0,
            error=True,
            model_version=model_version,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "keywords": list(self.keywords),
            "emotional_state": self.emotional_state.value,
            "response_category": self.response_category.value,
            "severity": self.severity,
            "can_speak": self.can_speak,
            "error": self.error,
            "timestamp_ms": self.timestamp_ms,
            "model_version": self.model_version,
        }
