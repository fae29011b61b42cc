"""
SilentLine - API Schemas

Pydantic models for websocket messages and REST request/response validation.
These define the contract between the caller app, the dispatcher console
and the hub.

Every websocket text frame is a JSON object tagged by `type`. Caller and
dispatcher sockets accept different message sets; anything outside the set
for the socket's role is rejected.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    Base64Bytes,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError as PydanticValidationError,
)

from app.core.exceptions import InvalidMessageError
from app.core.types import Location, Role, VitalsReading


# ===========================================
# Shared Fields
# ===========================================

CallIdField = Annotated[str, Field(min_length=1, max_length=128, description="Client-chosen call id")]


class LocationSchema(BaseModel):
    """Caller coordinate as sent on registration."""
    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)

    def to_domain(self) -> Location:
        return Location(lat=self.lat, lng=self.lng)


class VitalsPayload(BaseModel):
    """Contactless vitals fields, shared by the websocket and REST surfaces."""

    heart_rate: Optional[float] = Field(default=None, ge=0, description="Beats per minute")
    heart_rate_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    breathing_rate: Optional[float] = Field(default=None, ge=0, description="Breaths per minute")
    breathing_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    timestamp: Optional[float] = Field(default=None, description="Capture time, epoch ms")

    def to_reading(self) -> VitalsReading:
        return VitalsReading(
            heart_rate=self.heart_rate,
            heart_rate_confidence=self.heart_rate_confidence,
            breathing_rate=self.breathing_rate,
            breathing_confidence=self.breathing_confidence,
            timestamp=self.timestamp,
        )


# ===========================================
# Client -> Server Messages
# ===========================================

class _ClientMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    call_id: CallIdField


class RegisterCall(_ClientMessage):
    type: Literal["register_call"]
    location: Optional[LocationSchema] = None


class EndCall(_ClientMessage):
    """End a call. Missing reason defaults per role (caller_ended / dispatcher_ended)."""
    type: Literal["end_call"]
    reason: Optional[str] = Field(default=None, max_length=64)


class VitalsMessage(_ClientMessage, VitalsPayload):
    type: Literal["vitals"]


class IngestAudio(_ClientMessage):
    """Base64 PCM16 mono chunk."""
    type: Literal["ingest_audio"]
    data: Base64Bytes


class IngestFrame(_ClientMessage):
    """Base64 JPEG/PNG still frame."""
    type: Literal["ingest_frame"]
    data: Base64Bytes


class SignalMessage(_ClientMessage):
    """Opaque peer-media handshake payload, forwarded verbatim."""
    type: Literal["signal"]
    payload: Any


class PeerReconnected(_ClientMessage):
    type: Literal["peer_reconnected"]


class JoinCall(_ClientMessage):
    type: Literal["join_call"]


class WatchCall(_ClientMessage):
    type: Literal["watch_call"]


CallerMessage = Annotated[
    Union[RegisterCall, EndCall, VitalsMessage, IngestAudio, IngestFrame, SignalMessage, PeerReconnected],
    Field(discriminator="type"),
]

DispatcherMessage = Annotated[
    Union[JoinCall, WatchCall, SignalMessage, EndCall, PeerReconnected],
    Field(discriminator="type"),
]

_ADAPTERS: Dict[Role, TypeAdapter] = {
    Role.CALLER: TypeAdapter(CallerMessage),
    Role.DISPATCHER: TypeAdapter(DispatcherMessage),
}


def parse_client_message(raw: Union[str, bytes, dict], role: Role) -> BaseModel:
    """
    Validate one inbound text frame against the message set for `role`.

    Raises:
        InvalidMessageError: Invalid JSON, unknown tag, or missing/invalid fields
    """
    adapter = _ADAPTERS[role]
    try:
        if isinstance(raw, (str, bytes)):
            return adapter.validate_json(raw)
        return adapter.validate_python(raw)
    except PydanticValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or 'message'}: {err['msg']}"
            for err in e.errors()[:5]
        ]
        raise InvalidMessageError(
            f"Invalid {role.value} message",
            details={"problems": problems},
        ) from e


# ===========================================
# REST Schemas
# ===========================================

class TriageReportSchema(BaseModel):
    """One analysis round's output as shown to dispatchers."""
    summary: str
    keywords: List[str] = Field(default_factory=list)
    emotional_state: str
    response_category: str
    severity: int = Field(ge=0, le=5, description="1-5, or 0 for a degraded report")
    can_speak: Optional[bool] = None
    error: bool = False
    timestamp_ms: int
    model_version: str


class CallSummary(BaseModel):
    """Snapshot of one live call."""
    call_id: str
    status: str = Field(description="registered | dispatcher_joined")
    location: Optional[LocationSchema] = None
    started_at: str
    joined_at: Optional[str] = None
    duration_seconds: float
    dispatcher_attached: bool
    observers: int
    analysis_running: bool
    last_vitals: Optional[VitalsPayload] = None
    vitals_received: int
    triage_rounds: int
    last_report: Optional[TriageReportSchema] = None
    ingest: Dict[str, int] = Field(default_factory=dict)


class CallListResponse(BaseModel):
    calls: List[CallSummary]
    count: int


class VitalsAcceptedResponse(BaseModel):
    """Response after posting a vitals reading."""
    call_id: str
    accepted: bool = True
    forwarded: bool = Field(description="Delivered to an attached dispatcher right away")
    buffered: bool = Field(description="Parked until the call registers")


class TurnCredentialsResponse(BaseModel):
    """Time-limited TURN REST API credentials."""
    username: str
    credential: str
    ttl: int
    expires_at: int
    uris: List[str]


class ErrorResponse(BaseModel):
    """Body of every DispatchHubError rendered over HTTP."""
    error: str
    message: str
