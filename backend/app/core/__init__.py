"""
SilentLine - Core Package

Contains the call-session orchestration core and domain types:
- registry: call session map and lifecycle
- vitals: pre-registration vitals buffering
- ingest: bounded per-call media queue
- relay: signaling forwarding
- broadcast: dispatcher-console fan-out
- scheduler / hub: per-call analysis loop and composition root
  (import from their modules directly)
"""

from .types import (
    CallId,
    CallStatus,
    Channel,
    EmotionalState,
    IngestItem,
    IngestKind,
    Location,
    ResponseCategory,
    Role,
    TriageReport,
    VitalsOutcome,
    VitalsReading,
)
from .broadcast import BroadcastHub
from .ingest import IngestBuffer
from .registry import CallRegistry, SessionView
from .relay import SignalingRelay
from .vitals import VitalsCache

__all__ = [
    # Registry
    "CallRegistry",
    "SessionView",
    "VitalsCache",
    "IngestBuffer",
    "SignalingRelay",
    "BroadcastHub",
    # Types
    "CallId",
    "CallStatus",
    "Channel",
    "EmotionalState",
    "IngestItem",
    "IngestKind",
    "Location",
    "ResponseCategory",
    "Role",
    "TriageReport",
    "VitalsOutcome",
    "VitalsReading",
]
