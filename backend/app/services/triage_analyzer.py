"""
SilentLine - Triage Analyzer Service

Turns one analysis round (caller audio + newest video frame + carried
context) into a structured TriageReport.

Architecture:
    - Protocol defines the interface the AnalysisScheduler depends on
    - DummyTriageAnalyzer: loudness/vitals heuristic for development/testing
    - GeminiTriageAnalyzer: Gemini generateContent over REST with inline
      audio and image parts

Contract:
    Analyzers raise AnalysisError subclasses on failure. They never return
    degraded reports themselves; the scheduler owns the fallback so the
    carried context is handled in one place.

Safety Notes:
    - Output is DECISION SUPPORT for a human dispatcher, not a diagnosis
    - Severity is advisory; the dispatcher decides the response
"""

from __future__ import annotations

import asyncio
import base64
import io
import json
import logging
import re
import struct
import wave
from abc import abstractmethod
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

from app.config import Settings
from app.core.exceptions import (
    AnalysisError,
    AnalysisRateLimitedError,
    AnalysisTimeoutError,
    MalformedAnalysisResponseError,
)
from app.core.types import (
    AnalysisRequest,
    EmotionalState,
    ResponseCategory,
    TriageReport,
    VitalsReading,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Prompting
# =============================================================================

SYSTEM_INSTRUCTION = """You are an emergency dispatch triage assistant. The caller \
cannot or may not be able to speak. You receive a short audio clip from the \
caller's microphone and, when available, the most recent still frame from \
their camera.

Respond with a single JSON object and nothing else, using exactly these keys:
{
  "summary": string,            // 1-3 sentences describing the situation so far
  "keywords": [string],         // up to 8 salient words or sounds heard or seen
  "emotional_state": string,    // one of: calm, anxious, distressed, panicked, unresponsive, unknown
  "response_category": string,  // one of: ems, fire, police, multiple, none, unknown
  "severity": integer,          // 1 (minor) to 5 (life-threatening)
  "can_speak": boolean          // whether the caller appears able to speak
}

Fold the previous summary, if given, into the new one: keep facts that are \
still true and add what is new."""


def build_prompt(context: str, vitals: Optional[VitalsReading] = None) -> str:
    """
    User prompt for one round.

    The external API keeps no session, so the previous round's summary is
    re-sent every time.
    """
    lines = []
    if context:
        lines.append(f"Previous summary: {context}")
    else:
        lines.append("This is the first analysis window for this call.")

    if vitals is not None:
        parts = []
        if vitals.heart_rate is not None:
            parts.append(
                f"heart rate {vitals.heart_rate:g} bpm"
                f" (confidence {vitals.heart_rate_confidence if vitals.heart_rate_confidence is not None else 'n/a'})"
            )
        if vitals.breathing_rate is not None:
            parts.append(
                f"breathing rate {vitals.breathing_rate:g}/min"
                f" (confidence {vitals.breathing_confidence if vitals.breathing_confidence is not None else 'n/a'})"
            )
        if parts:
            lines.append("Latest contactless vitals: " + ", ".join(parts) + ".")

    lines.append("Analyze the attached audio and image and return the JSON object.")
    return "\n".join(lines)


# =============================================================================
# Protocol (Interface)
# =============================================================================

@runtime_checkable
class TriageAnalyzer(Protocol):
    """Protocol for external triage analysis backends."""

    @abstractmethod
    async def analyze(self, request: AnalysisRequest) -> TriageReport:
        """
        Run one analysis round.

        Raises:
            AnalysisError: On transport failure, timeout, rate limit or an
                unparseable response
        """
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Return analyzer identifier."""
        ...


# =============================================================================
# Response Parsing
# =============================================================================

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def extract_json(text: str) -> Optional[dict]:
    """Pull the first JSON object out of model text (tolerates ``` fences)."""
    cleaned = _FENCE_RE.sub("", text.strip())
    try:
        parsed = json.loads(cleaned)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass

    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        token = value.strip().lower()
        if token in {"true", "yes", "1"}:
            return True
        if token in {"false", "no", "0"}:
            return False
    return None


def parse_report(payload: dict, model_version: str) -> TriageReport:
    """
    Validate the model's JSON object into a TriageReport.

    Raises:
        MalformedAnalysisResponseError: If summary or severity is unusable
    """
    summary = str(payload.get("summary") or "").strip()
    if not summary:
        raise MalformedAnalysisResponseError("Analysis response has no summary")

    try:
        severity = int(round(float(payload.get("severity"))))
    except (TypeError, ValueError):
        raise MalformedAnalysisResponseError(
            "Analysis response has no numeric severity",
            details={"severity": payload.get("severity")},
        )
    severity = max(1, min(5, severity))

    raw_keywords = payload.get("keywords") or []
    if isinstance(raw_keywords, str):
        raw_keywords = raw_keywords.split(",")
    keywords = [str(k).strip() for k in raw_keywords if str(k).strip()][:8]

    return TriageReport(
        summary=summary,
        keywords=keywords,
        emotional_state=EmotionalState.parse(payload.get("emotional_state")),
        response_category=ResponseCategory.parse(
            payload.get("response_category", payload.get("recommended_response"))
        ),
        severity=severity,
        can_speak=_as_bool(payload.get("can_speak")),
        model_version=model_version,
    )


# =============================================================================
# Dummy Implementation (Development/Testing)
# =============================================================================

class DummyTriageAnalyzer:
    """
    Heuristic analyzer for development and testing.

    Looks only at audio loudness and the latest vitals. It has NO clinical
    validity and exists to exercise the scheduler and dashboards without
    an API key.
    """

    LOUD_RMS = 0.30
    SILENT_RMS = 0.02
    TACHYCARDIA_BPM = 120
    TACHYPNEA_RPM = 25

    def __init__(self, simulated_latency_ms: float = 0.0):
        self._simulated_latency_ms = simulated_latency_ms
        self._call_count = 0

    @property
    def model_id(self) -> str:
        return "dummy-triage-v0.1.0"

    async def analyze(self, request: AnalysisRequest) -> TriageReport:
        self._call_count += 1
        if self._simulated_latency_ms > 0:
            await asyncio.sleep(self._simulated_latency_ms / 1000)

        rms = self._wav_rms(request.audio_wav)
        keywords = []
        severity = 2

        if rms >= self.LOUD_RMS:
            emotional_state = EmotionalState.PANICKED
            keywords.append("loud audio")
            severity += 1
        elif rms <= self.SILENT_RMS:
            emotional_state = EmotionalState.UNRESPONSIVE
            keywords.append("silence")
        else:
            emotional_state = EmotionalState.ANXIOUS

        vitals = request.vitals
        if vitals is not None:
            if vitals.heart_rate is not None and vitals.heart_rate >= self.TACHYCARDIA_BPM:
                keywords.append("elevated heart rate")
                severity += 1
            if vitals.breathing_rate is not None and vitals.breathing_rate >= self.TACHYPNEA_RPM:
                keywords.append("rapid breathing")
                severity += 1

        if request.frame is not None:
            keywords.append("video frame")

        severity = max(1, min(5, severity))
        summary = (
            f"Window {self._call_count}: caller audio level {rms:.2f}, "
            f"state {emotional_state.value}, severity {severity}."
        )

        return TriageReport(
            summary=summary,
            keywords=keywords,
            emotional_state=emotional_state,
            response_category=ResponseCategory.EMS if severity >= 4 else ResponseCategory.UNKNOWN,
            severity=severity,
            can_speak=rms > self.SILENT_RMS and emotional_state is not EmotionalState.PANICKED,
            model_version=self.model_id,
        )

    @staticmethod
    def _wav_rms(wav_bytes: bytes) -> float:
        """Normalized RMS (0-1) of 16-bit PCM inside a WAV container."""
        try:
            with wave.open(io.BytesIO(wav_bytes), "rb") as wav_file:
                if wav_file.getsampwidth() != 2:
                    return 0.0
                frames = wav_file.readframes(wav_file.getnframes())
        except (wave.Error, EOFError):
            return 0.0

        num_samples = len(frames) // 2
        if num_samples == 0:
            return 0.0
        samples = struct.unpack(f"<{num_samples}h", frames[:num_samples * 2])
        rms = (sum(s * s for s in samples) / num_samples) ** 0.5
        return rms / 32767.0


# =============================================================================
# Gemini Implementation
# =============================================================================

class GeminiTriageAnalyzer:
    """
    Gemini-backed analyzer.

    Sends the WAV clip and newest frame as inline data parts with a JSON
    response MIME type. One HTTP request per round; the scheduler
    guarantees at most one in flight per call.
    """

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            settings: Provides API key, model, base URL and timeout
            client: Optional shared client (tests inject one with a MockTransport)
        """
        if not settings.gemini_api_key:
            raise ValueError("gemini_api_key must be set for GeminiTriageAnalyzer")
        self._settings = settings
        self._client = client

    @property
    def model_id(self) -> str:
        return self._settings.gemini_model

    def build_body(self, request: AnalysisRequest) -> dict:
        parts: list[dict] = [
            {"text": request.prompt},
            {
                "inline_data": {
                    "mime_type": "audio/wav",
                    "data": base64.b64encode(request.audio_wav).decode("ascii"),
                }
            },
        ]
        if request.frame is not None:
            parts.append({
                "inline_data": {
                    "mime_type": request.frame_mime_type or "image/jpeg",
                    "data": base64.b64encode(request.frame).decode("ascii"),
                }
            })

        return {
            "system_instruction": {"parts": [{"text": request.system_instruction}]},
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": self._settings.gemini_temperature,
                "responseMimeType": "application/json",
            },
        }

    async def analyze(self, request: AnalysisRequest) -> TriageReport:
        body = self.build_body(request)
        data = await self._post(body)

        candidates = data.get("candidates") or []
        if not candidates:
            raise MalformedAnalysisResponseError(
                "Analysis response has no candidates",
                details={"prompt_feedback": data.get("promptFeedback")},
            )

        parts = (((candidates[0] or {}).get("content") or {}).get("parts")) or []
        text = "".join(str(p.get("text", "")) for p in parts if isinstance(p, dict)).strip()
        parsed = extract_json(text) if text else None
        if parsed is None:
            raise MalformedAnalysisResponseError(
                "Analysis response is not a JSON object",
                details={"preview": text[:80]},
            )

        return parse_report(parsed, model_version=self.model_id)

    async def _post(self, body: dict) -> dict:
        url = f"{self._settings.gemini_base_url}/models/{self._settings.gemini_model}:generateContent"
        params = {"key": self._settings.gemini_api_key}

        try:
            if self._client is not None:
                response = await self._client.post(
                    url, params=params, json=body, timeout=self._settings.analysis_timeout_seconds
                )
            else:
                async with httpx.AsyncClient(timeout=self._settings.analysis_timeout_seconds) as client:
                    response = await client.post(url, params=params, json=body)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise AnalysisTimeoutError(f"Analysis call timed out: {type(e).__name__}")
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429:
                raise AnalysisRateLimitedError(
                    "Analysis API rate limit exceeded",
                    details={"retry_after": e.response.headers.get("retry-after")},
                )
            raise AnalysisError(
                f"Analysis API returned HTTP {status}",
                details={"status": status},
            )
        except httpx.HTTPError as e:
            raise AnalysisError(f"Analysis call failed: {type(e).__name__}")

        try:
            data = response.json()
        except ValueError:
            raise MalformedAnalysisResponseError("Analysis API returned non-JSON body")
        if not isinstance(data, dict):
            raise MalformedAnalysisResponseError("Analysis API returned unexpected body")
        return data


# =============================================================================
# Factory Function
# =============================================================================

def create_analyzer(settings: Settings) -> TriageAnalyzer:
    """
    Select the analyzer implementation from settings.

    - analysis_backend="gemini" requires GEMINI_API_KEY; without it the hub
      falls back to the dummy analyzer and says so loudly.
    - anything else: DummyTriageAnalyzer
    """
    backend = (settings.analysis_backend or "dummy").lower()

    if backend == "gemini":
        if not settings.gemini_api_key:
            logger.error(
                "analysis_backend='gemini' but GEMINI_API_KEY is not set. "
                "Falling back to DummyTriageAnalyzer."
            )
            return DummyTriageAnalyzer()

        logger.info(
            "Initializing GeminiTriageAnalyzer (model=%s, timeout=%.0fs)",
            settings.gemini_model,
            settings.analysis_timeout_seconds,
        )
        return GeminiTriageAnalyzer(settings)

    logger.info("Using DummyTriageAnalyzer (heuristic)")
    return DummyTriageAnalyzer()
