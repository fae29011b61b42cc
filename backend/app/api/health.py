"""
SilentLine - Health Check Endpoints

System health monitoring endpoints for load balancers, monitoring,
and operational visibility.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from app.config import Settings
from app.core.hub import DispatchHub
from app.services.triage_analyzer import DummyTriageAnalyzer

from .routes import get_hub, get_settings

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
async def health_check(
    hub: DispatchHub = Depends(get_hub),
    settings: Settings = Depends(get_settings),
) -> dict:
    """
    Overall system health check.

    Returns:
        - status: "healthy" or "degraded"
        - checks: Individual component statuses
        - timestamp: Current server time

    The hub stays usable without an analysis API key or TURN secret, so
    those report "degraded"/"disabled" rather than failing the check.
    """
    checks = {}

    checks["hub"] = {
        "status": "healthy",
        **hub.stats,
    }

    analyzer_fallback = (
        settings.analysis_backend == "gemini"
        and isinstance(hub.analyzer, DummyTriageAnalyzer)
    )
    checks["analysis"] = {
        "status": "degraded" if analyzer_fallback else "healthy",
        "backend": settings.analysis_backend,
        "model": hub.analyzer.model_id,
        "interval_seconds": settings.analysis_interval_seconds,
    }

    checks["turn"] = {
        "status": "healthy" if settings.turn_secret else "disabled",
        "uris": len(settings.turn_uris_list),
    }

    all_healthy = all(
        c.get("status") in ("healthy", "disabled")
        for c in checks.values()
    )

    return {
        "status": "healthy" if all_healthy else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "0.1.0",
        "environment": settings.app_env,
        "checks": checks,
    }


@router.get("/ready")
async def readiness_check() -> dict:
    """
    Readiness check for Kubernetes/container orchestration.

    Returns 200 if the service is ready to accept connections.
    """
    return {
        "ready": True,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/live")
async def liveness_check() -> dict:
    """Liveness check."""
    return {
        "alive": True,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/config")
async def config_info(
    settings: Settings = Depends(get_settings),
) -> dict:
    """
    Non-sensitive configuration information.

    Excludes the analysis API key and the TURN shared secret.
    """
    return {
        "environment": settings.app_env,
        "debug": settings.app_debug,
        "log_level": settings.app_log_level,
        "analysis": {
            "backend": settings.analysis_backend,
            "model": settings.gemini_model if settings.analysis_backend == "gemini" else None,
            "interval_seconds": settings.analysis_interval_seconds,
            "timeout_seconds": settings.analysis_timeout_seconds,
            "api_key_configured": bool(settings.gemini_api_key),
        },
        "ingest": {
            "queue_capacity": settings.ingest_queue_capacity,
            "audio_sample_rate": settings.audio_sample_rate,
            "audio_channels": settings.audio_channels,
        },
        "vitals": {
            "pending_ttl_seconds": settings.pending_vitals_ttl_seconds,
        },
        "turn": {
            "configured": bool(settings.turn_secret),
            "ttl_seconds": settings.turn_ttl_seconds,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
