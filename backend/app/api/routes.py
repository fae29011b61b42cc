"""
SilentLine - REST API Routes

Endpoints for call inspection, HTTP-only vitals submission and TURN
credentials. Real-time call traffic is handled separately via WebSocket.

Architecture:
    All call operations flow through the DispatchHub, accessed via
    dependency injection from app.state. This ensures:
    - Single source of truth for session state
    - The same vitals semantics as the websocket `vitals` message
"""

import logging

from fastapi import APIRouter, Depends, Query, Request, status

from app.config import Settings
from app.core.exceptions import CallNotFoundError
from app.core.hub import DispatchHub
from app.core.logging import mask_call_id
from app.core.types import VitalsOutcome
from app.services.turn_credentials import issue_turn_credentials

from .schemas import (
    CallListResponse,
    CallSummary,
    ErrorResponse,
    TurnCredentialsResponse,
    VitalsAcceptedResponse,
    VitalsPayload,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["api"])


# =============================================================================
# Dependencies
# =============================================================================

def get_hub(request: Request) -> DispatchHub:
    """Dependency to get the dispatch hub from app state."""
    return request.app.state.hub


def get_settings(request: Request) -> Settings:
    """Dependency to get settings from app state."""
    return request.app.state.settings


# =============================================================================
# Calls
# =============================================================================

@router.get("/calls", response_model=CallListResponse)
async def list_calls(hub: DispatchHub = Depends(get_hub)):
    """
    List live calls.

    Calls being torn down are not included.
    """
    views = hub.registry.active_sessions()
    return CallListResponse(
        calls=[CallSummary(**view.to_dict()) for view in views],
        count=len(views),
    )


@router.get(
    "/calls/{call_id}",
    response_model=CallSummary,
    responses={404: {"model": ErrorResponse}},
)
async def get_call(call_id: str, hub: DispatchHub = Depends(get_hub)):
    """
    Get one live call, including its last vitals and latest triage report.

    Raises:
        CallNotFoundError: 404 if the call is not live
    """
    view = hub.registry.lookup(call_id)
    if view is None:
        raise CallNotFoundError(f"Call {call_id} not found", details={"call_id": call_id})
    return CallSummary(**view.to_dict())


@router.post(
    "/calls/{call_id}/vitals",
    response_model=VitalsAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_vitals(
    call_id: str,
    payload: VitalsPayload,
    hub: DispatchHub = Depends(get_hub),
):
    """
    Submit a vitals reading from an HTTP-only sensing client.

    Readings for calls that have not registered yet are buffered and
    attached at registration; a reading is never lost to arrival order.
    """
    outcome = await hub.record_vitals(call_id, payload.to_reading())

    logger.debug("Vitals via REST: call=%s, outcome=%s", mask_call_id(call_id), outcome.value)
    return VitalsAcceptedResponse(
        call_id=call_id,
        accepted=outcome is not VitalsOutcome.DROPPED,
        forwarded=outcome is VitalsOutcome.FORWARDED,
        buffered=outcome is VitalsOutcome.BUFFERED,
    )


# =============================================================================
# Peer Media
# =============================================================================

@router.get(
    "/turn-credentials",
    response_model=TurnCredentialsResponse,
    responses={500: {"model": ErrorResponse}},
)
async def get_turn_credentials(
    user: str = Query(default="silentline", min_length=1, max_length=64),
    settings: Settings = Depends(get_settings),
):
    """
    Issue time-limited TURN relay credentials for the peer-media session.

    Raises:
        ConfigurationError: 500 if no TURN shared secret is configured
    """
    credentials = issue_turn_credentials(
        secret=settings.turn_secret,
        user=user,
        ttl_seconds=settings.turn_ttl_seconds,
        uris=settings.turn_uris_list,
    )
    return TurnCredentialsResponse(**credentials)
