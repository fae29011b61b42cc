"""
SilentLine - WebSocket Handlers

Real-time bidirectional channels for:
- Callers: registration, vitals, raw media ingest, signaling, end of call
- Dispatchers: incoming-call notices, join/watch, signaling, triage updates

Architecture:
    Handlers only translate wire messages into DispatchHub calls. All session
    state lives in the CallRegistry behind the hub, ensuring:
    - One mutation surface for call lifecycle
    - Registration and termination are never relayed to the peer
    - Transport disconnects map to well-defined call outcomes

Protocol:
    Caller → Server (/ws/caller):
        - Text frames: JSON messages tagged by "type"
            register_call, end_call, vitals, ingest_audio, ingest_frame,
            signal, peer_reconnected
        - Binary frames: Raw PCM16 audio for the most recently registered call

    Dispatcher → Server (/ws/dispatcher):
        - Text frames: join_call, watch_call, signal, end_call, peer_reconnected

    Server → Client:
        {"type": "connected", "role": "...", "protocol_version": "..."}
        {"type": "call_registered", "call_id": "..."}
        {"type": "incoming_call", "call_id": "...", "location": {...}}
        {"type": "call_joined" | "dispatcher_joined", "call_id": "..."}
        {"type": "vitals", "call_id": "...", "vitals": {...}}
        {"type": "signal", "call_id": "...", "from": "...", "payload": ...}
        {"type": "triage_update", "call_id": "...", "report": {...}}
        {"type": "call_ended", "call_id": "...", "reason": "..."}
        {"type": "error", "code": "...", "message": "..."}
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from app.core.exceptions import CallNotFoundError, DispatchHubError, DuplicateCallError
from app.core.hub import DispatchHub
from app.core.logging import LogContext, mask_call_id
from app.core.types import IngestItem, Role

from .schemas import (
    EndCall,
    IngestAudio,
    IngestFrame,
    JoinCall,
    PeerReconnected,
    RegisterCall,
    SignalMessage,
    VitalsMessage,
    WatchCall,
    parse_client_message,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])

PROTOCOL_VERSION = "1.0"


@dataclass
class ConnectionState:
    """Per-socket bookkeeping."""
    role: Role
    connected_at: float = field(default_factory=time.time)
    message_count: int = 0
    audio_bytes_received: int = 0
    invalid_messages: int = 0
    last_call_id: Optional[str] = None


# =============================================================================
# WebSocket Endpoints
# =============================================================================

@router.websocket("/ws/caller")
async def caller_stream(websocket: WebSocket):
    """
    Caller endpoint.

    Closing this socket is an implicit end for every call it registered.
    """
    hub: DispatchHub = websocket.app.state.hub
    state = ConnectionState(role=Role.CALLER)

    await websocket.accept()
    logger.info("Caller connected")

    with LogContext(role=Role.CALLER.value):
        try:
            await send_connected(websocket, state)

            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                state.message_count += 1

                if message.get("bytes") is not None:
                    handle_caller_binary(hub, websocket, state, message["bytes"])
                elif message.get("text") is not None:
                    parsed = await parse_or_reply(websocket, state, message["text"])
                    if parsed is not None:
                        await handle_caller_message(hub, websocket, state, parsed)

        except WebSocketDisconnect:
            logger.info("Caller disconnected")
        except Exception as e:
            logger.error("Caller socket error: %s", e, exc_info=True)
        finally:
            ended = await hub.disconnect_caller(websocket)
            log_connection_stats(state, ended_calls=ended)


@router.websocket("/ws/dispatcher")
async def dispatcher_stream(websocket: WebSocket):
    """
    Dispatcher console endpoint.

    The console is subscribed to incoming-call notices before `connected`
    is sent. Closing it detaches the console but never ends a call.
    """
    hub: DispatchHub = websocket.app.state.hub
    state = ConnectionState(role=Role.DISPATCHER)

    await websocket.accept()
    hub.connect_dispatcher(websocket)
    logger.info("Dispatcher connected")

    with LogContext(role=Role.DISPATCHER.value):
        try:
            await send_connected(websocket, state, active_calls=[
                {
                    "call_id": view.call_id,
                    "status": view.status.value,
                    "location": view.location.to_dict() if view.location else None,
                }
                for view in hub.registry.active_sessions()
            ])

            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                state.message_count += 1

                if message.get("bytes") is not None:
                    await send_error(websocket, "INVALID_MESSAGE", "Binary frames are not accepted on this socket")
                elif message.get("text") is not None:
                    parsed = await parse_or_reply(websocket, state, message["text"])
                    if parsed is not None:
                        await handle_dispatcher_message(hub, websocket, parsed)

        except WebSocketDisconnect:
            logger.info("Dispatcher disconnected")
        except Exception as e:
            logger.error("Dispatcher socket error: %s", e, exc_info=True)
        finally:
            hub.disconnect_dispatcher(websocket)
            log_connection_stats(state)


# =============================================================================
# Message Handlers
# =============================================================================

async def handle_caller_message(
    hub: DispatchHub,
    websocket: WebSocket,
    state: ConnectionState,
    msg: BaseModel,
):
    """
    Route one validated caller message to the hub.

    Vitals may come from a separate sensing client and are accepted for any
    call id. Everything else only acts on calls this socket registered.
    """
    with LogContext(call_id=msg.call_id):
        if isinstance(msg, RegisterCall):
            location = msg.location.to_domain() if msg.location else None
            try:
                await hub.register_call(msg.call_id, websocket, location)
            except DuplicateCallError as e:
                await send_error(websocket, e.code, e.message, call_id=msg.call_id)
                return
            state.last_call_id = msg.call_id
            return

        if isinstance(msg, VitalsMessage):
            await hub.record_vitals(msg.call_id, msg.to_reading())
            return

        if not hub.is_caller(msg.call_id, websocket):
            logger.warning("Ignored %s for a call this socket does not own", msg.type)
            return

        if isinstance(msg, EndCall):
            if state.last_call_id == msg.call_id:
                state.last_call_id = None
            await hub.end_call(msg.call_id, msg.reason or "caller_ended")

        elif isinstance(msg, IngestAudio):
            if msg.data:
                state.audio_bytes_received += len(msg.data)
                hub.ingest(msg.call_id, IngestItem.audio(msg.data), source=websocket)

        elif isinstance(msg, IngestFrame):
            if msg.data:
                hub.ingest(msg.call_id, IngestItem.frame(msg.data), source=websocket)

        elif isinstance(msg, SignalMessage):
            await hub.forward_signal(msg.call_id, Role.CALLER, msg.payload)

        elif isinstance(msg, PeerReconnected):
            await hub.replay_vitals(msg.call_id)


def handle_caller_binary(
    hub: DispatchHub,
    websocket: WebSocket,
    state: ConnectionState,
    chunk: bytes,
):
    """Binary frames are PCM audio for this socket's most recently registered call."""
    if not chunk:
        return
    if state.last_call_id is None:
        logger.debug("Binary audio without a registered call dropped (%d bytes)", len(chunk))
        return
    state.audio_bytes_received += len(chunk)
    hub.ingest(state.last_call_id, IngestItem.audio(chunk), source=websocket)


async def handle_dispatcher_message(
    hub: DispatchHub,
    websocket: WebSocket,
    msg: BaseModel,
):
    """Route one validated dispatcher message to the hub."""
    with LogContext(call_id=msg.call_id):
        if isinstance(msg, JoinCall):
            try:
                await hub.join_call(msg.call_id, websocket)
            except CallNotFoundError as e:
                await send_error(websocket, e.code, e.message, call_id=msg.call_id)

        elif isinstance(msg, WatchCall):
            try:
                await hub.watch_call(msg.call_id, websocket)
            except CallNotFoundError as e:
                await send_error(websocket, e.code, e.message, call_id=msg.call_id)

        elif isinstance(msg, SignalMessage):
            await hub.forward_signal(msg.call_id, Role.DISPATCHER, msg.payload)

        elif isinstance(msg, EndCall):
            await hub.end_call(msg.call_id, msg.reason or "dispatcher_ended")

        elif isinstance(msg, PeerReconnected):
            await hub.replay_vitals(msg.call_id)


# =============================================================================
# Response Helpers
# =============================================================================

async def parse_or_reply(
    websocket: WebSocket,
    state: ConnectionState,
    text: str,
) -> Optional[BaseModel]:
    """Validate a text frame; reply with an error and return None if rejected."""
    try:
        return parse_client_message(text, state.role)
    except DispatchHubError as e:
        state.invalid_messages += 1
        logger.warning("Rejected %s message: %s", state.role.value, e.details.get("problems"))
        await send_error(websocket, e.code, e.message, details=e.details)
        return None


async def send_connected(websocket: WebSocket, state: ConnectionState, **extra):
    await websocket.send_json({
        "type": "connected",
        "role": state.role.value,
        "protocol_version": PROTOCOL_VERSION,
        **extra,
    })


async def send_error(
    websocket: WebSocket,
    code: str,
    message: str,
    call_id: Optional[str] = None,
    details: Optional[dict] = None,
):
    """Send an error reply. The socket may already be gone; that is not an error."""
    payload = {"type": "error", "code": code, "message": message}
    if call_id is not None:
        payload["call_id"] = call_id
    if details:
        payload["details"] = details
    try:
        await websocket.send_json(payload)
    except Exception as e:
        logger.debug("Error reply not delivered: %s", e)


def log_connection_stats(state: ConnectionState, ended_calls: int = 0):
    logger.info(
        "%s socket closed: duration=%.1fs, messages=%d, invalid=%d, audio_bytes=%d, "
        "ended_calls=%d, last_call=%s",
        state.role.value.capitalize(),
        time.time() - state.connected_at,
        state.message_count,
        state.invalid_messages,
        state.audio_bytes_received,
        ended_calls,
        mask_call_id(state.last_call_id),
    )
