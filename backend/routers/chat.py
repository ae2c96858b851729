"""
Atelier Chat Router - WebSocket Handler

One socket per browser tab (end user widget or operator dashboard). This
module only parses frames and dispatches them; state lives in
chat_orchestration/.

Architecture:
- chat.py: WebSocket endpoint and frame dispatch
- chat_orchestration/: Modular components
  - session.py: ChatSession / Message model and lifecycle rules
  - gateway.py: Gateway rooms, operator broadcasts, typing
  - coordinator.py: ChatCoordinator state machine

Client frames (``type`` field):
    join-chat {session_id, role}, leave-chat, authenticate-admin {token},
    new-message {content}, typing-start, typing-stop, mark-read {message_ids},
    heartbeat (operators send it periodically to stay out of auto-away)
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from errors import (
    AuthError,
    ErrorCode,
    RateLimitError,
    ValidationError,
    handle_async_errors,
)
from middleware.rate_limit import (
    check_message_limit,
    check_ws_connection_limit,
    get_client_ip,
)
from routers.chat_orchestration import Connection, ConnectionRole, get_coordinator, get_gateway
from services.presence import get_presence_tracker

logger = logging.getLogger(__name__)

router = APIRouter()

Handler = Callable[[Connection, Dict[str, Any]], Awaitable[Optional[dict]]]

# Widget clients historically send "admin" for the operator dashboard
_ROLE_ALIASES = {
    "user": ConnectionRole.USER,
    "operator": ConnectionRole.OPERATOR,
    "admin": ConnectionRole.OPERATOR,
}


def _require_room(conn: Connection) -> str:
    if conn.session_id is None:
        raise ValidationError("Join a chat before sending", parameter="session_id")
    return conn.session_id


# =============================================================================
# Frame handlers
# =============================================================================


@handle_async_errors("join-chat", logger)
async def on_join(conn: Connection, data: Dict[str, Any]) -> dict:
    session_id = str(data.get("session_id") or "").strip()
    if not session_id:
        raise ValidationError("session_id is required", parameter="session_id")
    role = _ROLE_ALIASES.get(str(data.get("role") or "user").lower())
    if role is None:
        raise ValidationError(
            "role must be one of user, operator",
            code=ErrorCode.VALIDATION_INVALID_FORMAT,
            parameter="role",
            received=str(data.get("role")),
        )

    coordinator = await get_coordinator()
    session = await coordinator.get_session(session_id)
    members = await get_gateway().join(conn, session_id, role)
    await conn.send("joined", {
        "session_id": session_id,
        "role": conn.role.value,
        "status": session.status.value,
        "members": members,
    })
    return {"success": True}


@handle_async_errors("leave-chat", logger)
async def on_leave(conn: Connection, data: Dict[str, Any]) -> dict:
    await get_gateway().leave(conn)
    return {"success": True}


async def on_authenticate(conn: Connection, data: Dict[str, Any]) -> dict:
    """Answers with auth-success / auth-error instead of a generic error frame."""
    try:
        identity = await get_gateway().authenticate_operator(conn, str(data.get("token") or ""))
    except AuthError as e:
        logger.info(f"Operator auth rejected on {conn.connection_id}: {e.message}")
        await conn.send("auth-error", {"code": e.code.value, "message": e.message})
        return {"success": False}

    presence = await get_presence_tracker()
    await presence.set_operator_online(identity["operator_id"], True, username=identity.get("username", ""))
    await conn.send("auth-success", {
        "operator_id": identity["operator_id"],
        "username": identity.get("username", ""),
        "role": identity.get("role", "operator"),
    })
    return {"success": True}


@handle_async_errors("new-message", logger)
async def on_message(conn: Connection, data: Dict[str, Any]) -> dict:
    session_id = _require_room(conn)

    allowed, error_msg = await check_message_limit(session_id)
    if not allowed:
        raise RateLimitError(error_msg, session_id=session_id)

    coordinator = await get_coordinator()
    if conn.is_operator:
        await coordinator.post_operator_message(session_id, conn.operator_id, data.get("content"))
        presence = await get_presence_tracker()
        await presence.heartbeat(conn.operator_id, username=conn.username)
    elif conn.role is ConnectionRole.PENDING_OPERATOR:
        raise AuthError("Authenticate before replying as an operator", code=ErrorCode.AUTH_MISSING_TOKEN)
    else:
        await coordinator.post_user_message(session_id, data.get("content"))
    # The room event (message-received) is the acknowledgement
    return {"success": True}


@handle_async_errors("typing", logger)
async def on_typing_start(conn: Connection, data: Dict[str, Any]) -> dict:
    await get_gateway().set_typing(conn, True)
    return {"success": True}


@handle_async_errors("typing", logger)
async def on_typing_stop(conn: Connection, data: Dict[str, Any]) -> dict:
    await get_gateway().set_typing(conn, False)
    return {"success": True}


@handle_async_errors("mark-read", logger)
async def on_mark_read(conn: Connection, data: Dict[str, Any]) -> dict:
    session_id = _require_room(conn)
    message_ids = data.get("message_ids")
    if not isinstance(message_ids, list):
        raise ValidationError(
            "message_ids must be a list",
            code=ErrorCode.VALIDATION_INVALID_TYPE,
            parameter="message_ids",
        )
    coordinator = await get_coordinator()
    await coordinator.mark_read(session_id, message_ids, reader=conn.public_role)
    return {"success": True}


@handle_async_errors("heartbeat", logger)
async def on_heartbeat(conn: Connection, data: Dict[str, Any]) -> dict:
    """Keeps an authenticated operator out of auto-away; other sockets just get the ack."""
    if conn.is_operator:
        presence = await get_presence_tracker()
        await presence.heartbeat(conn.operator_id, username=conn.username)
    await conn.send("heartbeat-ack", {"operator": conn.is_operator})
    return {"success": True}


HANDLERS: Dict[str, Handler] = {
    "join-chat": on_join,
    "leave-chat": on_leave,
    "authenticate-admin": on_authenticate,
    "new-message": on_message,
    "typing-start": on_typing_start,
    "typing-stop": on_typing_stop,
    "mark-read": on_mark_read,
    "heartbeat": on_heartbeat,
}


async def _send_error(conn: Connection, code: str, message: str) -> None:
    await conn.send("error", {"code": code, "message": message})


async def _disconnect(conn: Connection) -> None:
    """Leave the room; mark the operator offline when this was their last socket."""
    gateway = get_gateway()
    operator_id = conn.operator_id if conn.is_operator else None
    await gateway.unregister(conn)

    if operator_id and gateway.operator_connection_count(operator_id) == 0:
        presence = await get_presence_tracker()
        await presence.set_operator_online(operator_id, False)


# =============================================================================
# Endpoint
# =============================================================================


@router.websocket("/ws/chat")
async def chat_websocket(websocket: WebSocket):
    """WebSocket endpoint for end users and operators."""
    await websocket.accept()

    client_ip = get_client_ip(websocket)
    allowed, error_msg = await check_ws_connection_limit(client_ip)
    if not allowed:
        logger.warning(f"WS connection rate limited: {client_ip}")
        await websocket.send_json({"type": "error", "code": ErrorCode.RATE_LIMITED.value, "message": error_msg})
        await websocket.close(code=1008, reason="Rate limit exceeded")
        return

    conn = Connection(websocket=websocket)
    get_gateway().register(conn)
    logger.info(f"Chat socket {conn.connection_id} connected from {client_ip}")

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                await _send_error(conn, ErrorCode.VALIDATION_INVALID_FORMAT.value, "Frames must be JSON objects")
                continue

            if not isinstance(data, dict):
                await _send_error(conn, ErrorCode.VALIDATION_INVALID_FORMAT.value, "Frames must be JSON objects")
                continue

            event = data.get("type")
            handler = HANDLERS.get(event)
            if handler is None:
                await _send_error(conn, ErrorCode.VALIDATION_INVALID_FORMAT.value, f"Unknown frame type: {event}")
                continue

            result = await handler(conn, data)
            if result and result.get("error"):
                error = result["error"]
                await _send_error(conn, error["code"], error["message"])

    except WebSocketDisconnect:
        logger.info(f"Chat socket {conn.connection_id} disconnected")
    finally:
        await _disconnect(conn)
