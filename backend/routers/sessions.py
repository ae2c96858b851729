"""
Atelier Sessions Router
REST surface for the chat widget and the operator dashboard.

Public (/api/chat): start a session, post a message, read history, list
enabled AI providers.
Operator (/api/chat/admin, bearer JWT): dashboard listing, assign, reply,
close, transcript export, room presence, operator status.

Every write goes through the ChatCoordinator so REST and WebSocket clients
see the same room events.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel

from errors import RateLimitError, success_response
from middleware.rate_limit import check_message_limit
from routers.chat_orchestration import get_coordinator
from services.admin_auth import get_auth_manager, verify_operator
from services.ai_router import get_ai_router
from services.presence import get_presence_tracker
from services.transcript_export import render_transcript, save_transcript, transcript_filename

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

# Widget sends "admin" when the visitor asks for a human
_CHAT_TYPE_ALIASES = {"admin": "human"}


class UserInfo(BaseModel):
    name: str = ""
    email: str = ""
    country: str = ""


class InitializeRequest(BaseModel):
    user_info: UserInfo
    chat_type: str = "ai"
    ai_config: Optional[Dict[str, Any]] = None


class MessageRequest(BaseModel):
    session_id: str
    content: str = ""


class AssignRequest(BaseModel):
    operator_id: Optional[str] = None


class CloseRequest(BaseModel):
    reason: str = ""


class OperatorStatusRequest(BaseModel):
    online: bool
    status_message: Optional[str] = None


# =============================================================================
# Public endpoints
# =============================================================================


@router.post("/initialize", status_code=201)
async def initialize_chat(request: InitializeRequest) -> Dict[str, Any]:
    """Start a session. ai mode is active at once; human mode waits for an operator."""
    coordinator = await get_coordinator()
    mode = _CHAT_TYPE_ALIASES.get(request.chat_type, request.chat_type)
    session = await coordinator.create_session(
        participant=request.user_info.model_dump(),
        mode=mode,
        ai_config=request.ai_config,
    )
    presence = await get_presence_tracker()
    return success_response(
        session=session.to_dict(),
        operators_online=await presence.count_available_operators(),
    )


@router.post("/message")
async def post_message(request: MessageRequest) -> Dict[str, Any]:
    """User message; ai sessions also return the reply (or the fallback notice)."""
    allowed, error_msg = await check_message_limit(request.session_id)
    if not allowed:
        raise RateLimitError(error_msg, session_id=request.session_id)

    coordinator = await get_coordinator()
    result = await coordinator.post_user_message(request.session_id, request.content)
    reply = result["reply"]
    return success_response(
        message=result["message"].to_dict(),
        reply=reply.to_dict() if reply else None,
    )


@router.get("/providers")
async def list_providers() -> Dict[str, Any]:
    """Enabled providers only; never exposes credentials."""
    ai_router = await get_ai_router()
    return success_response(providers=await ai_router.list_public_providers())


@router.get("/{session_id}/history")
async def get_history(session_id: str) -> Dict[str, Any]:
    coordinator = await get_coordinator()
    session = await coordinator.get_session(session_id)
    return success_response(
        session_id=session_id,
        status=session.status.value,
        messages=[m.to_dict() for m in session.messages],
    )


# =============================================================================
# Operator endpoints
# =============================================================================


@router.get("/admin/chats")
async def list_chats(
    status: Optional[str] = None,
    mode: Optional[str] = None,
    q: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    operator: dict = Depends(verify_operator),
) -> Dict[str, Any]:
    """Dashboard listing, most recent activity first."""
    coordinator = await get_coordinator()
    sessions = await coordinator.list_sessions(status=status, mode=mode, participant_query=q, limit=limit)
    presence = coordinator.presence
    chats: List[Dict[str, Any]] = []
    for session in sessions:
        entry = session.to_dict(include_messages=False)
        entry["staffed"] = presence.is_session_staffed(session.session_id)
        if session.messages:
            entry["last_message"] = session.messages[-1].to_dict()
        chats.append(entry)
    return success_response(chats=chats, count=len(chats))


@router.post("/admin/{session_id}/assign")
async def assign_chat(
    session_id: str,
    request: Optional[AssignRequest] = None,
    operator: dict = Depends(verify_operator),
) -> Dict[str, Any]:
    """Assign a waiting session (defaults to the calling operator)."""
    coordinator = await get_coordinator()
    operator_id = (request.operator_id if request else None) or operator["operator_id"]
    assignee = await get_auth_manager().require_operator(operator_id)
    session = await coordinator.assign_operator(session_id, assignee["operator_id"])
    return success_response(session=session.to_dict(include_messages=False))


@router.post("/admin/reply")
async def reply(request: MessageRequest, operator: dict = Depends(verify_operator)) -> Dict[str, Any]:
    coordinator = await get_coordinator()
    message = await coordinator.post_operator_message(request.session_id, operator["operator_id"], request.content)
    return success_response(message=message.to_dict())


@router.patch("/admin/{session_id}/close")
async def close_chat(
    session_id: str,
    request: Optional[CloseRequest] = None,
    operator: dict = Depends(verify_operator),
) -> Dict[str, Any]:
    coordinator = await get_coordinator()
    session = await coordinator.close_session(
        session_id,
        reason=request.reason if request else "",
        actor=operator.get("username") or operator["operator_id"],
    )
    return success_response(session=session.to_dict(include_messages=False))


@router.get("/admin/{session_id}/export")
async def export_chat(
    session_id: str,
    save: bool = False,
    operator: dict = Depends(verify_operator),
) -> Response:
    """Transcript as application/pdf; ``save=true`` also keeps a copy on disk."""
    coordinator = await get_coordinator()
    session = await coordinator.get_session(session_id)
    pdf = render_transcript(session)
    if save:
        save_transcript(session, pdf)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{transcript_filename(session)}"'},
    )


@router.get("/admin/{session_id}/presence")
async def session_presence(session_id: str, operator: dict = Depends(verify_operator)) -> Dict[str, Any]:
    """Live room membership; ``staffed`` is true while an operator is joined."""
    coordinator = await get_coordinator()
    await coordinator.get_session(session_id)
    presence = coordinator.presence
    return success_response(
        session_id=session_id,
        staffed=presence.is_session_staffed(session_id),
        members=presence.room_members(session_id),
    )


@router.post("/admin/status")
async def set_status(request: OperatorStatusRequest, operator: dict = Depends(verify_operator)) -> Dict[str, Any]:
    presence = await get_presence_tracker()
    record = await presence.set_operator_online(
        operator["operator_id"],
        request.online,
        status_message=request.status_message,
        username=operator.get("username", ""),
    )
    return success_response(operator=record.to_dict())


@router.post("/admin/heartbeat")
async def heartbeat(operator: dict = Depends(verify_operator)) -> Dict[str, Any]:
    presence = await get_presence_tracker()
    record = await presence.heartbeat(operator["operator_id"], username=operator.get("username", ""))
    return success_response(operator=record.to_dict())


@router.get("/admin/status")
async def list_operator_status(operator: dict = Depends(verify_operator)) -> Dict[str, Any]:
    presence = await get_presence_tracker()
    operators = await presence.list_operator_statuses()
    return success_response(
        operators=operators,
        online=sum(1 for o in operators if o["status"] == "online"),
    )
