"""
Atelier Chat Coordinator - session state machine and message routing

Handles the three producers of chat messages:
1. End users (REST or WebSocket)
2. Human operators (authenticated)
3. The AI provider router (auto-reply on active ai-mode sessions)

Every persisted append or lifecycle transition is followed by exactly one
room event on the gateway. The auto-reply path persists the user message
first, calls the provider with no lock held, then appends the reply as a
second message. Provider failures never reach the user: they become a
system notice and the session stays active.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from config import runtime_config
from errors import (
    ClosedSessionError,
    ErrorCode,
    InvalidTransitionError,
    ProviderError,
    ValidationError,
    log_error,
)
from logging_config import log_message_in, log_message_out

from .gateway import Gateway
from .session import (
    AIConfig,
    ChatMode,
    ChatSession,
    DeliveryState,
    Message,
    MessageSender,
    Participant,
    SessionStatus,
    parse_enum,
    utcnow,
)

logger = logging.getLogger(__name__)

FALLBACK_NOTICE = (
    "Sorry, our assistant can't answer right now. "
    "An operator will respond shortly."
)
INACTIVE_REASON = "inactive"
SYSTEM_ACTOR = "system"


def _summary(session: ChatSession) -> Dict[str, Any]:
    """Lightweight session view for operator lobby events."""
    return {
        "session_id": session.session_id,
        "participant": session.participant.to_dict(),
        "mode": session.mode.value,
        "status": session.status.value,
        "created_at": session.created_at.isoformat(),
    }


def _status_payload(session: ChatSession) -> Dict[str, Any]:
    return {
        "status": session.status.value,
        "assigned_operator": session.assigned_operator,
        "reason": session.close_reason,
        "closed_by": session.closed_by,
        "closed_at": session.closed_at.isoformat() if session.closed_at else None,
    }


class ChatCoordinator:
    """Creates sessions, accepts messages, applies transitions, notifies rooms."""

    def __init__(self, store, router, presence, gateway: Gateway):
        self.store = store
        self.router = router
        self.presence = presence
        self.gateway = gateway

    # =========================================================================
    # Helpers
    # =========================================================================

    def _validate_content(self, content: Any) -> str:
        text = content.strip() if isinstance(content, str) else ""
        if not text:
            raise ValidationError("Message content must not be empty", parameter="content")
        limit = runtime_config.max_message_length
        if len(text) > limit:
            raise ValidationError(
                f"Message too long (max {limit:,} characters)",
                code=ErrorCode.VALIDATION_OUT_OF_RANGE,
                parameter="content",
            )
        return text

    async def _append_and_publish(
        self, session_id: str, sender: MessageSender, content: str, provider_used=None
    ) -> Message:
        message = await self.store.append_message(session_id, sender, content, provider_used=provider_used)
        await self.gateway.publish(session_id, "message-received", {"message": message.to_dict()})
        return message

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def create_session(
        self,
        participant: Dict[str, Any],
        mode: Any,
        ai_config: Optional[Dict[str, Any]] = None,
    ) -> ChatSession:
        """Validate input and open a session (ai -> active, human -> waiting).

        Raises:
            ValidationError: missing participant fields, bad mode or provider id
        """
        person = Participant.from_dict(participant)
        chat_mode = parse_enum(ChatMode, mode, "mode")
        config = AIConfig.from_dict(ai_config) if chat_mode is ChatMode.AI else None

        session = await self.store.create_session(person, chat_mode, config)
        logger.info(
            f"Chat session {session.session_id[:8]} created: mode={chat_mode.value} "
            f"status={session.status.value}"
        )

        if chat_mode is ChatMode.HUMAN:
            await self.gateway.publish_operators("chat-request", _summary(session))
        return session

    async def assign_operator(self, session_id: str, operator_id: str) -> ChatSession:
        """waiting -> active. Raises InvalidTransitionError on an active session."""
        session = await self.store.assign_operator(session_id, str(operator_id))
        logger.info(f"Chat session {session_id[:8]} assigned to operator {operator_id}")
        await self.gateway.publish(session_id, "chat-status-update", _status_payload(session))
        return session

    async def close_session(
        self, session_id: str, reason: str = "", actor: Optional[str] = None
    ) -> ChatSession:
        """active|waiting -> closed. The room stays open so history remains viewable."""
        session = await self.store.set_status(
            session_id, SessionStatus.CLOSED, reason=(reason or "").strip() or None, actor=actor
        )
        logger.info(f"Chat session {session_id[:8]} closed by {actor or 'unknown'}: {reason or '-'}")
        await self.gateway.publish(session_id, "chat-status-update", _status_payload(session))
        return session

    async def sweep_inactive(self, inactive_hours: Optional[int] = None) -> int:
        """Close open sessions idle for longer than ``inactive_hours``."""
        hours = inactive_hours or runtime_config.session_inactive_hours
        cutoff = utcnow() - timedelta(hours=hours)
        closed = 0
        for session_id in await self.store.list_inactive(cutoff):
            try:
                await self.close_session(session_id, INACTIVE_REASON, actor=SYSTEM_ACTOR)
                closed += 1
            except InvalidTransitionError:
                # Closed concurrently
                continue
        if closed:
            logger.info(f"Inactive sweep closed {closed} session(s)")
        return closed

    # =========================================================================
    # Messages
    # =========================================================================

    async def post_user_message(self, session_id: str, content: Any) -> Dict[str, Optional[Message]]:
        """Persist and broadcast a user message, then auto-reply on ai sessions.

        Returns:
            {"message": user message, "reply": ai reply, system notice or None}

        Raises:
            ValidationError, NotFoundError, ClosedSessionError
        """
        text = self._validate_content(content)
        session = await self.store.get_session(session_id)
        session.check_appendable()

        message = await self._append_and_publish(session_id, MessageSender.USER, text)
        log_message_in(logger, session_id, MessageSender.USER.value, text)

        if session.mode is ChatMode.HUMAN:
            await self.gateway.publish_operators(
                "chat-activity",
                {"session_id": session_id, "status": session.status.value, "message": message.to_dict()},
            )
            return {"message": message, "reply": None}

        reply = None
        if session.status is SessionStatus.ACTIVE:
            reply = await self._auto_reply(session_id)
        return {"message": message, "reply": reply}

    async def _auto_reply(self, session_id: str) -> Optional[Message]:
        session = await self.store.get_session(session_id)
        try:
            provider_id = await self.router.select_provider(session)
            override = session.ai_config.credential_for(provider_id) if session.ai_config else ""
            text = await self.router.complete(provider_id, session.messages, credential_override=override)
        except ProviderError as e:
            log_error(logger, e, context="Auto-reply", include_traceback=False)
            try:
                notice = await self._append_and_publish(session_id, MessageSender.SYSTEM, FALLBACK_NOTICE)
            except ClosedSessionError:
                return None
            log_message_out(logger, session_id, MessageSender.SYSTEM.value)
            return notice

        try:
            reply = await self._append_and_publish(
                session_id, MessageSender.AI, text, provider_used=provider_id
            )
        except ClosedSessionError:
            logger.info(f"Chat session {session_id[:8]} closed while awaiting {provider_id.value}; reply dropped")
            return None
        log_message_out(logger, session_id, MessageSender.AI.value, provider=provider_id.value)
        return reply

    async def post_operator_message(self, session_id: str, operator_id: str, content: Any) -> Message:
        """Operator reply; only on active sessions.

        Raises:
            ClosedSessionError: session closed
            InvalidTransitionError: session still waiting for assignment
        """
        text = self._validate_content(content)
        session = await self.store.get_session(session_id)
        session.check_appendable()
        if session.status is not SessionStatus.ACTIVE:
            raise InvalidTransitionError(
                "Assign the session before replying",
                session_id=session_id,
                current=session.status.value,
            )

        message = await self._append_and_publish(session_id, MessageSender.OPERATOR, text)
        log_message_in(logger, session_id, f"operator:{operator_id}", text)
        return message

    async def get_session(self, session_id: str) -> ChatSession:
        return await self.store.get_session(session_id)

    async def get_history(self, session_id: str) -> List[Message]:
        return await self.store.get_history(session_id)

    async def list_sessions(
        self,
        status: Optional[str] = None,
        mode: Optional[str] = None,
        participant_query: Optional[str] = None,
        limit: int = 50,
    ) -> List[ChatSession]:
        """Operator dashboard listing; ``status='all'`` or empty means no status filter."""
        status_filter = None
        if status and status != "all":
            status_filter = parse_enum(SessionStatus, status, "status")
        mode_filter = parse_enum(ChatMode, mode, "mode") if mode else None
        return await self.store.list_sessions(
            status=status_filter,
            mode=mode_filter,
            participant_query=(participant_query or "").strip() or None,
            limit=max(1, min(limit, 200)),
        )

    async def mark_read(self, session_id: str, message_ids: Iterable[str], reader: str) -> int:
        """Record read receipts and tell the room; never reorders the log."""
        ids = [str(i) for i in message_ids]
        changed = await self.store.update_delivery_state(session_id, ids, DeliveryState.READ)
        if changed:
            await self.gateway.publish(session_id, "messages-read", {"message_ids": ids, "reader": reader})
        return changed


# Singleton instance
_coordinator: Optional[ChatCoordinator] = None


async def get_coordinator() -> ChatCoordinator:
    """Build the coordinator over the shared store, router, presence and gateway."""
    global _coordinator
    if _coordinator is None:
        from services.ai_router import get_ai_router
        from services.chat_store import get_chat_store
        from services.presence import get_presence_tracker

        from .gateway import get_gateway

        store = await get_chat_store()
        _coordinator = ChatCoordinator(
            store=store,
            router=await get_ai_router(),
            presence=await get_presence_tracker(),
            gateway=get_gateway(),
        )
    return _coordinator


def set_coordinator(coordinator: Optional[ChatCoordinator]) -> None:
    global _coordinator
    _coordinator = coordinator
