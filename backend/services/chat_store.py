"""
Chat Session Store - durable sessions, messages, provider configs, presence.

Provides:
- ChatStore interface used by the coordinator, router and presence tracker
- MemoryChatStore: process-local store, one asyncio.Lock per session
- PostgresChatStore: asyncpg store, appends serialised with SELECT ... FOR UPDATE
- get_chat_store(): PostgreSQL when available, memory fallback otherwise

Within a session, message order equals append order: every append takes the
session's lock (or row lock), assigns the next ``seq`` and a timestamp no
earlier than the previous message's.

Usage:
    from services.chat_store import get_chat_store

    store = await get_chat_store()
    session = await store.create_session(participant, ChatMode.HUMAN)
    await store.append_message(session.session_id, MessageSender.USER, "Hello")
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from errors import NotFoundError, ValidationError
from routers.chat_orchestration.session import (
    AIConfig,
    ChatMode,
    ChatSession,
    DeliveryState,
    Message,
    MessageSender,
    OperatorPresence,
    Participant,
    ProviderConfig,
    ProviderHealth,
    ProviderId,
    SessionStatus,
    parse_credential_overrides,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50


def _new_id() -> str:
    return uuid.uuid4().hex


def _clean_content(content: str) -> str:
    text = content.strip() if isinstance(content, str) else ""
    if not text:
        raise ValidationError("Message content must not be empty", parameter="content")
    return text


def _not_found(session_id: str) -> NotFoundError:
    return NotFoundError("Chat session not found", resource_type="session", resource_id=session_id)


def _matches(session: ChatSession, status, mode, query: Optional[str]) -> bool:
    if status is not None and session.status is not status:
        return False
    if mode is not None and session.mode is not mode:
        return False
    if query:
        q = query.lower()
        p = session.participant
        if q not in p.name.lower() and q not in p.email.lower():
            return False
    return True


class ChatStore(ABC):
    """Persistence contract for the chat core."""

    backend: str = "abstract"

    # --- sessions ---

    @abstractmethod
    async def create_session(
        self, participant: Participant, mode: ChatMode, ai_config: Optional[AIConfig] = None
    ) -> ChatSession:
        """Create a session; ai mode starts active, human mode starts waiting."""

    @abstractmethod
    async def get_session(self, session_id: str) -> ChatSession:
        """Return a snapshot including messages; NotFoundError if unknown."""

    @abstractmethod
    async def append_message(
        self,
        session_id: str,
        sender: MessageSender,
        content: str,
        provider_used: Optional[ProviderId] = None,
    ) -> Message:
        """Append to the session log.

        Raises:
            NotFoundError: unknown session
            ClosedSessionError: session is closed
            ValidationError: empty content or sender/provider mismatch
        """

    async def get_history(self, session_id: str) -> List[Message]:
        session = await self.get_session(session_id)
        return session.messages

    @abstractmethod
    async def assign_operator(self, session_id: str, operator_id: str) -> ChatSession:
        """waiting -> active with ``operator_id`` recorded."""

    @abstractmethod
    async def set_status(
        self,
        session_id: str,
        status: SessionStatus,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> ChatSession:
        """Apply a lifecycle transition; illegal moves raise and change nothing."""

    @abstractmethod
    async def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
        mode: Optional[ChatMode] = None,
        participant_query: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> List[ChatSession]:
        """Sessions matching the filter, most recent activity first."""

    @abstractmethod
    async def list_inactive(self, before: datetime) -> List[str]:
        """Ids of open sessions whose last activity is older than ``before``."""

    @abstractmethod
    async def update_delivery_state(
        self, session_id: str, message_ids: Iterable[str], state: DeliveryState
    ) -> int:
        """Best-effort receipt update; returns how many messages changed."""

    # --- provider configs ---

    @abstractmethod
    async def get_provider_config(self, provider_id: ProviderId) -> Optional[ProviderConfig]:
        ...

    @abstractmethod
    async def list_provider_configs(self) -> List[ProviderConfig]:
        ...

    @abstractmethod
    async def save_provider_config(self, config: ProviderConfig) -> ProviderConfig:
        """Replace the whole record (last writer wins)."""

    @abstractmethod
    async def delete_provider_config(self, provider_id: ProviderId) -> bool:
        ...

    # --- operator presence ---

    @abstractmethod
    async def get_presence(self, operator_id: str) -> Optional[OperatorPresence]:
        ...

    @abstractmethod
    async def save_presence(self, presence: OperatorPresence) -> OperatorPresence:
        ...

    @abstractmethod
    async def list_presence(self) -> List[OperatorPresence]:
        ...


# =============================================================================
# In-memory implementation
# =============================================================================


class MemoryChatStore(ChatStore):
    """Process-local store. Snapshots returned to callers are copies."""

    backend = "memory"

    def __init__(self):
        self._sessions: Dict[str, ChatSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._providers: Dict[ProviderId, ProviderConfig] = {}
        self._presence: Dict[str, OperatorPresence] = {}

    def _snapshot(self, session: ChatSession) -> ChatSession:
        return replace(session, messages=[replace(m) for m in session.messages])

    def _get(self, session_id: str) -> ChatSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise _not_found(session_id)
        return session

    async def create_session(self, participant, mode, ai_config=None) -> ChatSession:
        now = utcnow()
        session = ChatSession(
            session_id=_new_id(),
            participant=participant,
            mode=mode,
            status=SessionStatus.ACTIVE if mode is ChatMode.AI else SessionStatus.WAITING,
            created_at=now,
            last_activity_at=now,
            ai_config=ai_config if mode is ChatMode.AI else None,
        )
        self._locks[session.session_id] = asyncio.Lock()
        self._sessions[session.session_id] = session
        return self._snapshot(session)

    async def get_session(self, session_id: str) -> ChatSession:
        return self._snapshot(self._get(session_id))

    async def append_message(self, session_id, sender, content, provider_used=None) -> Message:
        text = _clean_content(content)
        self._get(session_id)
        async with self._locks[session_id]:
            session = self._get(session_id)
            session.check_appendable()
            now = utcnow()
            if session.messages and session.messages[-1].timestamp > now:
                now = session.messages[-1].timestamp
            message = Message(
                id=_new_id(),
                session_id=session_id,
                seq=len(session.messages) + 1,
                sender=sender,
                content=text,
                timestamp=now,
                provider_used=provider_used,
            )
            session.messages.append(message)
            session.last_activity_at = now
            return replace(message)

    async def assign_operator(self, session_id: str, operator_id: str) -> ChatSession:
        self._get(session_id)
        async with self._locks[session_id]:
            session = self._get(session_id)
            session.check_transition(SessionStatus.ACTIVE, operator_id=operator_id)
            session.assigned_operator = operator_id
            session.status = SessionStatus.ACTIVE
            return self._snapshot(session)

    async def set_status(self, session_id, status, reason=None, actor=None) -> ChatSession:
        self._get(session_id)
        async with self._locks[session_id]:
            session = self._get(session_id)
            session.check_transition(status)
            session.status = status
            if status is SessionStatus.CLOSED:
                session.close_reason = reason
                session.closed_by = actor
                session.closed_at = utcnow()
            return self._snapshot(session)

    async def list_sessions(self, status=None, mode=None, participant_query=None, limit=DEFAULT_LIST_LIMIT):
        matched = [s for s in self._sessions.values() if _matches(s, status, mode, participant_query)]
        matched.sort(key=lambda s: s.last_activity_at, reverse=True)
        return [self._snapshot(s) for s in matched[:limit]]

    async def list_inactive(self, before: datetime) -> List[str]:
        return [
            s.session_id
            for s in self._sessions.values()
            if not s.is_closed and s.last_activity_at < before
        ]

    async def update_delivery_state(self, session_id, message_ids, state) -> int:
        wanted = set(message_ids)
        self._get(session_id)
        changed = 0
        async with self._locks[session_id]:
            for message in self._get(session_id).messages:
                if message.id in wanted and message.delivery_state != state:
                    message.delivery_state = state
                    changed += 1
        return changed

    async def get_provider_config(self, provider_id):
        config = self._providers.get(provider_id)
        return replace(config) if config else None

    async def list_provider_configs(self):
        return [replace(c) for c in self._providers.values()]

    async def save_provider_config(self, config):
        config.validate()
        stored = replace(config, updated_at=utcnow())
        self._providers[config.provider_id] = stored
        return replace(stored)

    async def delete_provider_config(self, provider_id) -> bool:
        return self._providers.pop(provider_id, None) is not None

    async def get_presence(self, operator_id):
        presence = self._presence.get(operator_id)
        return replace(presence) if presence else None

    async def save_presence(self, presence):
        self._presence[presence.operator_id] = replace(presence)
        return replace(presence)

    async def list_presence(self):
        return [replace(p) for p in self._presence.values()]


# =============================================================================
# PostgreSQL implementation
# =============================================================================


_SESSION_COLUMNS = (
    "session_id, participant_name, participant_email, participant_country, mode, status, "
    "assigned_operator, ai_selected_provider, ai_credential_overrides, close_reason, closed_by, "
    "closed_at, created_at, last_activity_at"
)


def _row_overrides(value) -> Dict[ProviderId, str]:
    # asyncpg returns jsonb as text unless a codec is registered
    if isinstance(value, str):
        value = json.loads(value or "{}")
    return parse_credential_overrides(value or {}, "ai_credential_overrides")


def _row_to_session(row: dict, messages: Optional[List[Message]] = None) -> ChatSession:
    ai_config = None
    if row["mode"] == ChatMode.AI.value:
        selected = row.get("ai_selected_provider")
        ai_config = AIConfig(
            selected_provider=ProviderId(selected) if selected else None,
            credential_overrides=_row_overrides(row.get("ai_credential_overrides")),
        )
    return ChatSession(
        session_id=row["session_id"],
        participant=Participant(
            name=row["participant_name"],
            email=row["participant_email"],
            country=row["participant_country"],
        ),
        mode=ChatMode(row["mode"]),
        status=SessionStatus(row["status"]),
        created_at=row["created_at"],
        last_activity_at=row["last_activity_at"],
        messages=messages or [],
        assigned_operator=row.get("assigned_operator"),
        ai_config=ai_config,
        close_reason=row.get("close_reason"),
        closed_by=row.get("closed_by"),
        closed_at=row.get("closed_at"),
    )


def _row_to_message(row: dict) -> Message:
    provider = row.get("provider_used")
    return Message(
        id=row["id"],
        session_id=row["session_id"],
        seq=row["seq"],
        sender=MessageSender(row["sender"]),
        content=row["content"],
        timestamp=row["created_at"],
        provider_used=ProviderId(provider) if provider else None,
        delivery_state=DeliveryState(row["delivery_state"]),
    )


def _row_to_provider(row: dict) -> ProviderConfig:
    return ProviderConfig(
        provider_id=ProviderId(row["provider_id"]),
        credential=row["credential"],
        model_override=row["model_override"],
        enabled=row["enabled"],
        health=ProviderHealth(row["health"]),
        health_detail=row["health_detail"],
        last_checked_at=row["last_checked_at"],
        updated_at=row["updated_at"],
    )


def _row_to_presence(row: dict) -> OperatorPresence:
    return OperatorPresence(
        operator_id=row["operator_id"],
        username=row["username"],
        online=row["online"],
        status_message=row["status_message"],
        last_seen_at=row["last_seen_at"],
    )


class PostgresChatStore(ChatStore):
    """asyncpg-backed store on top of services.database.DatabaseManager."""

    backend = "postgresql"

    def __init__(self, db):
        self.db = db

    async def _locked_session(self, conn, session_id: str) -> ChatSession:
        row = await conn.fetchrow(
            f"SELECT {_SESSION_COLUMNS} FROM chat_sessions WHERE session_id = $1 FOR UPDATE",
            session_id,
        )
        if row is None:
            raise _not_found(session_id)
        return _row_to_session(dict(row))

    async def _messages_for(self, session_ids: List[str]) -> Dict[str, List[Message]]:
        grouped: Dict[str, List[Message]] = {sid: [] for sid in session_ids}
        if not session_ids:
            return grouped
        rows = await self.db.fetch(
            "SELECT * FROM chat_messages WHERE session_id = ANY($1::text[]) ORDER BY session_id, seq",
            session_ids,
        )
        for row in rows:
            grouped[row["session_id"]].append(_row_to_message(row))
        return grouped

    async def create_session(self, participant, mode, ai_config=None) -> ChatSession:
        status = SessionStatus.ACTIVE if mode is ChatMode.AI else SessionStatus.WAITING
        config = ai_config if mode is ChatMode.AI else None
        row = await self.db.fetchrow(
            "INSERT INTO chat_sessions (session_id, participant_name, participant_email, "
            "participant_country, mode, status, ai_selected_provider, ai_credential_overrides) "
            f"VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb) RETURNING {_SESSION_COLUMNS}",
            _new_id(),
            participant.name,
            participant.email,
            participant.country,
            mode.value,
            status.value,
            config.selected_provider.value if config and config.selected_provider else None,
            json.dumps(config.overrides_to_json() if config else {}),
        )
        return _row_to_session(row)

    async def get_session(self, session_id: str) -> ChatSession:
        row = await self.db.fetchrow(
            f"SELECT {_SESSION_COLUMNS} FROM chat_sessions WHERE session_id = $1", session_id
        )
        if row is None:
            raise _not_found(session_id)
        messages = await self._messages_for([session_id])
        return _row_to_session(row, messages[session_id])

    async def append_message(self, session_id, sender, content, provider_used=None) -> Message:
        text = _clean_content(content)
        async with self.db.transaction() as conn:
            locked = await conn.fetchrow(
                "SELECT status, message_count, last_activity_at FROM chat_sessions "
                "WHERE session_id = $1 FOR UPDATE",
                session_id,
            )
            if locked is None:
                raise _not_found(session_id)
            # Reuse the lifecycle check from the data model
            if locked["status"] == SessionStatus.CLOSED.value:
                session = await self._locked_session(conn, session_id)
                session.check_appendable()

            now = max(utcnow(), locked["last_activity_at"])
            message = Message(
                id=_new_id(),
                session_id=session_id,
                seq=locked["message_count"] + 1,
                sender=sender,
                content=text,
                timestamp=now,
                provider_used=provider_used,
            )
            await conn.execute(
                "INSERT INTO chat_messages (id, session_id, seq, sender, content, provider_used, "
                "delivery_state, created_at) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)",
                message.id,
                session_id,
                message.seq,
                sender.value,
                text,
                provider_used.value if provider_used else None,
                message.delivery_state.value,
                now,
            )
            await conn.execute(
                "UPDATE chat_sessions SET message_count = $2, last_activity_at = $3 WHERE session_id = $1",
                session_id,
                message.seq,
                now,
            )
        return message

    async def assign_operator(self, session_id: str, operator_id: str) -> ChatSession:
        async with self.db.transaction() as conn:
            session = await self._locked_session(conn, session_id)
            session.check_transition(SessionStatus.ACTIVE, operator_id=operator_id)
            row = await conn.fetchrow(
                "UPDATE chat_sessions SET status = $2, assigned_operator = $3 "
                f"WHERE session_id = $1 RETURNING {_SESSION_COLUMNS}",
                session_id,
                SessionStatus.ACTIVE.value,
                operator_id,
            )
        return _row_to_session(dict(row))

    async def set_status(self, session_id, status, reason=None, actor=None) -> ChatSession:
        async with self.db.transaction() as conn:
            session = await self._locked_session(conn, session_id)
            session.check_transition(status)
            if status is SessionStatus.CLOSED:
                row = await conn.fetchrow(
                    "UPDATE chat_sessions SET status = $2, close_reason = $3, closed_by = $4, "
                    f"closed_at = NOW() WHERE session_id = $1 RETURNING {_SESSION_COLUMNS}",
                    session_id,
                    status.value,
                    reason,
                    actor,
                )
            else:
                row = await conn.fetchrow(
                    f"UPDATE chat_sessions SET status = $2 WHERE session_id = $1 RETURNING {_SESSION_COLUMNS}",
                    session_id,
                    status.value,
                )
        return _row_to_session(dict(row))

    async def list_sessions(self, status=None, mode=None, participant_query=None, limit=DEFAULT_LIST_LIMIT):
        rows = await self.db.fetch(
            f"SELECT {_SESSION_COLUMNS} FROM chat_sessions "
            "WHERE ($1::text IS NULL OR status = $1) "
            "AND ($2::text IS NULL OR mode = $2) "
            "AND ($3::text IS NULL OR participant_name ILIKE $3 OR participant_email ILIKE $3) "
            "ORDER BY last_activity_at DESC LIMIT $4",
            status.value if status else None,
            mode.value if mode else None,
            f"%{participant_query}%" if participant_query else None,
            limit,
        )
        messages = await self._messages_for([r["session_id"] for r in rows])
        return [_row_to_session(r, messages[r["session_id"]]) for r in rows]

    async def list_inactive(self, before: datetime) -> List[str]:
        rows = await self.db.fetch(
            "SELECT session_id FROM chat_sessions WHERE status <> 'closed' AND last_activity_at < $1",
            before,
        )
        return [r["session_id"] for r in rows]

    async def update_delivery_state(self, session_id, message_ids, state) -> int:
        ids = list(message_ids)
        if not ids:
            return 0
        status = await self.db.execute(
            "UPDATE chat_messages SET delivery_state = $3 "
            "WHERE session_id = $1 AND id = ANY($2::text[]) AND delivery_state <> $3",
            session_id,
            ids,
            state.value,
        )
        return int(status.split()[-1])

    async def get_provider_config(self, provider_id):
        row = await self.db.fetchrow(
            "SELECT * FROM provider_configs WHERE provider_id = $1", provider_id.value
        )
        return _row_to_provider(row) if row else None

    async def list_provider_configs(self):
        rows = await self.db.fetch("SELECT * FROM provider_configs ORDER BY provider_id")
        return [_row_to_provider(r) for r in rows]

    async def save_provider_config(self, config):
        config.validate()
        row = await self.db.fetchrow(
            "INSERT INTO provider_configs (provider_id, credential, model_override, enabled, "
            "health, health_detail, last_checked_at, updated_at) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, NOW()) "
            "ON CONFLICT (provider_id) DO UPDATE SET credential = EXCLUDED.credential, "
            "model_override = EXCLUDED.model_override, enabled = EXCLUDED.enabled, "
            "health = EXCLUDED.health, health_detail = EXCLUDED.health_detail, "
            "last_checked_at = EXCLUDED.last_checked_at, updated_at = NOW() "
            "RETURNING *",
            config.provider_id.value,
            config.credential,
            config.model_override,
            config.enabled,
            config.health.value,
            config.health_detail,
            config.last_checked_at,
        )
        return _row_to_provider(row)

    async def delete_provider_config(self, provider_id) -> bool:
        status = await self.db.execute(
            "DELETE FROM provider_configs WHERE provider_id = $1", provider_id.value
        )
        return status.endswith(" 1")

    async def get_presence(self, operator_id):
        row = await self.db.fetchrow(
            "SELECT * FROM operator_presence WHERE operator_id = $1", operator_id
        )
        return _row_to_presence(row) if row else None

    async def save_presence(self, presence):
        row = await self.db.fetchrow(
            "INSERT INTO operator_presence (operator_id, username, online, status_message, last_seen_at) "
            "VALUES ($1, $2, $3, $4, $5) "
            "ON CONFLICT (operator_id) DO UPDATE SET username = EXCLUDED.username, "
            "online = EXCLUDED.online, status_message = EXCLUDED.status_message, "
            "last_seen_at = EXCLUDED.last_seen_at RETURNING *",
            presence.operator_id,
            presence.username,
            presence.online,
            presence.status_message,
            presence.last_seen_at,
        )
        return _row_to_presence(row)

    async def list_presence(self):
        rows = await self.db.fetch("SELECT * FROM operator_presence ORDER BY operator_id")
        return [_row_to_presence(r) for r in rows]


# Singleton instance
_chat_store: Optional[ChatStore] = None
_init_lock = asyncio.Lock()


async def get_chat_store() -> ChatStore:
    """
    Get the chat store singleton.

    Uses PostgreSQL when the database manager connected, otherwise falls back
    to process memory (sessions then do not survive a restart).
    """
    global _chat_store

    if _chat_store is None:
        async with _init_lock:
            if _chat_store is None:
                from services.database import get_database

                db = await get_database()
                if db.available:
                    _chat_store = PostgresChatStore(db)
                else:
                    logger.warning("Chat store running in memory mode; sessions are not durable")
                    _chat_store = MemoryChatStore()
                logger.info(f"Chat store ready: backend={_chat_store.backend}")

    return _chat_store


def set_chat_store(store: Optional[ChatStore]) -> None:
    """Install a specific store (tests, alternative deployments)."""
    global _chat_store
    _chat_store = store
