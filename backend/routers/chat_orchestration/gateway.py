"""
Atelier Realtime Gateway - per-session broadcast rooms over WebSocket

Keeps a process-wide map of session rooms to live connections. A connection
belongs to at most one room; joining another room leaves the first one.
Delivery is best-effort and at-most-once: a connection whose write fails is
dropped, and clients catch up through the history endpoint.

Operator-only events go to authenticated operator connections regardless of
the room they sit in. A connection that asked for the operator role but has
not authenticated stays PENDING_OPERATOR and never receives them.

Single-process by construction; a multi-worker deployment needs this class
backed by a shared pub/sub broker.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from config import runtime_config
from errors import AuthError, ErrorCode
from logging_config import log_room

logger = logging.getLogger(__name__)

TokenVerifier = Callable[[str], Optional[Dict[str, Any]]]


class ConnectionRole(str, Enum):
    USER = "user"
    OPERATOR = "operator"
    PENDING_OPERATOR = "pending_operator"


@dataclass(eq=False)
class Connection:
    """One client socket. Identity-hashed so it can live in room sets."""

    websocket: Any
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    role: ConnectionRole = ConnectionRole.USER
    session_id: Optional[str] = None
    operator_id: Optional[str] = None
    username: str = ""

    @property
    def is_operator(self) -> bool:
        return self.role is ConnectionRole.OPERATOR

    @property
    def public_role(self) -> str:
        """Role shown to peers; pending operators look like operators-to-be."""
        return ConnectionRole.OPERATOR.value if self.role is not ConnectionRole.USER else ConnectionRole.USER.value

    async def send(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        await self.websocket.send_json({"type": event, **(payload or {})})


class Gateway:
    """Room registry plus fan-out."""

    def __init__(self, token_verifier: Optional[TokenVerifier] = None, typing_timeout_s: Optional[float] = None):
        self._token_verifier = token_verifier
        self._typing_timeout_override = typing_timeout_s
        self._rooms: Dict[str, Set[Connection]] = {}
        self._connections: Set[Connection] = set()
        self._typing_tasks: Dict[str, asyncio.Task] = {}
        self._started = False

    @property
    def typing_timeout_s(self) -> float:
        return self._typing_timeout_override or runtime_config.typing_timeout_s

    def set_token_verifier(self, verifier: TokenVerifier) -> None:
        self._token_verifier = verifier

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def init(self) -> None:
        self._started = True
        logger.info("Gateway started")

    async def shutdown(self) -> None:
        for task in list(self._typing_tasks.values()):
            task.cancel()
        self._typing_tasks.clear()
        self._rooms.clear()
        self._connections.clear()
        self._started = False
        logger.info("Gateway stopped")

    def register(self, conn: Connection) -> None:
        self._connections.add(conn)

    async def unregister(self, conn: Connection) -> None:
        """Forget a connection (disconnect); leaves its room first."""
        await self.leave(conn)
        self._connections.discard(conn)

    # =========================================================================
    # Rooms
    # =========================================================================

    async def join(self, conn: Connection, session_id: str, role: ConnectionRole = ConnectionRole.USER) -> List[str]:
        """Put ``conn`` in the session room, leaving any previous room.

        Asking for the operator role without having authenticated yields
        PENDING_OPERATOR. Returns the roles already present in the room.
        """
        if conn.session_id == session_id:
            return self.member_roles(session_id, exclude=conn)
        if conn.session_id is not None:
            await self.leave(conn)

        if role is ConnectionRole.OPERATOR and not conn.is_operator:
            conn.role = ConnectionRole.PENDING_OPERATOR
        elif role is ConnectionRole.USER and not conn.is_operator:
            conn.role = ConnectionRole.USER

        self.register(conn)
        existing = self.member_roles(session_id)
        await self.publish(session_id, "peer-joined", {"role": conn.public_role})

        self._rooms.setdefault(session_id, set()).add(conn)
        conn.session_id = session_id
        log_room(logger, "join", session_id, role=conn.role.value, conn=conn.connection_id)
        return existing

    async def leave(self, conn: Connection) -> None:
        """Remove ``conn`` from its room and tell the remaining members."""
        session_id = conn.session_id
        if session_id is None:
            return
        self._cancel_typing(conn)
        conn.session_id = None

        room = self._rooms.get(session_id)
        if room is not None:
            room.discard(conn)
            if not room:
                del self._rooms[session_id]
        log_room(logger, "leave", session_id, role=conn.role.value, conn=conn.connection_id)
        await self.publish(session_id, "peer-left", {"role": conn.public_role})

    def member_roles(self, session_id: str, exclude: Optional[Connection] = None) -> List[str]:
        return [c.role.value for c in self._rooms.get(session_id, ()) if c is not exclude]

    def has_operator(self, session_id: str) -> bool:
        return any(c.is_operator for c in self._rooms.get(session_id, ()))

    def operator_connection_count(self, operator_id: str) -> int:
        return sum(1 for c in self._connections if c.is_operator and c.operator_id == operator_id)

    def room_count(self) -> int:
        return len(self._rooms)

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def _deliver(self, targets: List[Connection], event: str, payload: Dict[str, Any]) -> int:
        if not targets:
            return 0
        results = await asyncio.gather(
            *(c.send(event, payload) for c in targets), return_exceptions=True
        )
        delivered = 0
        for conn, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.info(f"Dropping connection {conn.connection_id} after failed write: {result}")
                self._drop(conn)
            else:
                delivered += 1
        return delivered

    def _drop(self, conn: Connection) -> None:
        """Silent removal after a dead write; no peer-left to avoid cascades."""
        self._cancel_typing(conn)
        if conn.session_id is not None:
            room = self._rooms.get(conn.session_id)
            if room is not None:
                room.discard(conn)
                if not room:
                    del self._rooms[conn.session_id]
            conn.session_id = None
        self._connections.discard(conn)

    async def publish(
        self,
        session_id: str,
        event: str,
        payload: Optional[Dict[str, Any]] = None,
        exclude: Optional[Connection] = None,
    ) -> int:
        """Send to every connection in the room except ``exclude``; returns deliveries."""
        targets = [c for c in self._rooms.get(session_id, ()) if c is not exclude]
        data = {"session_id": session_id, **(payload or {})}
        return await self._deliver(targets, event, data)

    async def publish_operators(self, event: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """Send to every authenticated operator connection."""
        targets = [c for c in self._connections if c.is_operator]
        return await self._deliver(targets, event, payload or {})

    # =========================================================================
    # Operator authentication
    # =========================================================================

    async def authenticate_operator(self, conn: Connection, token: str) -> Dict[str, Any]:
        """Validate ``token`` and upgrade the connection to OPERATOR.

        Raises:
            AuthError: missing/invalid token; the connection's role is unchanged
        """
        if not token:
            raise AuthError("Operator token is required", code=ErrorCode.AUTH_MISSING_TOKEN)
        identity = self._token_verifier(token) if self._token_verifier else None
        if not identity:
            raise AuthError("Invalid or expired operator token")

        conn.role = ConnectionRole.OPERATOR
        conn.operator_id = str(identity["operator_id"])
        conn.username = identity.get("username", "")
        self.register(conn)
        log_room(logger, "auth", conn.session_id or "-", operator=conn.username or conn.operator_id)
        return identity

    # =========================================================================
    # Typing indicators
    # =========================================================================

    def _cancel_typing(self, conn: Connection) -> None:
        task = self._typing_tasks.pop(conn.connection_id, None)
        if task is not None:
            task.cancel()

    async def _expire_typing(self, conn: Connection, session_id: str) -> None:
        await asyncio.sleep(self.typing_timeout_s)
        self._typing_tasks.pop(conn.connection_id, None)
        if conn.session_id == session_id:
            await self.publish(session_id, "user-typing", {"role": conn.public_role, "typing": False}, exclude=conn)

    async def set_typing(self, conn: Connection, typing: bool) -> None:
        """Fire-and-forget typing indicator; a start auto-expires after the timeout."""
        session_id = conn.session_id
        if session_id is None:
            return
        self._cancel_typing(conn)
        await self.publish(session_id, "user-typing", {"role": conn.public_role, "typing": typing}, exclude=conn)
        if typing:
            self._typing_tasks[conn.connection_id] = asyncio.create_task(
                self._expire_typing(conn, session_id)
            )


# Singleton instance
_gateway: Optional[Gateway] = None


def get_gateway() -> Gateway:
    """Get the process-wide gateway."""
    global _gateway
    if _gateway is None:
        _gateway = Gateway()
    return _gateway


def set_gateway(gateway: Optional[Gateway]) -> None:
    global _gateway
    _gateway = gateway
