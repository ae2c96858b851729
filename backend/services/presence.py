"""
Presence Tracker - operator availability and session staffing.

Operator online/offline state is persisted through the chat store.
Whether a session is staffed is never stored: it is read from the gateway's
live room membership on every call, so it cannot drift from reality.
"""

import logging
from typing import Any, Dict, List, Optional

from config import runtime_config
from routers.chat_orchestration.session import OperatorPresence, utcnow
from services.chat_store import ChatStore

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Operator presence plus membership-derived staffing."""

    def __init__(self, store: ChatStore, gateway=None):
        self.store = store
        self.gateway = gateway

    def attach_gateway(self, gateway) -> None:
        self.gateway = gateway

    async def set_operator_online(
        self,
        operator_id: str,
        online: bool,
        status_message: Optional[str] = None,
        username: str = "",
    ) -> OperatorPresence:
        """Idempotent; ``last_seen_at`` moves when the operator goes offline or comes online."""
        presence = await self.store.get_presence(operator_id) or OperatorPresence(operator_id=operator_id)
        was_online = presence.online

        presence.online = online
        if status_message is not None:
            presence.status_message = status_message.strip()
        if username:
            presence.username = username
        if was_online != online:
            presence.last_seen_at = utcnow()
            logger.info(f"Operator {operator_id} is now {'online' if online else 'offline'}")

        return await self.store.save_presence(presence)

    async def heartbeat(self, operator_id: str, username: str = "") -> OperatorPresence:
        """Explicit liveness ping; also clears auto-away."""
        presence = await self.store.get_presence(operator_id) or OperatorPresence(operator_id=operator_id)
        presence.online = True
        presence.last_seen_at = utcnow()
        if username:
            presence.username = username
        return await self.store.save_presence(presence)

    async def list_operator_statuses(self) -> List[Dict[str, Any]]:
        """Every known operator with an effective status of online, away or offline."""
        now = utcnow()
        away_after = runtime_config.operator_away_after_s
        return [
            p.to_dict(now=now, away_after_s=away_after)
            for p in await self.store.list_presence()
        ]

    async def count_available_operators(self) -> int:
        return sum(1 for s in await self.list_operator_statuses() if s["status"] == "online")

    def is_session_staffed(self, session_id: str) -> bool:
        """True iff an authenticated operator connection is joined to the room right now."""
        if self.gateway is None:
            return False
        return self.gateway.has_operator(session_id)

    def room_members(self, session_id: str) -> List[str]:
        if self.gateway is None:
            return []
        return self.gateway.member_roles(session_id)


# Singleton instance
_tracker: Optional[PresenceTracker] = None


async def get_presence_tracker() -> PresenceTracker:
    """Get the tracker bound to the active chat store and the process gateway."""
    global _tracker
    if _tracker is None:
        from routers.chat_orchestration.gateway import get_gateway
        from services.chat_store import get_chat_store

        _tracker = PresenceTracker(await get_chat_store(), get_gateway())
    return _tracker


def set_presence_tracker(tracker: Optional[PresenceTracker]) -> None:
    global _tracker
    _tracker = tracker
