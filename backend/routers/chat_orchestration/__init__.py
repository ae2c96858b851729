"""
Atelier Chat Orchestration - realtime chat core components

Components:
- session: ChatSession / Message data model, closed enums, lifecycle rules
- gateway: Gateway, per-session WebSocket rooms and operator broadcasts
- coordinator: ChatCoordinator, the state machine tying store, AI router,
  presence and gateway together

Lifecycle:
    waiting -> active -> closed

    ai mode starts active; human mode starts waiting until an operator is
    assigned. closed is terminal: the room stays up for viewing history but
    no message can be appended.
"""

from .session import (
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
)
from .gateway import Connection, ConnectionRole, Gateway, get_gateway
from .coordinator import ChatCoordinator, get_coordinator

__all__ = [
    "ChatMode",
    "ChatSession",
    "DeliveryState",
    "Message",
    "MessageSender",
    "OperatorPresence",
    "Participant",
    "ProviderConfig",
    "ProviderHealth",
    "ProviderId",
    "SessionStatus",
    "Connection",
    "ConnectionRole",
    "Gateway",
    "get_gateway",
    "ChatCoordinator",
    "get_coordinator",
]
