"""
Atelier Chat Session - Conversation data model

Dataclasses and closed enums for chat sessions, messages, provider
configuration and operator presence, plus the session lifecycle rules.
Sender and provider identifiers are enums so that no free-form tag can
reach persistence.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional

from errors import ClosedSessionError, InvalidTransitionError, ValidationError

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MASK_PREFIX = "••••••••••••"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ChatMode(str, Enum):
    AI = "ai"
    HUMAN = "human"


class SessionStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    CLOSED = "closed"


class MessageSender(str, Enum):
    USER = "user"
    OPERATOR = "operator"
    AI = "ai"
    SYSTEM = "system"


class DeliveryState(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class ProviderId(str, Enum):
    GROQ = "groq"
    OPENAI = "openai"
    DEEPSEEK = "deepseek"
    GEMINI = "gemini"


class ProviderHealth(str, Enum):
    UNTESTED = "untested"
    ACTIVE = "active"
    ERROR = "error"


def parse_enum(enum_cls, value: Any, parameter: str):
    """Coerce a raw value into a closed enum, raising ValidationError otherwise."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Invalid {parameter}",
            parameter=parameter,
            expected="|".join(m.value for m in enum_cls),
            received=str(value),
        )


# waiting -> active -> closed; closed is terminal
ALLOWED_TRANSITIONS = {
    SessionStatus.WAITING: {SessionStatus.ACTIVE, SessionStatus.CLOSED},
    SessionStatus.ACTIVE: {SessionStatus.CLOSED},
    SessionStatus.CLOSED: set(),
}


@dataclass(frozen=True)
class Participant:
    """End-user identity captured once at session start."""

    name: str
    email: str
    country: str

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Participant":
        """Validate and normalise participant fields.

        Raises:
            ValidationError: if any field is missing, blank or malformed
        """
        if not isinstance(data, dict):
            raise ValidationError("Participant details are required", parameter="participant")

        values = {}
        for key in ("name", "email", "country"):
            raw = data.get(key)
            value = raw.strip() if isinstance(raw, str) else ""
            if not value:
                raise ValidationError(f"Participant {key} is required", parameter=key)
            values[key] = value

        if not EMAIL_RE.match(values["email"]):
            raise ValidationError(
                "Participant email is invalid",
                parameter="email",
                received=values["email"],
            )
        return cls(**values)

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "email": self.email, "country": self.country}


def parse_credential_overrides(raw: Any, parameter: str = "api_keys") -> Dict[ProviderId, str]:
    """Validate a ``{provider_id: credential}`` map. Blank credentials are dropped."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError(
            "Credential overrides must map provider ids to keys",
            parameter=parameter,
            expected="object",
            received=type(raw).__name__,
        )

    overrides: Dict[ProviderId, str] = {}
    for key, value in raw.items():
        provider_id = parse_enum(ProviderId, key, parameter)
        if value is None:
            continue
        if not isinstance(value, str):
            raise ValidationError(
                "Credential override must be a string",
                parameter=f"{parameter}.{provider_id.value}",
                expected="string",
                received=type(value).__name__,
            )
        if value.strip():
            overrides[provider_id] = value.strip()
    return overrides


@dataclass
class AIConfig:
    """Per-session AI preferences; only meaningful in ai mode.

    ``credential_overrides`` holds visitor-supplied keys per provider. A key
    is only ever sent to the provider it is filed under.
    """

    selected_provider: Optional[ProviderId] = None
    credential_overrides: Dict[ProviderId, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["AIConfig"]:
        if not data:
            return None
        if not isinstance(data, dict):
            raise ValidationError(
                "ai_config must be an object", parameter="ai_config", received=type(data).__name__
            )

        selected = data.get("selected_provider") or data.get("selectedProvider")
        selected_provider = parse_enum(ProviderId, selected, "selected_provider") if selected else None

        overrides: Dict[ProviderId, str] = {}
        for key in ("credential_overrides", "api_keys", "perProviderCredentialOverride"):
            if data.get(key) is not None:
                overrides.update(parse_credential_overrides(data[key], key))

        # Single unkeyed credential: only accepted alongside an explicit provider
        single = data.get("credential_override")
        if isinstance(single, str) and single.strip():
            if selected_provider is None:
                raise ValidationError(
                    "credential_override requires selected_provider; use api_keys to key credentials by provider",
                    parameter="credential_override",
                )
            overrides.setdefault(selected_provider, single.strip())

        return cls(selected_provider=selected_provider, credential_overrides=overrides)

    def credential_for(self, provider_id: ProviderId) -> str:
        return self.credential_overrides.get(provider_id, "")

    def overrides_to_json(self) -> Dict[str, str]:
        return {pid.value: key for pid, key in self.credential_overrides.items()}

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        result = {
            "selected_provider": self.selected_provider.value if self.selected_provider else None,
            "override_providers": sorted(pid.value for pid in self.credential_overrides),
        }
        if include_secret:
            result["credential_overrides"] = self.overrides_to_json()
        return result


@dataclass
class Message:
    """One entry of a session's append-only message log.

    Attributes:
        id: Unique message identifier
        session_id: Owning session
        seq: 1-based append sequence within the session
        sender: Closed sender variant
        content: Non-empty text
        provider_used: Set iff sender is ai
        timestamp: Append time, non-decreasing within a session
        delivery_state: Best-effort receipt state
    """

    id: str
    session_id: str
    seq: int
    sender: MessageSender
    content: str
    timestamp: datetime
    provider_used: Optional[ProviderId] = None
    delivery_state: DeliveryState = DeliveryState.SENT

    def __post_init__(self):
        if (self.sender is MessageSender.AI) != (self.provider_used is not None):
            raise ValidationError(
                "provider_used must be set exactly for ai messages",
                parameter="provider_used",
                received=str(self.provider_used),
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "seq": self.seq,
            "sender": self.sender.value,
            "content": self.content,
            "provider_used": self.provider_used.value if self.provider_used else None,
            "timestamp": _iso(self.timestamp),
            "delivery_state": self.delivery_state.value,
        }


@dataclass
class ChatSession:
    """Durable record of one conversation.

    ``messages`` is append-only; ``status`` only moves forward through
    ALLOWED_TRANSITIONS.
    """

    session_id: str
    participant: Participant
    mode: ChatMode
    status: SessionStatus
    created_at: datetime
    last_activity_at: datetime
    messages: List[Message] = field(default_factory=list)
    assigned_operator: Optional[str] = None
    ai_config: Optional[AIConfig] = None
    close_reason: Optional[str] = None
    closed_by: Optional[str] = None
    closed_at: Optional[datetime] = None

    @property
    def is_closed(self) -> bool:
        return self.status is SessionStatus.CLOSED

    def check_transition(self, target: SessionStatus, operator_id: Optional[str] = None) -> None:
        """Raise if moving to ``target`` is illegal; never mutates.

        Raises:
            ClosedSessionError: session is already closed
            InvalidTransitionError: any other forbidden move
        """
        if self.is_closed:
            raise ClosedSessionError(
                "Chat session is closed",
                session_id=self.session_id,
                current=self.status.value,
                requested=target.value,
            )
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Cannot move session from {self.status.value} to {target.value}",
                session_id=self.session_id,
                current=self.status.value,
                requested=target.value,
            )
        if (
            target is SessionStatus.ACTIVE
            and self.mode is ChatMode.HUMAN
            and not (operator_id or self.assigned_operator)
        ):
            raise InvalidTransitionError(
                "A human session needs an assigned operator to become active",
                session_id=self.session_id,
                current=self.status.value,
                requested=target.value,
            )

    def check_appendable(self) -> None:
        if self.is_closed:
            raise ClosedSessionError("Chat session is closed", session_id=self.session_id)

    def to_dict(self, include_messages: bool = True) -> Dict[str, Any]:
        """Serialize for REST responses and export."""
        result = {
            "session_id": self.session_id,
            "participant": self.participant.to_dict(),
            "mode": self.mode.value,
            "status": self.status.value,
            "assigned_operator": self.assigned_operator,
            "ai_config": self.ai_config.to_dict() if self.ai_config else None,
            "created_at": _iso(self.created_at),
            "last_activity_at": _iso(self.last_activity_at),
            "close_reason": self.close_reason,
            "closed_by": self.closed_by,
            "closed_at": _iso(self.closed_at),
            "message_count": len(self.messages),
        }
        if include_messages:
            result["messages"] = [m.to_dict() for m in self.messages]
        return result


@dataclass
class ProviderConfig:
    """Stored configuration for one AI provider."""

    provider_id: ProviderId
    credential: str = ""
    model_override: str = ""
    enabled: bool = False
    health: ProviderHealth = ProviderHealth.UNTESTED
    health_detail: str = ""
    last_checked_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def validate(self) -> None:
        """An enabled provider must carry a credential."""
        if self.enabled and not self.credential:
            raise ValidationError(
                "An enabled provider needs a credential",
                parameter="credential",
                provider_id=self.provider_id.value,
            )

    @property
    def is_routable(self) -> bool:
        return self.enabled and bool(self.credential)

    def masked_credential(self) -> str:
        if not self.credential:
            return ""
        return MASK_PREFIX + self.credential[-4:]

    def to_admin_dict(self) -> Dict[str, Any]:
        """Admin view: everything except the raw credential."""
        return {
            "provider_id": self.provider_id.value,
            "credential": self.masked_credential(),
            "has_credential": bool(self.credential),
            "model_override": self.model_override,
            "enabled": self.enabled,
            "health": self.health.value,
            "health_detail": self.health_detail,
            "last_checked_at": _iso(self.last_checked_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class OperatorPresence:
    """Availability of one operator account."""

    operator_id: str
    online: bool = False
    status_message: str = "Available for chat"
    last_seen_at: Optional[datetime] = None
    username: str = ""

    def effective_status(self, now: datetime, away_after_s: int) -> str:
        """'offline', 'away' (online but silent too long) or 'online'."""
        if not self.online:
            return "offline"
        if self.last_seen_at and (now - self.last_seen_at).total_seconds() > away_after_s:
            return "away"
        return "online"

    def to_dict(self, now: Optional[datetime] = None, away_after_s: int = 300) -> Dict[str, Any]:
        now = now or utcnow()
        return {
            "operator_id": self.operator_id,
            "username": self.username,
            "online": self.online,
            "status": self.effective_status(now, away_after_s),
            "status_message": self.status_message,
            "last_seen_at": _iso(self.last_seen_at),
        }
