"""
Runtime Configuration for Atelier.

Provides a singleton RuntimeConfig class that allows dynamic adjustment of
chat and provider parameters at runtime, without requiring service restart.

Usage:
    from config import runtime_config
    timeout = runtime_config.provider_timeout_s
    runtime_config.update(provider_temperature=0.5, typing_timeout_s=3.0)
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, List
from threading import Lock
from urllib.parse import quote_plus

logger = logging.getLogger(__name__)


DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant for a web development agency. "
    "Answer questions about our services, projects and process in a friendly, "
    "concise way. If a question needs a human, say that a team member can follow up."
)


def _build_database_url_default() -> str:
    """
    Build a PostgreSQL URL from env vars when DATABASE_URL is not explicitly set.

    Password is URL-encoded to avoid auth breakage with special characters.
    """
    explicit = os.environ.get("DATABASE_URL", "").strip()
    if explicit:
        return explicit

    user = os.environ.get("POSTGRES_USER", "atelier").strip() or "atelier"
    password = os.environ.get("POSTGRES_PASSWORD", "atelier-local-dev")
    host = os.environ.get("POSTGRES_HOST", "localhost").strip() or "localhost"
    port = os.environ.get("POSTGRES_PORT", "5432").strip() or "5432"
    db = os.environ.get("POSTGRES_DB", "atelier").strip() or "atelier"

    safe_password = quote_plus(password)
    return f"postgresql://{user}:{safe_password}@{host}:{port}/{db}"


@dataclass
class RuntimeConfig:
    """
    Singleton configuration for runtime-adjustable parameters.

    All values have defaults from environment variables, but can be
    changed at runtime via the update() method.
    """

    # Environment mode: controls security behavior (development, staging, production)
    atelier_env: str = field(
        default_factory=lambda: os.environ.get("ATELIER_ENV", "development")
    )

    # Redis (rate limiting)
    redis_url: str = field(default_factory=lambda: os.environ.get("REDIS_URL", "redis://localhost:6379/0"))
    redis_enabled: bool = field(
        default_factory=lambda: os.environ.get("REDIS_ENABLED", "true").lower() == "true"
    )

    # PostgreSQL database settings
    database_url: str = field(
        default_factory=_build_database_url_default
    )
    database_enabled: bool = field(
        default_factory=lambda: os.environ.get("DATABASE_ENABLED", "true").lower() == "true"
    )
    database_pool_size: int = field(
        default_factory=lambda: int(os.environ.get("DATABASE_POOL_SIZE", "10"))
    )

    # AI provider calls
    provider_timeout_s: float = field(
        default_factory=lambda: float(os.environ.get("PROVIDER_TIMEOUT_S", "10"))
    )
    provider_max_tokens: int = field(
        default_factory=lambda: int(os.environ.get("PROVIDER_MAX_TOKENS", "500"))
    )
    provider_temperature: float = field(
        default_factory=lambda: float(os.environ.get("PROVIDER_TEMPERATURE", "0.7"))
    )
    ai_history_window: int = field(
        default_factory=lambda: int(os.environ.get("AI_HISTORY_WINDOW", "20"))
    )  # Most recent messages sent to the provider
    ai_system_prompt: str = field(
        default_factory=lambda: os.environ.get("AI_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT)
    )

    # Realtime / presence
    typing_timeout_s: float = field(
        default_factory=lambda: float(os.environ.get("TYPING_TIMEOUT_S", "5"))
    )
    operator_away_after_s: int = field(
        default_factory=lambda: int(os.environ.get("OPERATOR_AWAY_AFTER_S", "300"))
    )
    max_message_length: int = field(
        default_factory=lambda: int(os.environ.get("MAX_MESSAGE_LENGTH", "4000"))
    )

    # Rate limiting settings (per minute)
    rate_limit_ws_conn: int = field(
        default_factory=lambda: int(os.environ.get("RATE_LIMIT_WS_CONN", "30"))
    )  # WebSocket connections per IP
    rate_limit_ws_msg: int = field(
        default_factory=lambda: int(os.environ.get("RATE_LIMIT_WS_MSG", "30"))
    )  # Messages per session
    rate_limit_chat_init: int = field(
        default_factory=lambda: int(os.environ.get("RATE_LIMIT_CHAT_INIT", "10"))
    )  # New chat sessions per IP
    rate_limit_chat_message: int = field(
        default_factory=lambda: int(os.environ.get("RATE_LIMIT_CHAT_MSG", "60"))
    )  # REST chat messages per IP
    rate_limit_admin_login: int = field(
        default_factory=lambda: int(os.environ.get("RATE_LIMIT_ADMIN_LOGIN", "5"))
    )  # Admin login attempts per IP per 15 min window

    # HTTP
    cors_origins: str = field(default_factory=lambda: os.environ.get("CORS_ORIGINS", ""))

    # Transcript export
    export_dir: str = field(default_factory=lambda: os.environ.get("EXPORT_DIR", "data/exports"))

    # Inactive session sweeper
    session_inactive_hours: int = field(
        default_factory=lambda: int(os.environ.get("SESSION_INACTIVE_HOURS", "72"))
    )
    sweep_interval_s: int = field(
        default_factory=lambda: int(os.environ.get("SWEEP_INTERVAL_S", "3600"))
    )

    # Internal state
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)
    _update_count: int = field(default=0, repr=False)

    # Validation ranges for numeric config values
    _VALIDATION_RANGES: Dict[str, tuple] = field(default_factory=lambda: {
        "provider_timeout_s": (1.0, 120.0),
        "provider_max_tokens": (16, 8192),
        "provider_temperature": (0.0, 2.0),
        "ai_history_window": (1, 200),
        "typing_timeout_s": (1.0, 60.0),
        "operator_away_after_s": (30, 86400),
        "max_message_length": (1, 100000),
        "rate_limit_ws_conn": (1, 1000),
        "rate_limit_ws_msg": (1, 1000),
        "rate_limit_chat_init": (1, 1000),
        "rate_limit_chat_message": (1, 1000),
        "rate_limit_admin_login": (1, 50),
        "session_inactive_hours": (1, 8760),
        "sweep_interval_s": (60, 86400),
    })

    @property
    def is_production(self) -> bool:
        return self.atelier_env.lower() == "production"

    def get_cors_origins(self) -> List[str]:
        """Parse the comma-separated CORS origin list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def update(self, **kwargs) -> Dict[str, Any]:
        """
        Update configuration values at runtime.

        Args:
            **kwargs: Key-value pairs to update (e.g., provider_timeout_s=15)

        Returns:
            Dict with 'updated' (changed keys) and 'ignored' (unknown keys)
        """
        updated = []
        ignored = []

        with self._lock:
            for key, value in kwargs.items():
                if key.startswith("_"):
                    ignored.append(key)
                    continue

                if hasattr(self, key):
                    # Validate numeric ranges
                    if key in self._VALIDATION_RANGES:
                        lo, hi = self._VALIDATION_RANGES[key]
                        if not (lo <= value <= hi):
                            ignored.append(key)
                            logger.warning(f"Config rejected {key}={value} (must be {lo}-{hi})")
                            continue

                    old_value = getattr(self, key)
                    setattr(self, key, value)
                    updated.append(key)
                    if key == "ai_system_prompt":
                        logger.info(f"Config updated: {key} ({len(value)} chars)")
                    else:
                        logger.info(f"Config updated: {key} = {value} (was {old_value})")
                else:
                    ignored.append(key)
                    logger.warning(f"Config ignored unknown key: {key}")

            self._update_count += 1

        return {"updated": updated, "ignored": ignored, "update_count": self._update_count}

    def get_generation_params(self) -> Dict[str, Any]:
        """Sampling parameters sent with every completion request."""
        return {
            "temperature": self.provider_temperature,
            "max_tokens": self.provider_max_tokens,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Export current config as dict (excludes internal fields and connection strings)."""
        from dataclasses import fields as dataclass_fields

        result = {}
        for field_info in dataclass_fields(self):
            if field_info.name.startswith("_") or field_info.name == "database_url":
                continue
            result[field_info.name] = getattr(self, field_info.name)
        return result

    def reset_to_defaults(self) -> Dict[str, Any]:
        """Reset all values to environment defaults."""
        defaults = RuntimeConfig()
        changes = {}

        with self._lock:
            for key in self.to_dict().keys():
                old_value = getattr(self, key)
                new_value = getattr(defaults, key)
                if old_value != new_value:
                    setattr(self, key, new_value)
                    changes[key] = {"old": old_value, "new": new_value}
                    logger.info(f"Config reset: {key} = {new_value}")

            self._update_count += 1

        return {"reset": True, "changes": changes, "update_count": self._update_count}


# Singleton instance
runtime_config = RuntimeConfig()


def get_config() -> RuntimeConfig:
    """Get the singleton config instance."""
    return runtime_config
