"""
AI Provider Catalog - endpoints, default models and wire protocol per provider.

Defines the closed set of providers the router can talk to. Base URLs can be
overridden per provider with ``<PROVIDER>_BASE_URL`` (e.g. GROQ_BASE_URL) for
proxies and self-hosted gateways.
"""

import os
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from errors import NotFoundError
from routers.chat_orchestration.session import ProviderId, parse_enum

logger = logging.getLogger(__name__)

PROTOCOL_OPENAI = "openai"
PROTOCOL_GEMINI = "gemini"


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of one external completion API."""
    provider_id: ProviderId
    name: str
    description: str
    protocol: str  # openai | gemini
    base_url: str
    default_model: str
    models_url: str  # listing endpoint used for credential tests

    def resolve_model(self, override: Optional[str] = None) -> str:
        return (override or "").strip() or self.default_model


def _env_url(provider_id: ProviderId, default: str) -> str:
    value = os.environ.get(f"{provider_id.value.upper()}_BASE_URL", "").strip()
    if value and not value.startswith(("http://", "https://")):
        logger.warning(f"Ignoring invalid {provider_id.value.upper()}_BASE_URL={value!r}")
        value = ""
    return (value or default).rstrip("/")


def _build_catalog() -> Dict[ProviderId, ProviderSpec]:
    groq_url = _env_url(ProviderId.GROQ, "https://api.groq.com/openai/v1")
    openai_url = _env_url(ProviderId.OPENAI, "https://api.openai.com/v1")
    deepseek_url = _env_url(ProviderId.DEEPSEEK, "https://api.deepseek.com/v1")
    gemini_url = _env_url(ProviderId.GEMINI, "https://generativelanguage.googleapis.com/v1beta")

    return {
        ProviderId.GROQ: ProviderSpec(
            provider_id=ProviderId.GROQ,
            name="Groq",
            description="Fast inference with GPT OSS 20B model",
            protocol=PROTOCOL_OPENAI,
            base_url=groq_url,
            default_model="openai/gpt-oss-20b",
            models_url=f"{groq_url}/models",
        ),
        ProviderId.OPENAI: ProviderSpec(
            provider_id=ProviderId.OPENAI,
            name="OpenAI",
            description="GPT models from OpenAI",
            protocol=PROTOCOL_OPENAI,
            base_url=openai_url,
            default_model="gpt-3.5-turbo",
            models_url=f"{openai_url}/models",
        ),
        ProviderId.DEEPSEEK: ProviderSpec(
            provider_id=ProviderId.DEEPSEEK,
            name="DeepSeek",
            description="DeepSeek chat model",
            protocol=PROTOCOL_OPENAI,
            base_url=deepseek_url,
            default_model="deepseek-chat",
            models_url=f"{deepseek_url}/models",
        ),
        ProviderId.GEMINI: ProviderSpec(
            provider_id=ProviderId.GEMINI,
            name="Google Gemini",
            description="Google's Gemini model",
            protocol=PROTOCOL_GEMINI,
            base_url=gemini_url,
            default_model="gemini-pro",
            # Model listing lives on the stable API version
            models_url=gemini_url.replace("/v1beta", "/v1") + "/models",
        ),
    }


PROVIDERS: Dict[ProviderId, ProviderSpec] = _build_catalog()


def get_provider_spec(provider_id) -> ProviderSpec:
    """Look up a catalog entry, accepting either the enum or its string value."""
    pid = parse_enum(ProviderId, provider_id, "provider_id")
    spec = PROVIDERS.get(pid)
    if spec is None:
        raise NotFoundError("Unknown provider", resource_type="provider", resource_id=pid.value)
    return spec


def list_provider_specs() -> List[ProviderSpec]:
    return list(PROVIDERS.values())
