"""
AI Provider Router - route a conversation to a configured provider.

Provides:
- complete(): one reply for a conversation, or a typed ProviderError
- test_credential(): live, bounded check of a key; never touches stored config
- save_provider() / delete_provider(): admin config flow with implicit test
- list_public_providers(): the only provider view exposed to end users

Gating: a provider must be enabled and carry a credential before any
outbound call is made; the disabled check comes first.

Usage:
    from services.ai_router import get_ai_router

    router = await get_ai_router()
    reply = await router.complete(ProviderId.GROQ, session.messages)
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence

from config import runtime_config
from errors import (
    NotFoundError,
    ProviderDisabledError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnconfiguredError,
)
from logging_config import log_provider
from routers.chat_orchestration.session import (
    MASK_PREFIX,
    ChatSession,
    Message,
    MessageSender,
    ProviderConfig,
    ProviderHealth,
    ProviderId,
    parse_enum,
    utcnow,
)
from services.chat_store import ChatStore
from services.llm_client import ProviderClient, build_client
from services.llm_config import ProviderSpec, get_provider_spec, list_provider_specs

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ProviderSpec, str, float], ProviderClient]

_ROLE_FOR_SENDER = {
    MessageSender.USER: "user",
    MessageSender.AI: "assistant",
    MessageSender.OPERATOR: "assistant",
}


def build_conversation(
    history: Sequence[Message], system_prompt: str, window: int
) -> List[Dict[str, str]]:
    """Translate a session log into provider chat messages.

    System notices are bookkeeping for the widget and are not sent upstream.
    """
    turns = [m for m in history if m.sender in _ROLE_FOR_SENDER]
    messages = [{"role": "system", "content": system_prompt}]
    for m in turns[-window:]:
        messages.append({"role": _ROLE_FOR_SENDER[m.sender], "content": m.content})
    return messages


class AIProviderRouter:
    """Maps provider identifiers to live clients and normalises failures."""

    def __init__(
        self,
        store: ChatStore,
        client_factory: ClientFactory = build_client,
        timeout_s: Optional[float] = None,
    ):
        self.store = store
        self._client_factory = client_factory
        self._timeout_override = timeout_s

    @property
    def timeout_s(self) -> float:
        return self._timeout_override or runtime_config.provider_timeout_s

    async def _routable_config(self, provider_id: ProviderId) -> ProviderConfig:
        config = await self.store.get_provider_config(provider_id)
        if config is not None and not config.enabled:
            raise ProviderDisabledError(
                f"{provider_id.value} is disabled", provider_id=provider_id.value
            )
        if config is None or not config.credential:
            raise ProviderUnconfiguredError(
                f"{provider_id.value} is not configured", provider_id=provider_id.value
            )
        return config

    async def _call(self, client: ProviderClient, coro, provider_id: str):
        """Await a client call under the router timeout, always closing the client."""
        start = time.monotonic()
        log_provider(logger, "start", provider_id)
        try:
            result = await asyncio.wait_for(coro, timeout=self.timeout_s)
        except asyncio.TimeoutError:
            log_provider(logger, "fail", provider_id, time.monotonic() - start)
            raise ProviderTimeoutError(
                f"{provider_id} did not answer within {self.timeout_s:.0f}s",
                provider_id=provider_id,
            )
        except ProviderError:
            log_provider(logger, "fail", provider_id, time.monotonic() - start)
            raise
        finally:
            await client.aclose()
        log_provider(logger, "end", provider_id, time.monotonic() - start)
        return result

    # =========================================================================
    # Routing
    # =========================================================================

    async def complete(
        self,
        provider_id,
        history: Sequence[Message],
        credential_override: str = "",
    ) -> str:
        """Produce one reply for ``history``.

        Raises:
            ProviderDisabledError: provider switched off (no outbound call)
            ProviderUnconfiguredError: no stored config or empty credential
            ProviderTimeoutError / ProviderRejectedError: upstream failure
        """
        pid = parse_enum(ProviderId, provider_id, "provider_id")
        config = await self._routable_config(pid)
        spec = get_provider_spec(pid)

        messages = build_conversation(
            history, runtime_config.ai_system_prompt, runtime_config.ai_history_window
        )
        params = runtime_config.get_generation_params()
        client = self._client_factory(spec, credential_override or config.credential, self.timeout_s)
        return await self._call(
            client,
            client.complete(
                messages,
                model=spec.resolve_model(config.model_override),
                temperature=params["temperature"],
                max_tokens=params["max_tokens"],
            ),
            pid.value,
        )

    async def select_provider(self, session: ChatSession) -> ProviderId:
        """The session's chosen provider, else the first enabled one."""
        if session.ai_config and session.ai_config.selected_provider:
            return session.ai_config.selected_provider
        enabled = await self.list_enabled_providers()
        if not enabled:
            raise ProviderUnconfiguredError("No AI provider is enabled")
        return enabled[0].provider_id

    async def test_credential(self, provider_id, credential: str) -> Dict[str, Any]:
        """Live check of ``credential`` against the provider's model listing.

        Returns:
            {"ok": bool, "detail": str, "models": int}

        Raises:
            ProviderTimeoutError: the provider did not answer in time
        """
        spec = get_provider_spec(provider_id)
        credential = (credential or "").strip()
        if not credential:
            return {"ok": False, "detail": "Credential is empty", "models": 0}

        client = self._client_factory(spec, credential, self.timeout_s)
        try:
            models = await self._call(client, client.list_models(), spec.provider_id.value)
        except ProviderTimeoutError:
            raise
        except ProviderError as e:
            return {"ok": False, "detail": str(e), "models": 0}
        return {"ok": True, "detail": f"{spec.name} credential accepted", "models": len(models)}

    # =========================================================================
    # Provider configuration (admin)
    # =========================================================================

    async def list_enabled_providers(self) -> List[ProviderConfig]:
        """Enabled providers with a credential, in catalog order."""
        configs = {c.provider_id: c for c in await self.store.list_provider_configs()}
        return [
            configs[spec.provider_id]
            for spec in list_provider_specs()
            if spec.provider_id in configs and configs[spec.provider_id].is_routable
        ]

    async def list_public_providers(self) -> List[Dict[str, Any]]:
        """End-user view: no credentials, no disabled providers."""
        result = []
        for config in await self.list_enabled_providers():
            spec = get_provider_spec(config.provider_id)
            result.append({
                "provider_id": spec.provider_id.value,
                "name": spec.name,
                "description": spec.description,
                "health": config.health.value,
            })
        return result

    async def list_providers_admin(self) -> List[Dict[str, Any]]:
        """Every catalog entry merged with its stored config (credential masked)."""
        configs = {c.provider_id: c for c in await self.store.list_provider_configs()}
        result = []
        for spec in list_provider_specs():
            config = configs.get(spec.provider_id) or ProviderConfig(provider_id=spec.provider_id)
            entry = config.to_admin_dict()
            entry.update({
                "name": spec.name,
                "description": spec.description,
                "default_model": spec.default_model,
                "configured": spec.provider_id in configs,
            })
            result.append(entry)
        return result

    async def save_provider(
        self,
        provider_id,
        credential: Optional[str] = None,
        model_override: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> ProviderConfig:
        """Replace a provider's stored config.

        ``None`` keeps the stored value; a masked credential echoed back by the
        admin UI counts as unchanged. A new credential is tested before the
        record is written and the outcome stored as ``health``; a failing key
        is still saved.
        """
        spec = get_provider_spec(provider_id)
        pid = spec.provider_id
        existing = await self.store.get_provider_config(pid) or ProviderConfig(provider_id=pid)

        new_credential = existing.credential
        if credential is not None and not credential.startswith(MASK_PREFIX):
            new_credential = credential.strip()
        updated = replace(
            existing,
            credential=new_credential,
            model_override=existing.model_override if model_override is None else model_override.strip(),
            enabled=existing.enabled if enabled is None else bool(enabled),
        )
        updated.validate()

        if new_credential != existing.credential:
            if new_credential:
                try:
                    result = await self.test_credential(pid, new_credential)
                    ok, detail = result["ok"], result["detail"]
                except ProviderTimeoutError as e:
                    ok, detail = False, str(e)
                updated.health = ProviderHealth.ACTIVE if ok else ProviderHealth.ERROR
                updated.health_detail = detail
                updated.last_checked_at = utcnow()
            else:
                updated.health = ProviderHealth.UNTESTED
                updated.health_detail = ""
                updated.last_checked_at = None

        saved = await self.store.save_provider_config(updated)
        logger.info(
            f"Provider {pid.value} saved: enabled={saved.enabled} health={saved.health.value}"
        )
        return saved

    async def delete_provider(self, provider_id) -> None:
        pid = parse_enum(ProviderId, provider_id, "provider_id")
        if not await self.store.delete_provider_config(pid):
            raise NotFoundError(
                "Provider is not configured", resource_type="provider", resource_id=pid.value
            )
        logger.info(f"Provider {pid.value} deleted")


# Singleton instance
_router: Optional[AIProviderRouter] = None


async def get_ai_router() -> AIProviderRouter:
    """Get the router singleton bound to the active chat store."""
    global _router
    if _router is None:
        from services.chat_store import get_chat_store

        _router = AIProviderRouter(await get_chat_store())
    return _router


def set_ai_router(router: Optional[AIProviderRouter]) -> None:
    global _router
    _router = router
