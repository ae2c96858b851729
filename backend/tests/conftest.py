"""
Shared pytest fixtures for the chat backend tests.

Infrastructure is pinned to its fallback modes before any project import:
memory chat store, rate limiting fail-open, no provider network calls.
"""

import os

os.environ["ATELIER_ENV"] = "development"
os.environ["REDIS_ENABLED"] = "false"
os.environ["DATABASE_ENABLED"] = "false"

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from errors import ProviderRejectedError
from routers.chat_orchestration.coordinator import ChatCoordinator, set_coordinator
from routers.chat_orchestration.gateway import Connection, Gateway, set_gateway
from routers.chat_orchestration.session import ProviderConfig, ProviderId
from services.admin_auth import set_auth_manager
from services.ai_router import AIProviderRouter, set_ai_router
from services.chat_store import MemoryChatStore, set_chat_store
from services.llm_client import ProviderClient
from services.presence import PresenceTracker, set_presence_tracker


PARTICIPANT = {"name": "Ada Lovelace", "email": "ada@example.com", "country": "UK"}

# Sentinel: the fake client never answers (exercises the router timeout)
HANG = object()


class FakeProviderClient(ProviderClient):
    """Scripted provider client; records every conversation it is asked about."""

    def __init__(self, spec, api_key, timeout, script):
        super().__init__(spec, api_key, timeout)
        self._script = script

    async def _outcome(self, kind: str):
        outcome = self._script.outcomes.get((self.provider_id, kind), self._script.outcomes.get(self.provider_id))
        if outcome is HANG:
            await asyncio.sleep(3600)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def complete(self, messages, model, temperature, max_tokens) -> str:
        self._script.calls.append({
            "provider": self.provider_id,
            "api_key": self._api_key,
            "model": model,
            "messages": messages,
        })
        outcome = await self._outcome("complete")
        return "Hello from the assistant" if outcome is None else outcome

    async def list_models(self) -> List[str]:
        self._script.key_checks.append({"provider": self.provider_id, "api_key": self._api_key})
        outcome = await self._outcome("list_models")
        return ["model-a", "model-b"] if outcome is None else outcome

    async def aclose(self) -> None:
        self._script.closed += 1


class FakeProviders:
    """Client factory for AIProviderRouter.

    ``outcomes`` maps a provider id (or ``(provider id, "complete"|"list_models")``)
    to a reply, an exception instance, or HANG.
    """

    def __init__(self):
        self.outcomes: Dict[Any, Any] = {}
        self.calls: List[Dict[str, Any]] = []
        self.key_checks: List[Dict[str, Any]] = []
        self.closed = 0

    def __call__(self, spec, api_key, timeout):
        return FakeProviderClient(spec, api_key, timeout, self)

    def reject(self, provider_id: str, kind: Optional[str] = None, status_code: int = 401):
        key = (provider_id, kind) if kind else provider_id
        self.outcomes[key] = ProviderRejectedError(
            f"{provider_id} rejected the request", provider_id=provider_id, status_code=status_code
        )


class FakeWebSocket:
    """Stand-in for a Starlette WebSocket inside Gateway tests."""

    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, data: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def events(self, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        if event_type is None:
            return list(self.sent)
        return [e for e in self.sent if e["type"] == event_type]


def make_connection(fail: bool = False) -> Connection:
    return Connection(websocket=FakeWebSocket(fail=fail))


def enable_provider(store, provider_id: str, credential: str = "sk-test-1234", enabled: bool = True):
    """Store a provider config directly (no credential check)."""
    config = ProviderConfig(provider_id=ProviderId(provider_id), credential=credential, enabled=enabled)
    return asyncio.run(store.save_provider_config(config))


@pytest.fixture(autouse=True)
def reset_singletons():
    """Every test starts from fresh process-wide singletons."""
    yield
    set_coordinator(None)
    set_gateway(None)
    set_presence_tracker(None)
    set_ai_router(None)
    set_chat_store(None)
    set_auth_manager(None)


@pytest.fixture
def store():
    return MemoryChatStore()


@pytest.fixture
def gateway():
    return Gateway(typing_timeout_s=0.05)


@pytest.fixture
def providers():
    return FakeProviders()


@pytest.fixture
def ai_router(store, providers):
    return AIProviderRouter(store, client_factory=providers, timeout_s=0.2)


@pytest.fixture
def presence(store, gateway):
    return PresenceTracker(store, gateway)


@pytest.fixture
def coordinator(store, ai_router, presence, gateway):
    return ChatCoordinator(store=store, router=ai_router, presence=presence, gateway=gateway)


@pytest.fixture
def wired(store, ai_router, presence, gateway, coordinator):
    """Install the fixtures as the process singletons used by the routers."""
    set_chat_store(store)
    set_ai_router(ai_router)
    set_gateway(gateway)
    set_presence_tracker(presence)
    set_coordinator(coordinator)
    return coordinator


def make_app():
    """Minimal app with the chat routers and the error envelope, no lifespan."""
    from fastapi import FastAPI

    from errors import register_exception_handlers
    from routers.admin import router as admin_router
    from routers.chat import router as chat_router
    from routers.sessions import router as sessions_router

    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(chat_router)
    app.include_router(sessions_router)
    app.include_router(admin_router)
    return app


@pytest.fixture
def auth_manager(tmp_path, monkeypatch):
    """Memory-backed auth manager with a throwaway secret file and cheap hashing."""
    import services.admin_auth as admin_auth

    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.setattr(admin_auth, "BCRYPT_ROUNDS", 4)
    manager = admin_auth.AdminAuthManager(auth_file=tmp_path / "auth" / "operator_auth.json")
    manager.initialize()
    asyncio.run(manager.initialize_async())
    set_auth_manager(manager)
    return manager


def issue_token(manager, username: str, password: str = "correct-horse") -> Dict[str, Any]:
    """Register an account and return {operator_id, username, role, token}."""
    user = asyncio.run(manager.register_user(username, password))
    token = manager.create_token(user["id"], user["username"], user["role"])["token"]
    return {"operator_id": str(user["id"]), "username": user["username"], "role": user["role"], "token": token}


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
