"""
Tests for Redis-backed rate limiting.

A small in-process counter stands in for the Redis manager.
"""

import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

import services.redis_client as redis_client
from config import runtime_config
from middleware.rate_limit import (
    RateLimitMiddleware,
    RateLimitType,
    check_message_limit,
    check_rate_limit,
)


class CountingRedis:
    fallback_mode = False

    def __init__(self):
        self.counts = {}
        self.ttls = {}

    async def incr(self, key):
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key, ttl):
        self.ttls[key] = ttl
        return True

    async def get(self, key):
        value = self.counts.get(key)
        return str(value) if value is not None else None

    async def get_ttl(self, key):
        return self.ttls.get(key, -2)


class FallbackRedis:
    fallback_mode = True


@pytest.fixture
def counting_redis(monkeypatch):
    fake = CountingRedis()
    monkeypatch.setattr(redis_client, "_redis_manager", fake)
    return fake


class TestCheckRateLimit:
    def test_fixed_window(self, counting_redis):
        async def scenario():
            return [
                (await check_rate_limit(RateLimitType.CHAT_INIT, "1.2.3.4", limit=2, window_seconds=60))[0]
                for _ in range(3)
            ]

        assert asyncio.run(scenario()) == [True, True, False]
        assert counting_redis.ttls == {"atelier:rl:init:1.2.3.4": 60}

    def test_identifiers_are_independent(self, counting_redis):
        async def scenario():
            await check_rate_limit(RateLimitType.WS_MESSAGE, "s1", limit=1)
            return await check_rate_limit(RateLimitType.WS_MESSAGE, "s2", limit=1)

        assert asyncio.run(scenario())[0] is True

    def test_fallback_fails_open_in_development(self, monkeypatch):
        monkeypatch.setattr(redis_client, "_redis_manager", FallbackRedis())
        monkeypatch.setattr(runtime_config, "atelier_env", "development")
        allowed, _, _ = asyncio.run(check_rate_limit(RateLimitType.CHAT_INIT, "ip"))
        assert allowed is True

    def test_fallback_fails_closed_in_production(self, monkeypatch):
        monkeypatch.setattr(redis_client, "_redis_manager", FallbackRedis())
        monkeypatch.setattr(runtime_config, "atelier_env", "production")
        allowed, _, _ = asyncio.run(check_rate_limit(RateLimitType.CHAT_INIT, "ip"))
        assert allowed is False

    def test_ws_message_limit_message(self, counting_redis, monkeypatch):
        monkeypatch.setattr(runtime_config, "rate_limit_ws_msg", 1)

        async def scenario():
            await check_message_limit("s1")
            return await check_message_limit("s1")

        allowed, message = asyncio.run(scenario())
        assert allowed is False
        assert message


class TestMiddleware:
    def _client(self):
        app = FastAPI()
        app.add_middleware(RateLimitMiddleware)

        @app.post("/api/chat/initialize")
        async def initialize():
            return {"success": True}

        @app.get("/health")
        async def health():
            return {"status": "ok"}

        return TestClient(app)

    def test_limited_path(self, counting_redis, monkeypatch):
        monkeypatch.setattr(runtime_config, "rate_limit_chat_init", 1)
        client = self._client()

        first = client.post("/api/chat/initialize")
        second = client.post("/api/chat/initialize")

        assert first.status_code == 200
        assert first.headers["x-ratelimit-limit"] == "1"
        assert second.status_code == 429
        assert second.json()["error"]["code"] == "RATE_LIMITED"
        assert second.headers["retry-after"] == "60"

    def test_other_paths_untouched(self, counting_redis):
        response = self._client().get("/health")
        assert response.status_code == 200
        assert counting_redis.counts == {}

    def test_rest_message_limited_per_ip(self, counting_redis, monkeypatch):
        monkeypatch.setattr(runtime_config, "rate_limit_chat_message", 2)
        app = FastAPI()
        app.add_middleware(RateLimitMiddleware)

        @app.post("/api/chat/message")
        async def message():
            return {"success": True}

        client = TestClient(app)
        codes = [client.post("/api/chat/message").status_code for _ in range(3)]

        assert codes == [200, 200, 429]
        assert counting_redis.ttls == {"atelier:rl:rest:testclient": 60}


class TestRestMessageSessionLimit:
    """REST messages draw from the same per-session budget as socket frames."""

    def test_shared_budget_with_socket(self, counting_redis, monkeypatch, wired, store):
        from routers.chat_orchestration.session import ChatMode, Participant

        from conftest import PARTICIPANT, make_app

        monkeypatch.setattr(runtime_config, "rate_limit_ws_msg", 2)
        session = asyncio.run(store.create_session(Participant.from_dict(PARTICIPANT), ChatMode.HUMAN))
        asyncio.run(check_message_limit(session.session_id))

        client = TestClient(make_app())
        body = {"session_id": session.session_id, "content": "hello"}
        first = client.post("/api/chat/message", json=body)
        second = client.post("/api/chat/message", json=body)

        assert first.status_code == 200
        assert second.status_code == 429
        assert second.json()["error"]["code"] == "RATE_LIMITED"
        assert len(asyncio.run(store.get_history(session.session_id))) == 1
