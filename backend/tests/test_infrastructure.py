"""
Tests for runtime config, store selection, the sweeper loop and the app shell.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from config import RuntimeConfig
from services.chat_store import MemoryChatStore, PostgresChatStore, get_chat_store


class TestRuntimeConfig:
    def test_update_validates_ranges(self):
        config = RuntimeConfig()
        result = config.update(provider_timeout_s=15.0, typing_timeout_s=500.0, nonsense=1, _lock=None)

        assert result["updated"] == ["provider_timeout_s"]
        assert set(result["ignored"]) == {"typing_timeout_s", "nonsense", "_lock"}
        assert config.provider_timeout_s == 15.0

    def test_reset_to_defaults(self):
        config = RuntimeConfig()
        default = config.ai_history_window
        config.update(ai_history_window=5)
        changes = config.reset_to_defaults()["changes"]
        assert changes["ai_history_window"] == {"old": 5, "new": default}

    def test_env_defaults(self, monkeypatch):
        monkeypatch.setenv("SESSION_INACTIVE_HOURS", "24")
        monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example")
        monkeypatch.setenv("ATELIER_ENV", "Production")
        config = RuntimeConfig()

        assert config.session_inactive_hours == 24
        assert config.get_cors_origins() == ["https://a.example", "https://b.example"]
        assert config.is_production is True
        assert "database_url" not in config.to_dict()


class TestChatStoreSelection:
    def test_memory_fallback(self):
        db = MagicMock(available=False)
        with patch("services.database.get_database", AsyncMock(return_value=db)):
            store = asyncio.run(get_chat_store())
        assert isinstance(store, MemoryChatStore)

    def test_postgres_when_available(self):
        db = MagicMock(available=True)
        with patch("services.database.get_database", AsyncMock(return_value=db)):
            store = asyncio.run(get_chat_store())
        assert isinstance(store, PostgresChatStore)
        assert store.db is db


class TestSweepLoop:
    def test_sweeps_until_cancelled(self):
        import main

        coordinator = MagicMock()
        coordinator.sweep_inactive = AsyncMock(side_effect=[2, RuntimeError("db down"), 0])
        sleeps = AsyncMock(side_effect=[None, None, None, asyncio.CancelledError()])

        with patch.object(main, "get_coordinator", AsyncMock(return_value=coordinator)), \
                patch.object(main.asyncio, "sleep", sleeps):
            with pytest.raises(asyncio.CancelledError):
                asyncio.run(main.periodic_session_sweep(60, 72))

        assert coordinator.sweep_inactive.await_count == 3
        coordinator.sweep_inactive.assert_awaited_with(72)


class TestAppShell:
    """The assembled app without its lifespan (no auth file, no sweeper)."""

    def test_health_and_security_headers(self, wired):
        import main

        response = TestClient(main.app).get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["service"] == "atelier"
        assert set(body["checks"]) == {"redis", "postgres"}
        assert body["active_rooms"] == 0
        assert response.headers["x-frame-options"] == "DENY"

    def test_oversized_body_rejected(self, wired):
        import main

        response = TestClient(main.app).post(
            "/api/chat/message",
            content=b"x" * (main.MAX_BODY_SIZE_API + 1),
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 413
        assert response.json()["error"]["code"] == "VALIDATION_OUT_OF_RANGE"
