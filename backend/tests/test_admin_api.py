"""
REST tests for /api/admin: operator accounts and provider configuration.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from routers.chat_orchestration.session import ProviderId

from conftest import bearer, issue_token, make_app


@pytest.fixture
def client(wired, auth_manager):
    with TestClient(make_app()) as test_client:
        yield test_client


def _register(client, username, password="correct-horse", token=None):
    headers = bearer(token) if token else {}
    return client.post(
        "/api/admin/auth/register", json={"username": username, "password": password}, headers=headers
    )


class TestFirstRunSetup:
    def test_first_account_is_admin(self, client):
        assert client.get("/api/admin/auth/status").json() == {"setup_required": True}

        response = _register(client, "ana")

        assert response.status_code == 201
        body = response.json()
        assert body["role"] == "admin"
        assert body["token"]
        assert client.get("/api/admin/auth/status").json() == {"setup_required": False}

    def test_login_blocked_until_setup(self, client):
        response = client.post("/api/admin/auth/login", json={"username": "ana", "password": "whatever1"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTH_INVALID_CREDENTIALS"

    def test_invalid_username(self, client):
        response = _register(client, "9lives")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_INVALID_FORMAT"

    def test_short_password(self, client):
        assert _register(client, "ana", password="short").status_code == 400


class TestAccounts:
    def test_only_admin_adds_operators(self, client):
        admin = _register(client, "ana").json()

        assert _register(client, "sam").status_code == 401

        created = _register(client, "sam", token=admin["token"])
        assert created.status_code == 201
        assert created.json()["role"] == "operator"

        forbidden = _register(client, "lee", token=created.json()["token"])
        assert forbidden.status_code == 403
        assert forbidden.json()["error"]["code"] == "AUTH_FORBIDDEN"

    def test_duplicate_username(self, client):
        admin = _register(client, "ana").json()
        assert _register(client, "ana", token=admin["token"]).status_code == 400

    def test_login_and_verify(self, client):
        _register(client, "ana")

        bad = client.post("/api/admin/auth/login", json={"username": "ana", "password": "wrong-pass"})
        assert bad.status_code == 401

        good = client.post("/api/admin/auth/login", json={"username": "ana", "password": "correct-horse"})
        assert good.status_code == 200
        token = good.json()["token"]

        verified = client.get("/api/admin/auth/verify", headers=bearer(token)).json()
        assert verified["valid"] is True
        assert verified["username"] == "ana"
        assert verified["role"] == "admin"

        assert client.get("/api/admin/auth/verify").json() == {"valid": False}
        assert client.get("/api/admin/auth/verify", headers=bearer("junk")).json() == {"valid": False}


class TestAuthManager:
    def test_secret_persisted_and_reused(self, auth_manager, tmp_path):
        from services.admin_auth import AdminAuthManager

        token = auth_manager.create_token(1, "ana", "admin")["token"]

        reloaded = AdminAuthManager(auth_file=tmp_path / "auth" / "operator_auth.json")
        reloaded.initialize()

        assert reloaded.verify_token(token)["username"] == "ana"

    def test_env_secret_wins(self, tmp_path, monkeypatch):
        from services.admin_auth import AdminAuthManager

        monkeypatch.setenv("JWT_SECRET", "from-env")
        manager = AdminAuthManager(auth_file=tmp_path / "none.json")
        manager.initialize()

        assert not (tmp_path / "none.json").exists()
        assert manager.verify_token(manager.create_token(3, "sam", "operator")["token"]) == {
            "operator_id": "3",
            "username": "sam",
            "role": "operator",
        }

    def test_memory_fallback_login(self, auth_manager):
        asyncio.run(auth_manager.register_user("ana", "correct-horse"))
        assert auth_manager.db_available is False
        assert asyncio.run(auth_manager.verify_login("ana", "correct-horse"))["role"] == "admin"
        assert asyncio.run(auth_manager.verify_login("ana", "nope-nope")) is None

    def test_operator_lookup(self, auth_manager):
        from errors import NotFoundError

        asyncio.run(auth_manager.register_user("ana", "correct-horse"))
        sam = asyncio.run(auth_manager.register_user("sam", "correct-horse"))

        found = asyncio.run(auth_manager.get_operator(str(sam["id"])))
        assert found == {"operator_id": str(sam["id"]), "username": "sam", "role": "operator"}
        assert asyncio.run(auth_manager.get_operator("not-a-number")) is None
        assert asyncio.run(auth_manager.get_operator("42")) is None

        with pytest.raises(NotFoundError) as exc_info:
            asyncio.run(auth_manager.require_operator("42"))
        assert exc_info.value.code.value == "NOT_FOUND_OPERATOR"


class TestProviderConfig:
    """Admin-only provider management; key checks go to the fake client factory."""

    def test_operator_role_is_forbidden(self, client, auth_manager):
        issue_token(auth_manager, "ana")
        operator = issue_token(auth_manager, "sam")
        response = client.get("/api/admin/ai-config", headers=bearer(operator["token"]))
        assert response.status_code == 403

    def test_configure_enable_and_list(self, client, auth_manager, providers, store):
        admin = issue_token(auth_manager, "ana")
        headers = bearer(admin["token"])

        saved = client.put(
            "/api/admin/ai-config/groq",
            json={"credential": "gsk-live-key-9876", "enabled": True},
            headers=headers,
        ).json()
        assert saved["provider"]["enabled"] is True
        assert saved["provider"]["health"] == "active"
        assert saved["provider"]["credential"].endswith("9876")
        assert "gsk-live-key-9876" not in str(saved)
        assert providers.key_checks == [{"provider": "groq", "api_key": "gsk-live-key-9876"}]

        listing = client.get("/api/admin/ai-config", headers=headers).json()
        by_id = {p["provider_id"]: p for p in listing["providers"]}
        assert set(by_id) == {p.value for p in ProviderId}
        assert by_id["groq"]["configured"] is True

        public = client.get("/api/chat/providers").json()
        assert [p["provider_id"] for p in public["providers"]] == ["groq"]

        stored = asyncio.run(store.get_provider_config(ProviderId.GROQ))
        assert stored.credential == "gsk-live-key-9876"

    def test_enable_without_credential(self, client, auth_manager):
        admin = issue_token(auth_manager, "ana")
        response = client.put("/api/admin/ai-config/openai", json={"enabled": True}, headers=bearer(admin["token"]))
        assert response.status_code == 400

    def test_unknown_provider(self, client, auth_manager):
        admin = issue_token(auth_manager, "ana")
        response = client.put(
            "/api/admin/ai-config/anthropic", json={"credential": "x"}, headers=bearer(admin["token"])
        )
        assert response.status_code == 400

    def test_credential_test_endpoint(self, client, auth_manager, providers):
        admin = issue_token(auth_manager, "ana")
        providers.reject("deepseek", kind="list_models")

        body = client.post(
            "/api/admin/ai-config/test",
            json={"provider_id": "deepseek", "credential": "sk-bad"},
            headers=bearer(admin["token"]),
        ).json()

        assert body["success"] is True
        assert body["provider_id"] == "deepseek"
        assert body["ok"] is False

    def test_delete(self, client, auth_manager):
        admin = issue_token(auth_manager, "ana")
        headers = bearer(admin["token"])
        client.put("/api/admin/ai-config/gemini", json={"credential": "AIza-1"}, headers=headers)

        assert client.delete("/api/admin/ai-config/gemini", headers=headers).json()["deleted"] is True
        missing = client.delete("/api/admin/ai-config/gemini", headers=headers)
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "NOT_FOUND_PROVIDER"
