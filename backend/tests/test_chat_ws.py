"""
WebSocket endpoint tests through Starlette's TestClient.

Sessions are created over REST on the same client so every frame is
produced by one event loop.
"""

import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from routers.chat_orchestration.session import utcnow

from conftest import PARTICIPANT, bearer, enable_provider, issue_token, make_app


@pytest.fixture
def client(wired, gateway, auth_manager):
    gateway.set_token_verifier(auth_manager.verify_token)
    with TestClient(make_app()) as test_client:
        yield test_client


def _start(client, chat_type="human", ai_config=None):
    body = {"user_info": PARTICIPANT, "chat_type": chat_type}
    if ai_config:
        body["ai_config"] = ai_config
    response = client.post("/api/chat/initialize", json=body)
    assert response.status_code == 201
    return response.json()["session"]["session_id"]


class TestUserSocket:
    def test_join_and_send(self, client):
        session_id = _start(client)

        with client.websocket_connect("/ws/chat") as ws:
            ws.send_json({"type": "join-chat", "session_id": session_id, "role": "user"})
            joined = ws.receive_json()
            assert joined["type"] == "joined"
            assert joined["status"] == "waiting"
            assert joined["members"] == []

            ws.send_json({"type": "new-message", "content": "Hello there"})
            event = ws.receive_json()

        assert event["type"] == "message-received"
        assert event["session_id"] == session_id
        assert event["message"]["sender"] == "user"
        assert event["message"]["seq"] == 1

    def test_ai_session_gets_fallback_notice(self, client):
        session_id = _start(client, chat_type="ai")

        with client.websocket_connect("/ws/chat") as ws:
            ws.send_json({"type": "join-chat", "session_id": session_id})
            ws.receive_json()
            ws.send_json({"type": "new-message", "content": "Anyone?"})
            first = ws.receive_json()
            second = ws.receive_json()

        assert first["message"]["sender"] == "user"
        assert second["message"]["sender"] == "system"

    def test_ai_session_reply(self, client, store, providers):
        enable_provider(store, "groq")
        providers.outcomes["groq"] = "Hi, I am the assistant"
        session_id = _start(client, chat_type="ai", ai_config={"selected_provider": "groq"})

        with client.websocket_connect("/ws/chat") as ws:
            ws.send_json({"type": "join-chat", "session_id": session_id})
            ws.receive_json()
            ws.send_json({"type": "new-message", "content": "Who are you?"})
            ws.receive_json()
            reply = ws.receive_json()

        assert reply["message"]["sender"] == "ai"
        assert reply["message"]["provider_used"] == "groq"
        assert reply["message"]["content"] == "Hi, I am the assistant"


class TestFrameErrors:
    def test_invalid_json(self, client):
        with client.websocket_connect("/ws/chat") as ws:
            ws.send_text("not json")
            error = ws.receive_json()
        assert error == {
            "type": "error",
            "code": "VALIDATION_INVALID_FORMAT",
            "message": "Frames must be JSON objects",
        }

    def test_unknown_frame_type(self, client):
        with client.websocket_connect("/ws/chat") as ws:
            ws.send_json({"type": "dance"})
            error = ws.receive_json()
        assert error["type"] == "error"
        assert "dance" in error["message"]

    def test_message_before_join(self, client):
        with client.websocket_connect("/ws/chat") as ws:
            ws.send_json({"type": "new-message", "content": "hi"})
            error = ws.receive_json()
        assert error["code"] == "VALIDATION_MISSING_PARAM"

    def test_join_unknown_session(self, client):
        with client.websocket_connect("/ws/chat") as ws:
            ws.send_json({"type": "join-chat", "session_id": "missing"})
            error = ws.receive_json()
        assert error["code"] == "NOT_FOUND_SESSION"

    def test_socket_survives_errors(self, client):
        session_id = _start(client)
        with client.websocket_connect("/ws/chat") as ws:
            ws.send_json({"type": "mark-read", "message_ids": "m1"})
            assert ws.receive_json()["type"] == "error"
            ws.send_json({"type": "join-chat", "session_id": session_id})
            assert ws.receive_json()["type"] == "joined"


class TestOperatorSocket:
    def test_authenticated_operator_conversation(self, client, auth_manager):
        operator = issue_token(auth_manager, "sam")
        session_id = _start(client)
        client.post(f"/api/chat/admin/{session_id}/assign", headers=bearer(operator["token"]))

        with client.websocket_connect("/ws/chat") as user_ws:
            user_ws.send_json({"type": "join-chat", "session_id": session_id, "role": "user"})
            user_ws.receive_json()

            with client.websocket_connect("/ws/chat") as op_ws:
                op_ws.send_json({"type": "authenticate-admin", "token": operator["token"]})
                auth = op_ws.receive_json()
                assert auth["type"] == "auth-success"
                assert auth["username"] == "sam"
                assert auth["role"] == "admin"

                op_ws.send_json({"type": "join-chat", "session_id": session_id, "role": "admin"})
                joined = op_ws.receive_json()
                assert joined["role"] == "operator"
                assert joined["members"] == ["user"]
                assert user_ws.receive_json() == {
                    "type": "peer-joined", "session_id": session_id, "role": "operator",
                }

                staffed = client.get(
                    f"/api/chat/admin/{session_id}/presence", headers=bearer(operator["token"])
                ).json()
                assert staffed["staffed"] is True

                op_ws.send_json({"type": "new-message", "content": "How can I help?"})
                for ws in (user_ws, op_ws):
                    event = ws.receive_json()
                    assert event["type"] == "message-received"
                    assert event["message"]["sender"] == "operator"

                status = client.get("/api/chat/admin/status", headers=bearer(operator["token"])).json()
                assert status["online"] == 1

    def test_heartbeat_keeps_operator_online(self, client, auth_manager, store):
        operator = issue_token(auth_manager, "sam")
        headers = bearer(operator["token"])

        with client.websocket_connect("/ws/chat") as op_ws:
            op_ws.send_json({"type": "authenticate-admin", "token": operator["token"]})
            op_ws.receive_json()

            # Last ping long ago: the dashboard shows the operator as away
            record = asyncio.run(store.get_presence(operator["operator_id"]))
            record.last_seen_at = utcnow() - timedelta(hours=1)
            asyncio.run(store.save_presence(record))
            assert client.get("/api/chat/admin/status", headers=headers).json()["online"] == 0

            op_ws.send_json({"type": "heartbeat"})
            assert op_ws.receive_json() == {"type": "heartbeat-ack", "operator": True}

            status = client.get("/api/chat/admin/status", headers=headers).json()
            assert status["online"] == 1
            assert status["operators"][0]["status"] == "online"

    def test_heartbeat_from_user_socket(self, client):
        with client.websocket_connect("/ws/chat") as ws:
            ws.send_json({"type": "heartbeat"})
            assert ws.receive_json() == {"type": "heartbeat-ack", "operator": False}

    def test_bad_token(self, client):
        with client.websocket_connect("/ws/chat") as ws:
            ws.send_json({"type": "authenticate-admin", "token": "forged"})
            reply = ws.receive_json()
        assert reply["type"] == "auth-error"
        assert reply["code"] == "AUTH_INVALID_TOKEN"

    def test_pending_operator_cannot_post(self, client):
        session_id = _start(client)
        with client.websocket_connect("/ws/chat") as ws:
            ws.send_json({"type": "join-chat", "session_id": session_id, "role": "operator"})
            joined = ws.receive_json()
            assert joined["role"] == "pending_operator"
            ws.send_json({"type": "new-message", "content": "I am staff, honest"})
            error = ws.receive_json()
        assert error["code"] == "AUTH_MISSING_TOKEN"

        history = client.get(f"/api/chat/{session_id}/history").json()
        assert history["messages"] == []

    def test_operator_lobby_sees_new_requests(self, client, auth_manager):
        operator = issue_token(auth_manager, "sam")
        with client.websocket_connect("/ws/chat") as op_ws:
            op_ws.send_json({"type": "authenticate-admin", "token": operator["token"]})
            op_ws.receive_json()
            session_id = _start(client)
            request = op_ws.receive_json()
        assert request["type"] == "chat-request"
        assert request["session_id"] == session_id
        assert request["participant"]["email"] == PARTICIPANT["email"]
