"""
Wire-level tests for the provider clients using httpx.MockTransport.
"""

import asyncio
import json

import httpx
import pytest

from errors import ProviderRejectedError, ProviderTimeoutError
from routers.chat_orchestration.session import ProviderId
from services.llm_client import (
    GeminiClient,
    OpenAICompatClient,
    _strip_thinking,
    _translate_messages_for_gemini,
    build_client,
)
from services.llm_config import PROVIDERS, get_provider_spec

CONVERSATION = [
    {"role": "system", "content": "Be brief"},
    {"role": "user", "content": "Hi"},
    {"role": "assistant", "content": "Hello"},
    {"role": "user", "content": "Prices?"},
]


def _chat_completion(content):
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "gpt-3.5-turbo",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
        ],
    }


def _client_for(handler, provider="openai"):
    spec = get_provider_spec(provider)
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return build_client(spec, "key-123", timeout=5.0, http_client=http)


class TestHelpers:
    def test_strip_thinking(self):
        assert _strip_thinking("<think>plan</think>Answer") == "Answer"
        assert _strip_thinking("") == ""

    def test_gemini_translation(self):
        body = _translate_messages_for_gemini(CONVERSATION)
        assert body["systemInstruction"] == {"parts": [{"text": "Be brief"}]}
        assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]

    def test_catalog(self):
        assert set(PROVIDERS) == set(ProviderId)
        assert PROVIDERS[ProviderId.GROQ].default_model == "openai/gpt-oss-20b"
        assert PROVIDERS[ProviderId.GEMINI].models_url.endswith("/v1/models")


class TestOpenAICompatClient:
    """Groq / OpenAI / DeepSeek through the OpenAI SDK."""

    def test_complete_sends_conversation(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_chat_completion("<think>hmm</think>We start at $10"))

        client = _client_for(handler, "deepseek")
        assert isinstance(client, OpenAICompatClient)

        async def run():
            try:
                return await client.complete(CONVERSATION, "deepseek-chat", temperature=0.7, max_tokens=500)
            finally:
                await client.aclose()

        reply = asyncio.run(run())
        assert reply == "We start at $10"
        assert seen["url"] == "https://api.deepseek.com/v1/chat/completions"
        assert seen["auth"] == "Bearer key-123"
        assert seen["body"]["messages"] == CONVERSATION
        assert seen["body"]["max_tokens"] == 500

    def test_status_error_maps_to_rejected(self):
        def handler(request):
            return httpx.Response(401, json={"error": {"message": "bad key", "type": "invalid_request_error"}})

        client = _client_for(handler, "groq")
        with pytest.raises(ProviderRejectedError) as exc:
            asyncio.run(client.complete(CONVERSATION, "m", temperature=0.7, max_tokens=10))
        assert exc.value.context["status_code"] == 401
        assert exc.value.provider_id == "groq"

    def test_empty_reply_is_rejected(self):
        client = _client_for(lambda request: httpx.Response(200, json=_chat_completion("")))
        with pytest.raises(ProviderRejectedError):
            asyncio.run(client.complete(CONVERSATION, "m", temperature=0.7, max_tokens=10))

    def test_timeout_maps_to_provider_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = _client_for(handler)
        with pytest.raises(ProviderTimeoutError):
            asyncio.run(client.complete(CONVERSATION, "m", temperature=0.7, max_tokens=10))

    def test_list_models(self):
        def handler(request):
            assert request.url.path == "/v1/models"
            return httpx.Response(200, json={
                "object": "list",
                "data": [{"id": "gpt-3.5-turbo", "object": "model", "created": 0, "owned_by": "openai"}],
            })

        client = _client_for(handler)
        assert asyncio.run(client.list_models()) == ["gpt-3.5-turbo"]


class TestGeminiClient:
    """Gemini generateContent over plain httpx."""

    def test_complete(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get("x-goog-api-key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "candidates": [{"content": {"role": "model", "parts": [{"text": "Hi "}, {"text": "there"}]}}]
            })

        client = _client_for(handler, "gemini")
        assert isinstance(client, GeminiClient)

        reply = asyncio.run(client.complete(CONVERSATION, "gemini-pro", temperature=0.2, max_tokens=64))

        assert reply == "Hi there"
        assert seen["url"] == "https://generativelanguage.googleapis.com/v1beta/models/gemini-pro:generateContent"
        assert seen["key"] == "key-123"
        assert seen["body"]["generationConfig"] == {"temperature": 0.2, "maxOutputTokens": 64}

    def test_no_candidates_is_rejected(self):
        client = _client_for(lambda request: httpx.Response(200, json={"candidates": []}), "gemini")
        with pytest.raises(ProviderRejectedError):
            asyncio.run(client.complete(CONVERSATION, "gemini-pro", temperature=0.2, max_tokens=64))

    def test_http_error_is_rejected(self):
        client = _client_for(lambda request: httpx.Response(403, text="API key not valid"), "gemini")
        with pytest.raises(ProviderRejectedError) as exc:
            asyncio.run(client.list_models())
        assert exc.value.context["status_code"] == 403

    def test_list_models_uses_stable_api(self):
        def handler(request):
            assert str(request.url) == "https://generativelanguage.googleapis.com/v1/models"
            return httpx.Response(200, json={"models": [{"name": "models/gemini-pro"}]})

        client = _client_for(handler, "gemini")
        assert asyncio.run(client.list_models()) == ["models/gemini-pro"]
