"""
Provider Clients - normalise each external completion API to plain text.

Response format:
    complete(...) -> "reply text"
    list_models() -> ["model-id", ...]

Key translations:
- Conversation: [{"role": "system"|"user"|"assistant", "content": ...}]
  → OpenAI chat messages, or Gemini contents + systemInstruction
- Thinking: <think>...</think> inline tags are stripped from replies
- Failures: SDK / HTTP exceptions → ProviderTimeoutError / ProviderRejectedError
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import httpx
import openai
from openai import AsyncOpenAI

from errors import ProviderRejectedError, ProviderTimeoutError
from services.llm_config import PROTOCOL_GEMINI, ProviderSpec

logger = logging.getLogger(__name__)

_THINK_PATTERN = re.compile(r"<think>(.*?)</think>", re.DOTALL)


def _strip_thinking(content: str) -> str:
    """Remove inline <think>...</think> reasoning blocks from a reply."""
    if not content:
        return ""
    return _THINK_PATTERN.sub("", content).strip()


def _translate_messages_for_gemini(messages: List[Dict]) -> Dict:
    """Split chat messages into Gemini ``contents`` plus ``systemInstruction``.

    Gemini only knows the roles ``user`` and ``model``; system text is
    carried separately.
    """
    system_parts = []
    contents = []
    for msg in messages:
        role = msg.get("role", "user")
        text = msg.get("content", "")
        if role == "system":
            system_parts.append({"text": text})
            continue
        contents.append({
            "role": "model" if role == "assistant" else "user",
            "parts": [{"text": text}],
        })

    body: Dict = {"contents": contents}
    if system_parts:
        body["systemInstruction"] = {"parts": system_parts}
    return body


class ProviderClient(ABC):
    """One authenticated connection to a provider."""

    def __init__(self, spec: ProviderSpec, api_key: str, timeout: float):
        self.spec = spec
        self._api_key = api_key
        self._timeout = timeout

    @property
    def provider_id(self) -> str:
        return self.spec.provider_id.value

    @abstractmethod
    async def complete(
        self,
        messages: List[Dict[str, str]],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        """Return the reply text for a conversation."""

    @abstractmethod
    async def list_models(self) -> List[str]:
        """Cheapest authenticated call; used to test credentials."""

    async def aclose(self) -> None:
        return None


class OpenAICompatClient(ProviderClient):
    """Groq, OpenAI and DeepSeek via the OpenAI SDK with a per-provider base_url."""

    def __init__(
        self,
        spec: ProviderSpec,
        api_key: str,
        timeout: float,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(spec, api_key, timeout)
        self._openai = AsyncOpenAI(
            base_url=spec.base_url,
            api_key=api_key,
            timeout=timeout,
            max_retries=0,
            http_client=http_client,
        )

    def _translate_error(self, e: Exception) -> Exception:
        if isinstance(e, openai.APITimeoutError):
            return ProviderTimeoutError(
                f"{self.provider_id} did not answer in time", provider_id=self.provider_id
            )
        if isinstance(e, openai.APIStatusError):
            return ProviderRejectedError(
                f"{self.provider_id} rejected the request",
                details=str(e.message),
                provider_id=self.provider_id,
                status_code=e.status_code,
            )
        return ProviderRejectedError(
            f"{self.provider_id} request failed", details=str(e), provider_id=self.provider_id
        )

    async def complete(self, messages, model, temperature, max_tokens) -> str:
        try:
            response = await self._openai.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.OpenAIError as e:
            raise self._translate_error(e) from e

        if not response.choices:
            raise ProviderRejectedError(
                f"{self.provider_id} returned no choices", provider_id=self.provider_id
            )
        content = _strip_thinking(response.choices[0].message.content or "")
        if not content:
            raise ProviderRejectedError(
                f"{self.provider_id} returned an empty reply", provider_id=self.provider_id
            )
        return content

    async def list_models(self) -> List[str]:
        try:
            page = await self._openai.models.list()
        except openai.OpenAIError as e:
            raise self._translate_error(e) from e
        return [m.id for m in page.data]

    async def aclose(self) -> None:
        await self._openai.close()


class GeminiClient(ProviderClient):
    """Google Gemini over its REST API (generateContent / models list)."""

    def __init__(
        self,
        spec: ProviderSpec,
        api_key: str,
        timeout: float,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(spec, api_key, timeout)
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._headers = {"x-goog-api-key": api_key}

    async def _request(self, method: str, url: str, **kwargs) -> Dict:
        try:
            resp = await self._http.request(method, url, headers=self._headers, timeout=self._timeout, **kwargs)
            resp.raise_for_status()
            return resp.json()
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                f"{self.provider_id} did not answer in time", provider_id=self.provider_id
            ) from e
        except httpx.HTTPStatusError as e:
            raise ProviderRejectedError(
                f"{self.provider_id} rejected the request",
                details=e.response.text[:200],
                provider_id=self.provider_id,
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderRejectedError(
                f"{self.provider_id} request failed", details=str(e), provider_id=self.provider_id
            ) from e

    async def complete(self, messages, model, temperature, max_tokens) -> str:
        body = _translate_messages_for_gemini(messages)
        body["generationConfig"] = {"temperature": temperature, "maxOutputTokens": max_tokens}

        data = await self._request(
            "POST", f"{self.spec.base_url}/models/{model}:generateContent", json=body
        )
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            raise ProviderRejectedError(
                f"{self.provider_id} returned no candidates", provider_id=self.provider_id
            )
        content = _strip_thinking("".join(p.get("text", "") for p in parts))
        if not content:
            raise ProviderRejectedError(
                f"{self.provider_id} returned an empty reply", provider_id=self.provider_id
            )
        return content

    async def list_models(self) -> List[str]:
        data = await self._request("GET", self.spec.models_url)
        return [m.get("name", "") for m in data.get("models", [])]

    async def aclose(self) -> None:
        await self._http.aclose()


def build_client(
    spec: ProviderSpec,
    api_key: str,
    timeout: float,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ProviderClient:
    """Factory: pick the client implementation for a provider's protocol."""
    if spec.protocol == PROTOCOL_GEMINI:
        return GeminiClient(spec, api_key, timeout, http_client=http_client)
    return OpenAICompatClient(spec, api_key, timeout, http_client=http_client)
