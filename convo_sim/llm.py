"""Model providers — HTTP connections to text-generation backends.

The engine calls a provider matching the protocol:

    async def generate(self, system_prompt: str, history: list[dict]) -> str: ...

`history` is a list of {"role": "user" | "assistant", "content": str}
entries, oldest first, ending with the trainee's latest message.

Three implementations are provided:

    AnthropicProvider — Claude models over the Messages API.
    GeminiProvider    — Gemini models over the generateContent API.
    EchoProvider      — no network; replies with the last user turn. Useful
                        for smoke-testing the engine wiring and for demos.

Every failure a backend can produce (unreachable, timed out, rate limited,
HTTP error, unexpected or empty body) is raised as GenerationFailure with a
`reason`. Providers never retry; that is the caller's decision.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from convo_sim.errors import ConfigurationError, GenerationFailure
from convo_sim.models import Difficulty, LLMConfig, ModelBackend, ModelId

logger = logging.getLogger(__name__)

ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"


# ---------------------------------------------------------------------------
# Protocol: every provider must match this signature
# ---------------------------------------------------------------------------

class ModelProvider(Protocol):
    async def generate(self, system_prompt: str, history: list[dict[str, str]]) -> str: ...


# ---------------------------------------------------------------------------
# Shared HTTP plumbing
# ---------------------------------------------------------------------------

class _HttpProvider:
    """POSTs one JSON request and maps every transport failure to GenerationFailure."""

    name = "http"

    def __init__(
        self,
        api_key: str,
        model: ModelId,
        base_url: str,
        max_tokens: int = 500,
        temperature: float = 0.7,
        timeout: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._timeout = timeout

    @property
    def model(self) -> ModelId:
        return self._model

    async def _post(
        self,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str],
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=headers, params=params)
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise GenerationFailure(
                f"Cannot connect to {self.name} backend at {self._base_url}", reason="connect"
            ) from e
        except httpx.TimeoutException as e:
            raise GenerationFailure(
                f"{self.name} backend timed out after {self._timeout}s", reason="timeout"
            ) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429:
                raise GenerationFailure(
                    f"{self.name} backend rate limited the request", reason="rate_limited"
                ) from e
            raise GenerationFailure(
                f"{self.name} backend returned HTTP {status}", reason="http_error"
            ) from e
        except httpx.HTTPError as e:
            raise GenerationFailure(f"{self.name} request failed: {e}", reason="connect") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise GenerationFailure(
                f"{self.name} backend returned a non-JSON body", reason="malformed"
            ) from e
        if not isinstance(data, dict):
            raise GenerationFailure(
                f"Unexpected response format from {self.name} backend", reason="malformed"
            )
        return data

    def _check_text(self, text: str) -> str:
        if not text.strip():
            raise GenerationFailure(f"{self.name} backend returned an empty reply", reason="empty")
        return text.strip()


# ---------------------------------------------------------------------------
# AnthropicProvider
# ---------------------------------------------------------------------------

class AnthropicProvider(_HttpProvider):
    """Claude over the Messages API.

    POST {base}/v1/messages
        {"model", "max_tokens", "temperature", "system", "messages"}
    Response: {"content": [{"type": "text", "text": "..."}]}
    """

    name = "anthropic"

    def __init__(self, api_key: str, model: ModelId = ModelId.CLAUDE_HAIKU,
                 base_url: str = ANTHROPIC_BASE_URL, **kwargs: Any) -> None:
        super().__init__(api_key, model, base_url, **kwargs)

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _build_request(self, system_prompt: str, history: list[dict[str, str]]) -> tuple[str, dict]:
        url = f"{self._base_url}/v1/messages"
        body = {
            "model": self._model.value,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
            "system": system_prompt,
            "messages": [{"role": m["role"], "content": m["content"]} for m in history],
        }
        return url, body

    def _parse_response(self, data: dict) -> str:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise GenerationFailure(
                "Unexpected response format from anthropic backend", reason="malformed"
            )
        parts = [
            block.get("text", "")
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return self._check_text("".join(parts))

    async def generate(self, system_prompt: str, history: list[dict[str, str]]) -> str:
        url, body = self._build_request(system_prompt, history)
        logger.debug(
            "generate backend=anthropic model=%s system_len=%d history=%d",
            self._model.value, len(system_prompt), len(history),
        )
        data = await self._post(url, body, self._headers())
        text = self._parse_response(data)
        logger.debug("generate response backend=anthropic len=%d", len(text))
        return text


# ---------------------------------------------------------------------------
# GeminiProvider
# ---------------------------------------------------------------------------

class GeminiProvider(_HttpProvider):
    """Gemini over the generateContent API.

    POST {base}/v1beta/models/{model}:generateContent?key=...
        {"systemInstruction", "contents", "generationConfig"}
    Response: {"candidates": [{"content": {"parts": [{"text": "..."}]}}]}

    Gemini calls the assistant role "model".
    """

    name = "gemini"

    def __init__(self, api_key: str, model: ModelId = ModelId.GEMINI_PRO,
                 base_url: str = GEMINI_BASE_URL, **kwargs: Any) -> None:
        super().__init__(api_key, model, base_url, **kwargs)

    def _build_request(self, system_prompt: str, history: list[dict[str, str]]) -> tuple[str, dict]:
        url = f"{self._base_url}/v1beta/models/{self._model.value}:generateContent"
        body = {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": [
                {
                    "role": "model" if m["role"] == "assistant" else "user",
                    "parts": [{"text": m["content"]}],
                }
                for m in history
            ],
            "generationConfig": {
                "maxOutputTokens": self._max_tokens,
                "temperature": self._temperature,
            },
        }
        return url, body

    def _parse_response(self, data: dict) -> str:
        try:
            parts = data["candidates"][0]["content"]["parts"]
            text = "".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise GenerationFailure(
                "Unexpected response format from gemini backend", reason="malformed"
            ) from e
        return self._check_text(text)

    async def generate(self, system_prompt: str, history: list[dict[str, str]]) -> str:
        url, body = self._build_request(system_prompt, history)
        logger.debug(
            "generate backend=gemini model=%s system_len=%d history=%d",
            self._model.value, len(system_prompt), len(history),
        )
        data = await self._post(
            url, body, {"Content-Type": "application/json"}, params={"key": self._api_key},
        )
        text = self._parse_response(data)
        logger.debug("generate response backend=gemini len=%d", len(text))
        return text


# ---------------------------------------------------------------------------
# EchoProvider: no network; useful for wiring tests and demos
# ---------------------------------------------------------------------------

class EchoProvider:
    """Replies with the last user turn. No network calls."""

    model = ModelId.ECHO

    async def generate(self, system_prompt: str, history: list[dict[str, str]]) -> str:
        logger.debug("EchoProvider system_len=%d history=%d", len(system_prompt), len(history))
        for message in reversed(history):
            if message["role"] == "user":
                return f"You said: {message['content']}"
        return "..."


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def resolve_model(model: ModelId, difficulty: Difficulty) -> ModelId:
    """Advanced sessions get the more capable Claude model."""
    if model is ModelId.CLAUDE_HAIKU and difficulty is Difficulty.ADVANCED:
        return ModelId.CLAUDE_SONNET
    return model


def create_provider(llm: LLMConfig, difficulty: Difficulty, settings: dict) -> ModelProvider:
    """Build the provider for a vignette's model config and a session difficulty.

    `settings` is the dict returned by convo_sim.config.get_config().
    """
    model = resolve_model(llm.model_id, difficulty)
    common = {
        "max_tokens": llm.max_response_tokens,
        "temperature": llm.temperature,
        "timeout": float(settings.get("llm_timeout", 30.0)),
    }

    if model.backend is ModelBackend.ANTHROPIC:
        key = settings.get("anthropic_api_key", "")
        if not key:
            raise ConfigurationError("ANTHROPIC_API_KEY is not set")
        return AnthropicProvider(
            key, model, settings.get("anthropic_base_url") or ANTHROPIC_BASE_URL, **common,
        )

    if model.backend is ModelBackend.GEMINI:
        key = settings.get("gemini_api_key", "")
        if not key:
            raise ConfigurationError("GEMINI_API_KEY is not set")
        return GeminiProvider(
            key, model, settings.get("gemini_base_url") or GEMINI_BASE_URL, **common,
        )

    return EchoProvider()
