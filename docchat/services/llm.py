"""
LLM Service

Chat generation through an Ollama-compatible HTTP API.

Design:
    - Async HTTP calls via httpx (non-blocking), streaming or not.
    - Graceful degradation: when the model server is unreachable, times
      out or errors, a mock answer is returned so the rest of the chat
      flow (retrieval, metadata) keeps working.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any, Final

import httpx

from docchat.core.config import settings

logger = logging.getLogger(__name__)

BASE_SYSTEM_PROMPT: Final[str] = (
    "You are a helpful assistant. Users may upload documents and ask questions "
    "about them. Answer clearly and concisely, cite the documents you rely on, "
    "and never invent content that is not in the provided context or your "
    "general knowledge."
)

_FALLBACK_ERRORS = (httpx.ConnectError, httpx.TimeoutException, httpx.HTTPStatusError)


@dataclass
class LLMResponse:
    """
    Response from the LLM service.

    Attributes:
        content: Generated text response.
        is_mocked: True if response is a fallback (model server unavailable).
    """

    content: str
    is_mocked: bool


class LLMService:
    """
    Async LLM client with automatic fallback.

    Usage::

        service = LLMService()
        response = await service.chat(system_prompt, [{"role": "user", "content": q}])
        async for delta in service.stream_chat(system_prompt, messages):
            ...
    """

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._base_url = (base_url or settings.LLM_BASE_URL).rstrip("/")
        self._model = model or settings.LLM_MODEL
        self._timeout = timeout or settings.LLM_TIMEOUT_SECONDS

    def _chat_payload(
        self, system_prompt: str, messages: Sequence[dict[str, str]], stream: bool
    ) -> dict[str, Any]:
        return {
            "model": self._model,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "stream": stream,
        }

    async def chat(
        self, system_prompt: str, messages: Sequence[dict[str, str]]
    ) -> LLMResponse:
        """Generate a complete answer; falls back to a mock answer on failure."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._base_url}/api/chat",
                    json=self._chat_payload(system_prompt, messages, stream=False),
                )
                response.raise_for_status()
        except _FALLBACK_ERRORS as e:
            self._log_fallback(e)
            return LLMResponse(content=self._mock_content(), is_mocked=True)

        content = response.json().get("message", {}).get("content", "")
        logger.info(
            "LLM response generated (model=%s, length=%d)", self._model, len(content)
        )
        return LLMResponse(content=content, is_mocked=False)

    async def stream_chat(
        self, system_prompt: str, messages: Sequence[dict[str, str]]
    ) -> AsyncIterator[str]:
        """
        Yield answer deltas as the model produces them.

        On failure the mock answer is yielded as a final delta instead.
        """
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url}/api/chat",
                    json=self._chat_payload(system_prompt, messages, stream=True),
                ) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        data = json.loads(line)
                        delta = data.get("message", {}).get("content", "")
                        if delta:
                            yield delta
                        if data.get("done"):
                            break
        except _FALLBACK_ERRORS as e:
            self._log_fallback(e)
            yield self._mock_content()

    async def complete(self, prompt: str) -> LLMResponse:
        """Single-prompt completion (used for search query rewriting)."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._base_url}/api/generate",
                    json={"model": self._model, "prompt": prompt, "stream": False},
                )
                response.raise_for_status()
        except _FALLBACK_ERRORS as e:
            self._log_fallback(e)
            return LLMResponse(content="", is_mocked=True)
        return LLMResponse(content=response.json().get("response", ""), is_mocked=False)

    def _log_fallback(self, error: Exception) -> None:
        if isinstance(error, httpx.HTTPStatusError):
            logger.error("LLM API error: %s", error.response.status_code)
        else:
            logger.warning(
                "LLM unreachable (%s), using mock response: %s",
                type(error).__name__,
                error,
            )

    @staticmethod
    def _mock_content() -> str:
        return (
            "**Note: AI service unavailable.** The answer could not be generated, "
            "but the retrieved document context is listed in the message metadata."
        )
