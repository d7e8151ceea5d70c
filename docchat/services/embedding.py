"""
Embedding Client

Turns one text into a fixed-length float vector.

Providers (``EMBEDDING_PROVIDER``):
    - ``openai``: OpenAI embeddings API via ``AsyncOpenAI``
      (text-embedding-3-large, 3072 dimensions by default).
    - ``local``: sentence-transformers model, loaded lazily and run in a
      worker thread.
Mock mode (random vectors) kicks in when the OpenAI provider is selected
but OPENAI_API_KEY is missing or set to ``mock``.

Failure policy:
    Transient errors (rate limiting, timeouts, connection errors, 5xx)
    are retried with exponential backoff; a rate-limit error waits
    longer. When every attempt fails, ``EmbeddingError`` is raised and
    the caller decides what the document's fate is. Deployments that
    prefer the old best-effort behaviour can set
    ``EMBEDDING_ZERO_VECTOR_FALLBACK`` to get a zero vector instead.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, ClassVar, Final

import openai
from openai import AsyncOpenAI

from docchat.core.config import settings
from docchat.core.exceptions import ConfigurationError, EmbeddingError

logger = logging.getLogger(__name__)

KNOWN_MODEL_DIMENSIONS: Final[dict[str, int]] = {
    "text-embedding-3-large": 3072,
    "text-embedding-3-small": 1536,
    "text-embedding-ada-002": 1536,
    "all-MiniLM-L6-v2": 384,
    "all-mpnet-base-v2": 768,
}

TRANSIENT_ERRORS: Final[tuple[type[BaseException], ...]] = (
    openai.RateLimitError,
    openai.APIConnectionError,  # includes APITimeoutError
    openai.InternalServerError,
    TimeoutError,
)


def ensure_dimension_matches(
    embedding_dimension: int,
    index_dimension: int | None,
    model: str | None = None,
) -> None:
    """
    Startup invariant: embeddings must fit the vector index exactly.

    Args:
        embedding_dimension: Configured EMBEDDING_DIMENSION.
        index_dimension: Dimension the vector column was created with,
            or None when the table does not exist yet.
        model: Embedding model name, checked against known native sizes.
            text-embedding-3 models can be shortened, so only larger
            requests are rejected for them.

    Raises:
        ConfigurationError: On any mismatch.
    """
    if model in KNOWN_MODEL_DIMENSIONS:
        native = KNOWN_MODEL_DIMENSIONS[model]
        shortenable = model.startswith("text-embedding-3")
        if embedding_dimension > native or (
            not shortenable and embedding_dimension != native
        ):
            raise ConfigurationError(
                f"Model {model} produces {native}-dimensional vectors, "
                f"EMBEDDING_DIMENSION is {embedding_dimension}"
            )

    if index_dimension is not None and index_dimension != embedding_dimension:
        raise ConfigurationError(
            f"Vector index dimension ({index_dimension}) does not match "
            f"EMBEDDING_DIMENSION ({embedding_dimension})"
        )


class EmbeddingClient:
    """
    Async embedding client with truncation, retry and backoff.

    Usage::

        client = EmbeddingClient()
        vector = await client.embed("What is in the quarterly report?")
        assert len(vector) == client.dimension

    Every constructor argument defaults to the matching setting.
    """

    _local_models: ClassVar[dict[str, Any]] = {}

    def __init__(
        self,
        *,
        provider: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        dimension: int | None = None,
        max_chars: int | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        rate_limit_backoff_seconds: float | None = None,
        timeout: float | None = None,
        zero_vector_fallback: bool | None = None,
    ) -> None:
        self._provider = (provider or settings.EMBEDDING_PROVIDER).lower()
        self._api_key = settings.OPENAI_API_KEY if api_key is None else api_key
        self._model = model or settings.EMBEDDING_MODEL
        self._dimension = dimension or settings.EMBEDDING_DIMENSION
        self._max_chars = max_chars or settings.EMBEDDING_MAX_CHARS
        self._max_retries = max(1, max_retries or settings.EMBEDDING_MAX_RETRIES)
        self._backoff = (
            settings.EMBEDDING_BACKOFF_SECONDS
            if backoff_seconds is None
            else backoff_seconds
        )
        self._rate_limit_backoff = (
            settings.EMBEDDING_RATE_LIMIT_BACKOFF_SECONDS
            if rate_limit_backoff_seconds is None
            else rate_limit_backoff_seconds
        )
        self._timeout = timeout or settings.EMBEDDING_TIMEOUT_SECONDS
        self._zero_vector_fallback = (
            settings.EMBEDDING_ZERO_VECTOR_FALLBACK
            if zero_vector_fallback is None
            else zero_vector_fallback
        )
        self._client: AsyncOpenAI | None = None

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model(self) -> str:
        return self._model

    @property
    def is_mocked(self) -> bool:
        return self._provider == "openai" and (
            not self._api_key or self._api_key.lower() == "mock"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def prepare(self, text: str) -> str:
        """Single-line input truncated to the provider's character budget."""
        return text.replace("\n", " ")[: self._max_chars]

    async def embed(self, text: str) -> list[float]:
        """
        Embed a single text.

        Returns:
            Vector of ``dimension`` floats.

        Raises:
            EmbeddingError: When all attempts failed (or a non-retryable
                provider error occurred) and the zero-vector fallback is off.
        """
        prepared = self.prepare(text)

        for attempt in range(1, self._max_retries + 1):
            try:
                vector = await asyncio.wait_for(
                    self._request(prepared), timeout=self._timeout
                )
            except TRANSIENT_ERRORS as exc:
                if attempt == self._max_retries:
                    return self._give_up(exc, attempt)
                if isinstance(exc, openai.RateLimitError):
                    delay = self._rate_limit_backoff * attempt
                else:
                    delay = self._backoff * 2 ** (attempt - 1)
                logger.warning(
                    "Embedding attempt %d/%d failed (%s), retrying in %.1fs",
                    attempt,
                    self._max_retries,
                    type(exc).__name__,
                    delay,
                )
                await asyncio.sleep(delay)
                continue
            except openai.OpenAIError as exc:
                return self._give_up(exc, attempt)

            if len(vector) != self._dimension:
                raise EmbeddingError(
                    f"Embedding has {len(vector)} dimensions, "
                    f"expected {self._dimension}",
                    attempts=attempt,
                )
            return vector

        raise AssertionError("unreachable")  # pragma: no cover

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    async def _request(self, text: str) -> list[float]:
        if self._provider == "local":
            return await asyncio.to_thread(self._encode_local, text)
        if self.is_mocked:
            # Mock mode: random vectors for dev/test (no API costs, no network)
            return [random.random() for _ in range(self._dimension)]
        return await self._request_openai(text)

    async def _request_openai(self, text: str) -> list[float]:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._api_key, max_retries=0)

        kwargs: dict[str, Any] = {"input": [text], "model": self._model}
        if self._model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dimension

        response = await self._client.embeddings.create(**kwargs)
        return list(response.data[0].embedding)

    def _encode_local(self, text: str) -> list[float]:
        """Synchronous; always call via ``asyncio.to_thread``."""
        model = self._local_models.get(self._model)
        if model is None:
            # Deferred import keeps sentence-transformers an optional extra
            from sentence_transformers import SentenceTransformer

            logger.info("Loading local embedding model: %s ...", self._model)
            model = SentenceTransformer(self._model)
            self._local_models[self._model] = model
        embedding = model.encode([text], normalize_embeddings=True)
        return embedding[0].tolist()

    def _give_up(self, exc: BaseException, attempts: int) -> list[float]:
        message = f"{type(exc).__name__}: {exc}"
        if self._zero_vector_fallback:
            logger.error(
                "Embedding failed after %d attempts (%s); using zero-vector fallback",
                attempts,
                message,
            )
            return [0.0] * self._dimension
        logger.error("Embedding failed after %d attempts: %s", attempts, message)
        raise EmbeddingError(message, attempts=attempts) from exc
