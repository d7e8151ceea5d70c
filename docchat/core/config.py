"""
Application Configuration

Centralized settings management using Pydantic BaseSettings.
All values are loaded from environment variables or .env file.

Retrieval policy (relevance threshold, generic-query lexicon) and the
embedding fallback policy live here rather than in code, so they can be
tuned per deployment without a release.
"""

from __future__ import annotations

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_GENERIC_QUERY_LEXICON: list[str] = [
    "summarize",
    "summarize this",
    "summarize document",
    "summarize this document",
    "what is this about",
    "what is this document about",
    "what does this say",
    "can you explain this document",
    "what is in this file",
    "tell me about this document",
    "explain this",
    "analyze this document",
    "extract key points",
    "give me the main points",
]


class Settings(BaseSettings):
    """
    Application settings with environment variable binding.

    Required env vars (no defaults):
        POSTGRES_USER, POSTGRES_PASSWORD, POSTGRES_HOST, POSTGRES_DB

    Everything else has a default suitable for local development.
    ``OPENAI_API_KEY`` unset or ``mock`` switches embeddings to mock mode,
    an empty ``QUEUE_TOKEN`` runs ingestion jobs in-process.
    """

    PROJECT_NAME: str = "DocChat"
    ENVIRONMENT: str = "local"

    # Database
    POSTGRES_USER: str
    POSTGRES_PASSWORD: str
    POSTGRES_HOST: str
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10

    # Chunking
    CHUNK_SIZE: int = 1000
    CHUNK_OVERLAP: int = 200

    # Embeddings
    OPENAI_API_KEY: str = ""
    EMBEDDING_PROVIDER: str = "openai"
    EMBEDDING_MODEL: str = "text-embedding-3-large"
    EMBEDDING_DIMENSION: int = 3072
    EMBEDDING_MAX_CHARS: int = 30000
    EMBEDDING_MAX_RETRIES: int = 3
    EMBEDDING_BACKOFF_SECONDS: float = 1.0
    EMBEDDING_RATE_LIMIT_BACKOFF_SECONDS: float = 5.0
    EMBEDDING_TIMEOUT_SECONDS: float = 30.0
    EMBEDDING_ZERO_VECTOR_FALLBACK: bool = False
    EMBEDDING_CONCURRENCY: int = 1

    # Vector store
    VECTOR_UPSERT_LIMIT: int = 1000
    VECTOR_UPSERT_RETRIES: int = 3
    VECTOR_TIMEOUT_SECONDS: float = 30.0
    INGEST_BATCH_SIZE: int = 20

    # Ingestion
    DOWNLOAD_TIMEOUT_SECONDS: float = 60.0
    MAX_FILE_SIZE_BYTES: int = 20 * 1024 * 1024
    PROCESSING_LEASE_MINUTES: int = 15
    STATUS_WRITE_RETRIES: int = 3
    STATUS_WRITE_BACKOFF_SECONDS: float = 1.0

    # Retrieval
    RETRIEVAL_TOP_K: int = 5
    RETRIEVAL_TIMEOUT_SECONDS: float = 20.0
    RELEVANCE_THRESHOLD: float = 0.5
    GENERIC_QUERY_LEXICON: list[str] = DEFAULT_GENERIC_QUERY_LEXICON

    # Job transport
    QUEUE_PUBLISH_URL: str = "https://qstash.upstash.io/v2/publish"
    QUEUE_TOKEN: str = ""
    QUEUE_RETRIES: int = 3
    QUEUE_TIMEOUT_SECONDS: float = 10.0
    WORKER_URL: str = "http://localhost:8001/api/v1/worker/ingest"
    SIGNING_KEY_CURRENT: str = ""
    SIGNING_KEY_NEXT: str = ""

    # Blob store
    BLOB_BASE_URL: str = "http://localhost:9000/blobs"
    BLOB_TOKEN: str = ""
    BLOB_TIMEOUT_SECONDS: float = 30.0

    # LLM (Ollama-compatible API)
    LLM_BASE_URL: str = "http://host.docker.internal:11434"
    LLM_MODEL: str = "mistral"
    LLM_TIMEOUT_SECONDS: float = 60.0

    # Web search (Tavily-compatible API)
    WEB_SEARCH_URL: str = "https://api.tavily.com/search"
    WEB_SEARCH_API_KEY: str = ""
    WEB_SEARCH_MIN_SCORE: float = 0.5
    WEB_SEARCH_MAX_RESULTS: int = 5
    WEB_SEARCH_TIMEOUT_SECONDS: float = 15.0

    # Logging
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",  # Silently ignore unknown env vars
    )

    @field_validator("RELEVANCE_THRESHOLD", "WEB_SEARCH_MIN_SCORE")
    @classmethod
    def _check_fraction(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"must be between 0 and 1, got {value}")
        return value

    @model_validator(mode="after")
    def _check_chunking(self) -> Settings:
        if self.CHUNK_OVERLAP >= self.CHUNK_SIZE:
            raise ValueError(
                f"CHUNK_OVERLAP ({self.CHUNK_OVERLAP}) must be less than "
                f"CHUNK_SIZE ({self.CHUNK_SIZE})"
            )
        return self

    @property
    def DATABASE_URL(self) -> str:
        """Async PostgreSQL connection string using asyncpg driver."""
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def signing_keys(self) -> list[str]:
        """Webhook signing keys in verification order (current, next)."""
        return [k for k in (self.SIGNING_KEY_CURRENT, self.SIGNING_KEY_NEXT) if k]

    @property
    def uses_mock_embeddings(self) -> bool:
        return self.EMBEDDING_PROVIDER.lower() == "openai" and (
            not self.OPENAI_API_KEY or self.OPENAI_API_KEY.lower() == "mock"
        )


settings = Settings()  # type: ignore[call-arg]
