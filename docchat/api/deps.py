"""
Shared API Dependencies

Caller identity, service factories and the mapping of domain errors
onto HTTP errors.
"""

from __future__ import annotations

import logging

from fastapi import Header, HTTPException, status

from docchat.core.exceptions import (
    DispatchError,
    DocChatError,
    DocumentNotFoundError,
    InvalidDocumentStateError,
    UnauthorizedDocumentAccessError,
)
from docchat.models.schemas import IngestionJob
from docchat.services.chat import ChatService
from docchat.services.dispatcher import JobDispatcher, build_dispatcher
from docchat.services.documents import DocumentService
from docchat.services.embedding import EmbeddingClient
from docchat.services.ingestion import IngestionOutcome, IngestionPipeline
from docchat.services.retrieval import ContextAssembler

logger = logging.getLogger(__name__)

_dispatcher: JobDispatcher | None = None
_embedder: EmbeddingClient | None = None


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Caller identity from the ``X-User-Id`` header (set by the auth proxy)."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return x_user_id.strip()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


async def run_ingestion_job(job: IngestionJob) -> IngestionOutcome:
    """Runner used by the in-process dispatcher."""
    return await IngestionPipeline(embedder=get_embedder()).run(job)


def get_dispatcher() -> JobDispatcher:
    """Process-wide dispatcher (the local one tracks its running tasks)."""
    global _dispatcher  # noqa: PLW0603
    if _dispatcher is None:
        _dispatcher = build_dispatcher(run_ingestion_job)
    return _dispatcher


def reset_dispatcher() -> JobDispatcher | None:
    """Forget the dispatcher at shutdown; returns the previous one."""
    global _dispatcher  # noqa: PLW0603
    previous, _dispatcher = _dispatcher, None
    return previous


def get_embedder() -> EmbeddingClient:
    """Process-wide embedding client; it owns the provider connection pool."""
    global _embedder  # noqa: PLW0603
    if _embedder is None:
        _embedder = EmbeddingClient()
    return _embedder


async def close_embedder() -> None:
    """Close the shared embedding client at shutdown."""
    global _embedder  # noqa: PLW0603
    previous, _embedder = _embedder, None
    if previous is not None:
        await previous.close()


def get_pipeline() -> IngestionPipeline:
    return IngestionPipeline(embedder=get_embedder())


def get_document_service() -> DocumentService:
    return DocumentService(dispatcher=get_dispatcher())


def get_assembler() -> ContextAssembler:
    return ContextAssembler(embedder=get_embedder())


def get_chat_service() -> ChatService:
    return ChatService(assembler=get_assembler())


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


def http_error(exc: DocChatError) -> HTTPException:
    """HTTP error for a domain exception raised by a service."""
    if isinstance(exc, DocumentNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, UnauthorizedDocumentAccessError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, InvalidDocumentStateError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, DispatchError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        )
    logger.error("Unmapped domain error: %s", exc)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
