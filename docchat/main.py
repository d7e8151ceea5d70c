"""
DocChat Application Entry Point

FastAPI application serving document upload and status, the ingestion
worker webhook and document-grounded chat.

Start locally:
    uvicorn docchat.main:app --host 0.0.0.0 --port 8001 --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from docchat.api.deps import close_embedder, reset_dispatcher
from docchat.api.v1.chat import router as chat_router
from docchat.api.v1.documents import router as documents_router
from docchat.api.v1.worker import router as worker_router
from docchat.core.config import settings
from docchat.core.database import dispose_engine, verify_database
from docchat.core.logging import setup_logging
from docchat.services.dispatcher import LocalDispatcher
from docchat.services.embedding import ensure_dimension_matches
from docchat.services.vector_store import PgVectorStore

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
        1. Validate database connectivity.
        2. Check the embedding dimension against the vector index.

    Shutdown:
        1. Wait for in-process ingestion jobs.
        2. Close the shared embedding client.
        3. Dispose database engine.
    """
    logger.info("Starting %s...", settings.PROJECT_NAME)

    try:
        await verify_database()
    except Exception:
        logger.exception("Database connection failed")
        raise

    index_dimension = await PgVectorStore().index_dimension()
    if index_dimension is None:
        logger.warning("Vector index table not found; run 'alembic upgrade head'")
    else:
        ensure_dimension_matches(
            settings.EMBEDDING_DIMENSION, index_dimension, settings.EMBEDDING_MODEL
        )
        logger.info("Vector index dimension %d verified", index_dimension)

    if settings.uses_mock_embeddings:
        logger.warning("OPENAI_API_KEY not set: embeddings are random mock vectors")

    yield

    dispatcher = reset_dispatcher()
    if isinstance(dispatcher, LocalDispatcher):
        await dispatcher.drain()
    await close_embedder()
    await dispose_engine()
    logger.info("%s shutdown complete", settings.PROJECT_NAME)


app = FastAPI(
    title="DocChat",
    description="Document ingestion, semantic retrieval and grounded chat.",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(documents_router, prefix="/api/v1/documents", tags=["Documents"])
app.include_router(worker_router, prefix="/api/v1/worker", tags=["Worker"])
app.include_router(chat_router, prefix="/api/v1/chat", tags=["Chat"])


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check for load balancers and orchestrators."""
    return {
        "status": "ok",
        "service": "docchat",
        "environment": settings.ENVIRONMENT,
    }
