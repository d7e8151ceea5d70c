"""
Ingestion Pipeline

Turns an uploaded document into searchable vector chunks:

    claim → download → extract → validate → chunk → embed + upsert
    (progress per chunk) → completed | failed

This is the single entry point for the worker webhook and the
in-process dispatcher. It composes the individual services
(HttpBlobStore, TextExtractor, TextChunker, EmbeddingClient,
VectorStore) around the DocumentLedger.

Delivery is at-least-once, so a run starts by atomically claiming the
document (pending → processing). A delivery that cannot claim it is a
duplicate and returns without doing any work.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, NamedTuple

from docchat.core.config import settings
from docchat.core.exceptions import (
    DocumentNotFoundError,
    DownloadError,
    EmbeddingError,
    EmptyDocumentError,
    UnauthorizedDocumentAccessError,
    UnsupportedFormatError,
    VectorStoreError,
)
from docchat.models.schemas import (
    Document,
    IngestionJob,
    VectorRecord,
    chunk_vector_id,
)
from docchat.repositories.documents import DocumentLedger
from docchat.services.blob_store import HttpBlobStore
from docchat.services.chunking import TextChunker
from docchat.services.embedding import EmbeddingClient
from docchat.services.extraction import TextExtractor
from docchat.services.vector_store import PgVectorStore, UpsertReport, VectorStore

logger = logging.getLogger(__name__)

MAX_STATUS_MESSAGE_LENGTH = 1000


class RunStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    SUPERSEDED = "superseded"


class IngestionOutcome(NamedTuple):
    """Return value of ``IngestionPipeline.run``."""

    document_id: str
    status: RunStatus
    message: str
    total_chunks: int = 0
    processed_chunks: int = 0
    processing_time_ms: int = 0

    @property
    def succeeded(self) -> bool:
        """False only for runs the transport should be told about."""
        return self.status is not RunStatus.FAILED


def describe_failure(exc: BaseException) -> str:
    """
    Status message for a failed run.

    The prefix tells the user whether the file itself is the problem or
    a provider was unavailable (in which case a retry may help).
    """
    if isinstance(exc, DownloadError):
        message = f"Download failed: {exc}"
    elif isinstance(exc, (UnsupportedFormatError, EmptyDocumentError)):
        message = str(exc)
    elif isinstance(exc, EmbeddingError):
        message = (
            f"Embedding provider unavailable after {exc.attempts} attempts: {exc}. "
            "Retrying may help."
        )
    elif isinstance(exc, VectorStoreError):
        message = f"Vector store unavailable: {exc}. Retrying may help."
    else:
        message = f"Processing failed: {type(exc).__name__}: {exc}"
    return message[:MAX_STATUS_MESSAGE_LENGTH]


class IngestionPipeline:
    """
    Orchestrates one ingestion run per job delivery.

    All collaborators are injectable; defaults are the production
    implementations configured from settings.

    Within a run, chunks are embedded in batches of ``batch_size``; inside
    a batch at most ``concurrency`` embeddings are in flight. Each batch
    is upserted in chunk order once all its embeddings are done, and the
    ledger counter is incremented as each embedding completes.

    Usage::

        pipeline = IngestionPipeline()
        outcome = await pipeline.run(IngestionJob(document_id=..., user_id=...))
    """

    def __init__(
        self,
        *,
        ledger: DocumentLedger | Any | None = None,
        vector_store: VectorStore | None = None,
        embedder: EmbeddingClient | Any | None = None,
        blob_store: HttpBlobStore | Any | None = None,
        extractor: TextExtractor | None = None,
        chunker: TextChunker | None = None,
        batch_size: int | None = None,
        concurrency: int | None = None,
        lease_minutes: int | None = None,
        status_write_backoff: float | None = None,
    ) -> None:
        self._ledger = ledger or DocumentLedger()
        self._vector_store = vector_store or PgVectorStore()
        self._embedder = embedder or EmbeddingClient()
        self._blob_store = blob_store or HttpBlobStore()
        self._extractor = extractor or TextExtractor()
        self._chunker = chunker or TextChunker(settings.CHUNK_SIZE, settings.CHUNK_OVERLAP)
        self._batch_size = max(1, batch_size or settings.INGEST_BATCH_SIZE)
        self._concurrency = max(1, concurrency or settings.EMBEDDING_CONCURRENCY)
        self._lease_minutes = (
            settings.PROCESSING_LEASE_MINUTES if lease_minutes is None else lease_minutes
        )
        self._status_write_backoff = (
            settings.STATUS_WRITE_BACKOFF_SECONDS
            if status_write_backoff is None
            else status_write_backoff
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self, job: IngestionJob) -> IngestionOutcome:
        """
        Process one job delivery.

        Raises:
            DocumentNotFoundError: No ledger row for ``job.document_id``.
            UnauthorizedDocumentAccessError: The job's user does not own it.

        Every other failure is recorded on the ledger and reported as a
        FAILED outcome instead of being raised.
        """
        started = time.monotonic()

        document = await self._ledger.get(job.document_id)
        if document is None:
            raise DocumentNotFoundError(job.document_id)
        if document.user_id != job.user_id:
            raise UnauthorizedDocumentAccessError(job.document_id)

        claimed = await self._ledger.claim_for_processing(
            document.id, lease_minutes=self._lease_minutes
        )
        if claimed is None:
            current = await self._ledger.get(document.id) or document
            logger.info(
                "Duplicate delivery for %s (status=%s), skipping",
                document.id,
                current.processing_status.value,
            )
            return IngestionOutcome(
                document_id=str(document.id),
                status=RunStatus.DUPLICATE,
                message=(
                    f"Document already in '{current.processing_status.value}' state. "
                    "Request ignored for idempotency."
                ),
                total_chunks=current.total_chunks or 0,
                processed_chunks=current.processed_chunks,
                processing_time_ms=_elapsed_ms(started),
            )

        logger.info("Processing document %s ('%s')", claimed.id, claimed.file_name)
        try:
            outcome = await self._process(claimed)
        except Exception as exc:
            message = describe_failure(exc)
            if isinstance(exc, (DownloadError, UnsupportedFormatError, EmptyDocumentError)):
                logger.warning("Document %s failed: %s", claimed.id, message)
            else:
                logger.exception("Document %s failed", claimed.id)
            await self._record_failure(claimed.id, message)
            outcome = IngestionOutcome(str(claimed.id), RunStatus.FAILED, message)

        return outcome._replace(processing_time_ms=_elapsed_ms(started))

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _process(self, document: Document) -> IngestionOutcome:
        document_id = str(document.id)

        # --- Download + extract ---
        raw = await self._blob_store.download(document.blob_url)
        extracted = await self._extractor.extract(
            raw, document.file_type, document.file_name
        )

        # --- Validate ---
        if not extracted.text.strip():
            raise EmptyDocumentError()

        # --- Chunk ---
        chunks = self._chunker.chunk(extracted.text)
        if not chunks:
            raise EmptyDocumentError()
        total = len(chunks)

        if await self._ledger.set_total_chunks(document.id, total) is None:
            return self._superseded(document_id, "before embedding")
        logger.info(
            "Chunked '%s': %d chunks from %d chars",
            document.file_name,
            total,
            len(extracted.text),
        )

        # --- Embed + upsert ---
        report = await self._embed_and_upsert(document, chunks)

        # --- Completion check ---
        current = await self._ledger.get(document.id)
        if current is None:
            return self._superseded(document_id, "after embedding (document deleted)")

        if not report.ok:
            message = (
                f"Partially failed: {report.upserted}/{total} chunks stored. "
                f"{len(report.errors)} batch(es) failed. Retrying may help. "
                f"Error: {report.errors[0]}"
            )[:MAX_STATUS_MESSAGE_LENGTH]
            logger.error("Document %s: %s", document_id, message)
            await self._record_failure(document.id, message)
            return IngestionOutcome(
                document_id, RunStatus.FAILED, message, total, current.processed_chunks
            )

        if current.processed_chunks != total:
            message = (
                f"Progress mismatch: {current.processed_chunks}/{total} chunks recorded. "
                "Retrying may help."
            )
            await self._record_failure(document.id, message)
            return IngestionOutcome(
                document_id, RunStatus.FAILED, message, total, current.processed_chunks
            )

        message = f"Successfully processed all {total} chunks"
        if extracted.is_placeholder:
            message += " (no extractable text, stored a placeholder description)"
        if await self._ledger.mark_completed(document.id, message) is None:
            return self._superseded(document_id, "at completion")

        logger.info("Document %s completed: %s", document_id, message)
        return IngestionOutcome(document_id, RunStatus.COMPLETED, message, total, total)

    async def _embed_and_upsert(
        self, document: Document, chunks: list[str]
    ) -> UpsertReport:
        semaphore = asyncio.Semaphore(self._concurrency)
        timestamp = datetime.now(UTC).isoformat()
        upserted = 0
        failed_ids: list[str] = []
        errors: list[str] = []

        async def embed_chunk(index: int, text: str) -> VectorRecord:
            async with semaphore:
                values = await self._embedder.embed(text)
            await self._ledger.increment_processed_chunks(document.id)
            return VectorRecord(
                id=chunk_vector_id(document.id, index),
                values=values,
                metadata={
                    "documentId": str(document.id),
                    "userId": document.user_id,
                    "chunkIndex": index,
                    "text": text,
                    "source": document.file_name,
                    "timestamp": timestamp,
                },
            )

        for start in range(0, len(chunks), self._batch_size):
            batch = chunks[start : start + self._batch_size]
            results = await asyncio.gather(
                *(embed_chunk(start + i, text) for i, text in enumerate(batch)),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result

            report = await self._vector_store.upsert(results)
            upserted += report.upserted
            failed_ids.extend(report.failed_ids)
            errors.extend(report.errors)
            logger.debug(
                "Document %s: batch at %d upserted (%d/%d)",
                document.id,
                start,
                report.upserted,
                len(batch),
            )

        return UpsertReport(
            attempted=len(chunks),
            upserted=upserted,
            failed_ids=failed_ids,
            errors=errors,
        )

    async def _record_failure(self, document_id: uuid.UUID, message: str) -> None:
        """
        ``mark_failed`` with a bounded retry and exponential backoff.

        When every attempt fails the error is logged and the run still
        ends with a FAILED outcome; the document stays ``processing``
        until its lease expires and a redelivery re-claims it.
        """
        attempts = max(1, settings.STATUS_WRITE_RETRIES)
        for attempt in range(1, attempts + 1):
            try:
                await self._ledger.mark_failed(document_id, message)
                return
            except Exception as exc:
                if attempt == attempts:
                    logger.exception(
                        "Could not mark %s failed after %d attempts", document_id, attempts
                    )
                    return
                logger.warning(
                    "Marking %s failed (attempt %d/%d) raised %s, retrying",
                    document_id,
                    attempt,
                    attempts,
                    exc,
                )
                await asyncio.sleep(self._status_write_backoff * 2 ** (attempt - 1))

    @staticmethod
    def _superseded(document_id: str, stage: str) -> IngestionOutcome:
        logger.warning("Document %s changed state %s, abandoning run", document_id, stage)
        return IngestionOutcome(
            document_id,
            RunStatus.SUPERSEDED,
            f"Run abandoned {stage}: document state changed",
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def job_for(document: Document) -> IngestionJob:
    """Payload that (re-)enqueues ``document``."""
    extension = None
    if "." in document.file_name:
        extension = document.file_name.rsplit(".", 1)[-1].lower()
    return IngestionJob(
        document_id=str(document.id),
        user_id=document.user_id,
        file_extension=extension,
    )
