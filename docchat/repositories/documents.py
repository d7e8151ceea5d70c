"""
Document Status Ledger

Data access layer for the ``documents`` table, the single source of
truth for document lifecycle state that both the ingestion worker and
the API read and write.

Every mutation is one atomic ``UPDATE ... WHERE <guard> RETURNING``
statement in its own transaction, never a read-modify-write:

    - ``claim_for_processing`` moves pending → processing only if the row
      is still pending (or its processing lease went stale), so exactly
      one of several concurrent deliveries wins.
    - ``increment_processed_chunks`` adds one in SQL and refuses to go
      past ``total_chunks``.
    - completed / failed transitions only leave processing (or pending),
      and ``reset_for_retry`` only leaves failed.

A guard that does not match returns ``None`` instead of raising; the
caller decides whether that is a duplicate, a race or an error.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docchat.core.database import get_session_factory
from docchat.models.orm import DocumentRecord
from docchat.models.schemas import Document, ProcessingStatus

logger = logging.getLogger(__name__)


def as_uuid(document_id: uuid.UUID | str) -> uuid.UUID | None:
    """Parse a document id; malformed ids yield None (treated as not found)."""
    if isinstance(document_id, uuid.UUID):
        return document_id
    try:
        return uuid.UUID(str(document_id))
    except ValueError:
        return None


class DocumentLedger:
    """
    Repository for document lifecycle records.

    Opens a short-lived session per call from ``session_factory``
    (defaults to the application-wide factory), which suits background
    jobs that outlive any request-scoped session.
    """

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession] | None = None
    ) -> None:
        self._session_factory = session_factory

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    # ------------------------------------------------------------------
    # Create / read / delete
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        user_id: str,
        file_name: str,
        file_type: str,
        file_size: int = 0,
        blob_url: str = "",
        folder_path: str | None = None,
        title: str | None = None,
        document_id: uuid.UUID | None = None,
    ) -> Document:
        """Insert a new pending document and return its snapshot."""
        record = DocumentRecord(
            id=document_id or uuid.uuid4(),
            user_id=user_id,
            file_name=file_name,
            file_type=file_type,
            file_size=file_size,
            blob_url=blob_url,
            folder_path=folder_path,
            title=title or file_name,
            processing_status=ProcessingStatus.PENDING.value,
            processed_chunks=0,
        )
        async with self._sessions()() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
        logger.info("Created document %s ('%s') for user %s", record.id, file_name, user_id)
        return Document.model_validate(record)

    async def get(self, document_id: uuid.UUID | str) -> Document | None:
        """Look up a document by id."""
        doc_uuid = as_uuid(document_id)
        if doc_uuid is None:
            return None
        async with self._sessions()() as session:
            result = await session.execute(
                select(DocumentRecord).where(DocumentRecord.id == doc_uuid)
            )
            record = result.scalars().first()
        return Document.model_validate(record) if record is not None else None

    async def list_for_user(
        self,
        user_id: str,
        folder_path: str | None = None,
    ) -> list[Document]:
        """All documents of a user, newest first."""
        stmt = select(DocumentRecord).where(DocumentRecord.user_id == user_id)
        if folder_path is not None:
            stmt = stmt.where(DocumentRecord.folder_path == folder_path)
        stmt = stmt.order_by(DocumentRecord.created_at.desc())
        async with self._sessions()() as session:
            result = await session.execute(stmt)
            return [Document.model_validate(r) for r in result.scalars().all()]

    async def delete(self, document_id: uuid.UUID | str) -> bool:
        """Delete the ledger row; returns False if it did not exist."""
        doc_uuid = as_uuid(document_id)
        if doc_uuid is None:
            return False
        async with self._sessions()() as session:
            result = await session.execute(
                delete(DocumentRecord)
                .where(DocumentRecord.id == doc_uuid)
                .returning(DocumentRecord.id)
            )
            deleted = result.first() is not None
            await session.commit()
        return deleted

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    async def claim_for_processing(
        self,
        document_id: uuid.UUID | str,
        lease_minutes: int = 0,
    ) -> Document | None:
        """
        Atomically move a document to ``processing``.

        Succeeds for pending documents, and for processing documents whose
        last update is older than ``lease_minutes`` (an abandoned run).
        A re-claim keeps the progress counters of the abandoned run; the
        new run overwrites the same vectors and the counter stays capped
        at ``total_chunks``.

        Returns:
            The claimed document, or None when another delivery owns it
            or it already reached a terminal state.
        """
        guard = DocumentRecord.processing_status == ProcessingStatus.PENDING.value
        if lease_minutes > 0:
            cutoff = datetime.now(UTC) - timedelta(minutes=lease_minutes)
            guard = or_(
                guard,
                (DocumentRecord.processing_status == ProcessingStatus.PROCESSING.value)
                & (DocumentRecord.updated_at < cutoff),
            )
        return await self._transition(
            document_id,
            guard,
            processing_status=ProcessingStatus.PROCESSING.value,
            status_message="Starting document processing",
        )

    async def set_total_chunks(
        self, document_id: uuid.UUID | str, total_chunks: int
    ) -> Document | None:
        """
        Record the chunk count of a processing document.

        A counter carried over from an abandoned run is capped at the new
        total.
        """
        return await self._transition(
            document_id,
            DocumentRecord.processing_status == ProcessingStatus.PROCESSING.value,
            total_chunks=total_chunks,
            processed_chunks=func.least(DocumentRecord.processed_chunks, total_chunks),
            status_message=f"Split into {total_chunks} chunks, generating embeddings",
        )

    async def increment_processed_chunks(
        self, document_id: uuid.UUID | str
    ) -> Document | None:
        """
        ``processed_chunks = processed_chunks + 1`` in a single statement.

        Returns None (and leaves the row untouched) once the counter has
        reached ``total_chunks``.
        """
        updated = await self._transition(
            document_id,
            (DocumentRecord.total_chunks.is_(None))
            | (DocumentRecord.processed_chunks < DocumentRecord.total_chunks),
            processed_chunks=DocumentRecord.processed_chunks + 1,
        )
        if updated is None:
            logger.warning("Progress counter of %s already at total", document_id)
        return updated

    async def update_status_message(
        self,
        document_id: uuid.UUID | str,
        message: str,
        *,
        expected_status: ProcessingStatus | None = None,
    ) -> Document | None:
        """Replace the status message, optionally only in a given state."""
        guard = None
        if expected_status is not None:
            guard = DocumentRecord.processing_status == expected_status.value
        return await self._transition(document_id, guard, status_message=message)

    async def mark_completed(
        self, document_id: uuid.UUID | str, message: str
    ) -> Document | None:
        return await self._transition(
            document_id,
            DocumentRecord.processing_status == ProcessingStatus.PROCESSING.value,
            processing_status=ProcessingStatus.COMPLETED.value,
            status_message=message,
        )

    async def mark_failed(
        self, document_id: uuid.UUID | str, message: str
    ) -> Document | None:
        return await self._transition(
            document_id,
            DocumentRecord.processing_status.in_(
                [ProcessingStatus.PENDING.value, ProcessingStatus.PROCESSING.value]
            ),
            processing_status=ProcessingStatus.FAILED.value,
            status_message=message,
        )

    async def reset_for_retry(
        self, document_id: uuid.UUID | str, message: str = "Retrying document processing"
    ) -> Document | None:
        """failed → pending, clearing progress for the new run."""
        return await self._transition(
            document_id,
            DocumentRecord.processing_status == ProcessingStatus.FAILED.value,
            processing_status=ProcessingStatus.PENDING.value,
            status_message=message,
            total_chunks=None,
            processed_chunks=0,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _transition(
        self,
        document_id: uuid.UUID | str,
        guard: Any,
        **values: Any,
    ) -> Document | None:
        doc_uuid = as_uuid(document_id)
        if doc_uuid is None:
            return None

        stmt = update(DocumentRecord).where(DocumentRecord.id == doc_uuid)
        if guard is not None:
            stmt = stmt.where(guard)
        stmt = (
            stmt.values(**values, updated_at=func.now())
            .returning(DocumentRecord)
            .execution_options(synchronize_session=False)
        )

        async with self._sessions()() as session:
            result = await session.execute(stmt)
            record = result.scalars().first()
            await session.commit()
        return Document.model_validate(record) if record is not None else None

