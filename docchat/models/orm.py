"""
Database Models

SQLAlchemy 2.0 ORM models for the document ledger and the vector index.

Tables:
    documents      : One row per uploaded file: lifecycle status and
                     chunk progress counters (the Document Status Ledger).
    vector_chunks  : Embedded chunks keyed by ``{documentId}_chunk_{i}``,
                     searchable by cosine distance via pgvector.

The two tables are not linked by a foreign key. The vector index is an
external store; document deletion cleans up each side independently.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from docchat.core.config import settings
from docchat.models.base import Base, TimestampMixin


class DocumentRecord(TimestampMixin, Base):
    """
    Persistent lifecycle record for an uploaded document.

    Attributes:
        id: UUID primary key (generated Python-side).
        user_id: Owner; every read and mutation is scoped by it.
        file_name: Original filename, also the ``source`` of its chunks.
        file_type: MIME type reported at upload.
        file_size: Size of the raw bytes.
        blob_url: Pointer to the raw bytes, empty for inline artifacts.
        folder_path: Optional hierarchical grouping.
        processing_status: pending → processing → completed | failed.
        status_message: Human-readable diagnostic shown to the user.
        total_chunks: Set once chunking completes.
        processed_chunks: Counter, only ever changed by atomic UPDATEs.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "processing_status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_documents_processing_status",
        ),
        CheckConstraint(
            "total_chunks IS NULL OR processed_chunks <= total_chunks",
            name="ck_documents_processed_le_total",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_type: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    blob_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    folder_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    processing_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        server_default="pending",
    )
    status_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_chunks: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processed_chunks: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )

    def __repr__(self) -> str:
        return (
            f"<DocumentRecord(id={self.id!s:.8}, file='{self.file_name}', "
            f"status={self.processing_status})>"
        )


class VectorChunkRecord(Base):
    """
    One embedded chunk in the vector index.

    ``metadata`` mirrors the external vector-store contract
    (documentId, userId, chunkIndex, text, source, timestamp); the
    ``user_id`` and ``document_id`` columns duplicate two of those keys
    so the per-user filter and delete-by-document hit B-tree indexes.
    """

    __tablename__ = "vector_chunks"

    id: Mapped[str] = mapped_column(String(300), primary_key=True)
    document_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    embedding: Mapped[list[float]] = mapped_column(
        Vector(settings.EMBEDDING_DIMENSION),
        nullable=False,
    )
    chunk_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
    )
    upserted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return f"<VectorChunkRecord(id='{self.id}', user={self.user_id})>"
