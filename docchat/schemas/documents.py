"""
Document API Schemas

Pydantic models for the document and worker endpoint request/response cycle.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from docchat.models.schemas import Document, ProcessingStatus


class DocumentResponse(BaseModel):
    """Ledger view of a document returned to the client."""

    id: UUID
    file_name: str
    file_type: str
    file_size: int
    folder_path: str | None = None
    title: str | None = None
    processing_status: ProcessingStatus
    status_message: str | None = None
    total_chunks: int | None = None
    processed_chunks: int = 0
    progress: int = Field(description="Embedding progress in percent (0-100)")
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_document(cls, document: Document) -> DocumentResponse:
        return cls(
            **document.model_dump(exclude={"user_id", "blob_url"}),
            progress=document.progress,
        )


class UploadResponse(BaseModel):
    """Response for the upload endpoint."""

    document: DocumentResponse
    queued: bool = Field(description="True if an ingestion job was enqueued")
    message_id: str | None = Field(default=None, description="Queue message id")
    warning: str | None = None


class RetryResponse(BaseModel):
    document_id: UUID
    message_id: str
    message: str


class DeleteResponse(BaseModel):
    """Per-resource outcome of a document deletion."""

    document_id: UUID
    success: bool = Field(description="True only if every resource was removed")
    vectors_deleted: bool
    blob_deleted: bool
    record_deleted: bool
    errors: list[str] = Field(default_factory=list)


class BatchDeleteRequest(BaseModel):
    document_ids: list[str] = Field(..., min_length=1, max_length=100)


class BatchDeleteFailure(BaseModel):
    id: str
    error: str


class BatchDeleteResponse(BaseModel):
    message: str
    success: list[str] = Field(default_factory=list)
    failed: list[BatchDeleteFailure] = Field(default_factory=list)


class WorkerResponse(BaseModel):
    """Answer to the job queue; non-2xx statuses trigger redelivery."""

    success: bool
    status: str
    message: str
    document_id: str | None = None
    processing_time_ms: int | None = None
