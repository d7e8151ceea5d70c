"""
Domain Schemas

Pydantic models for the data flowing between the ledger, the ingestion
pipeline, the vector store and the context assembler.

Wire contracts shared with external collaborators (job payload, vector
metadata, message metadata, chat attachments) use camelCase aliases;
``populate_by_name`` lets Python code construct them with snake_case.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ProcessingStatus(str, Enum):
    """Lifecycle states of a document in the ledger."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Document(BaseModel):
    """
    Snapshot of a ledger row.

    Produced by DocumentLedger from ``DocumentRecord`` and by the
    in-memory ledgers used in tests. Never mutated in place; every
    transition returns a fresh snapshot.
    """

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    file_name: str
    file_type: str
    file_size: int = Field(default=0, ge=0)
    blob_url: str = ""
    folder_path: str | None = None
    title: str | None = None
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    status_message: str | None = None
    total_chunks: int | None = None
    processed_chunks: int = Field(default=0, ge=0)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def progress(self) -> int:
        """Percentage of chunks embedded (0 while the total is unknown)."""
        if self.processing_status is ProcessingStatus.COMPLETED:
            return 100
        if not self.total_chunks:
            return 0
        return min(100, round(self.processed_chunks / self.total_chunks * 100))


class IngestionJob(BaseModel):
    """Payload the dispatcher enqueues and the worker webhook receives."""

    model_config = ConfigDict(populate_by_name=True)

    document_id: str = Field(alias="documentId", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    file_extension: str | None = Field(default=None, alias="fileExtension")


# ---------------------------------------------------------------------------
# Vector store contract
# ---------------------------------------------------------------------------


def chunk_vector_id(document_id: UUID | str, chunk_index: int) -> str:
    """Deterministic vector id: ``{documentId}_chunk_{index}``."""
    return f"{document_id}_chunk_{chunk_index}"


class VectorRecord(BaseModel):
    """A chunk ready for upsert: id, embedding values and metadata."""

    id: str
    values: list[float]
    metadata: dict[str, Any] = Field(default_factory=dict)


class VectorMatch(BaseModel):
    """A nearest-neighbour hit returned by ``VectorStore.query``."""

    id: str
    score: float
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Chat / retrieval contract
# ---------------------------------------------------------------------------


class Attachment(BaseModel):
    """File attached to a chat message."""

    model_config = ConfigDict(populate_by_name=True)

    url: str = ""
    name: str = ""
    content_type: str | None = Field(default=None, alias="contentType")
    document_id: str | None = Field(default=None, alias="documentId")


class InstructionVariant(str, Enum):
    """Which instruction block is appended after the retrieved context."""

    DEFAULT = "default"
    FOCUS = "focus"
    WARN = "warn"
    CLARIFY = "clarify"


class ContextSource(BaseModel):
    source: str
    content: str
    relevance: float


class WebSearchResult(BaseModel):
    title: str = ""
    url: str = ""
    content: str = ""
    score: float = 0.0


class SearchInfo(BaseModel):
    original: str
    enhanced: str
    results: list[WebSearchResult] = Field(default_factory=list)


class MessageMetadata(BaseModel):
    """Audit trail attached to a generated chat answer."""

    model_config = ConfigDict(populate_by_name=True)

    context_sources: list[ContextSource] = Field(
        default_factory=list, alias="contextSources"
    )
    vector_ids: list[str] = Field(default_factory=list, alias="vectorIds")
    search_info: SearchInfo | None = Field(default=None, alias="searchInfo")


class RetrievedContext(BaseModel):
    """
    Output of the context assembler.

    Attributes:
        context_text: Formatted context block, empty when nothing was found
            or retrieval degraded.
        sources: One entry per match, in rank order.
        vector_ids: Ids of the matches, in rank order.
        is_generic_query: Whether the question matched the generic lexicon.
        intended_document_id: Attachment the user most likely refers to.
        intended_document_name: Display name used in the instructions.
        relevance: Fraction of matches belonging to the intended document.
        instruction_variant: Decision-table outcome.
        instructions: Instruction text appended after the context.
        degraded: True when embedding or querying failed or timed out.
    """

    context_text: str = ""
    sources: list[ContextSource] = Field(default_factory=list)
    vector_ids: list[str] = Field(default_factory=list)
    is_generic_query: bool = False
    intended_document_id: str | None = None
    intended_document_name: str | None = None
    relevance: float | None = None
    instruction_variant: InstructionVariant = InstructionVariant.DEFAULT
    instructions: str = ""
    degraded: bool = False

    def system_prompt_addition(self) -> str:
        """Block appended to the base system prompt; empty without context."""
        if not self.context_text:
            return ""
        return (
            f"\n\nRELEVANT DOCUMENT CONTEXT:\n{self.context_text}"
            f"\n\n{self.instructions}"
        )
