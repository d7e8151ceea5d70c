"""
Domain Exceptions

Typed failures raised by the services. The API layer maps them onto
HTTP status codes; the ingestion pipeline turns them into ledger
status messages.
"""

from __future__ import annotations


class DocChatError(Exception):
    """Base class for every error raised by docchat services."""


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------


class DocumentNotFoundError(DocChatError):
    def __init__(self, document_id: str) -> None:
        super().__init__("Document not found")
        self.document_id = document_id


class UnauthorizedDocumentAccessError(DocChatError):
    def __init__(self, document_id: str) -> None:
        super().__init__("Unauthorized access to document")
        self.document_id = document_id


class InvalidDocumentStateError(DocChatError):
    """The document is not in the state the operation requires."""

    def __init__(self, document_id: str, status: str, expected: str) -> None:
        super().__init__(f"Document is not in a {expected} state (current: {status})")
        self.document_id = document_id
        self.status = status
        self.expected = expected


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------


class UnsupportedFormatError(DocChatError):
    def __init__(self, mime_type: str) -> None:
        super().__init__(f"Unsupported file type: {mime_type}")
        self.mime_type = mime_type


class EmptyDocumentError(DocChatError):
    def __init__(self) -> None:
        super().__init__("No meaningful text extracted from document")


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------


class DownloadError(DocChatError):
    """Raw bytes could not be fetched from the blob store."""


class EmbeddingError(DocChatError):
    """The embedding provider kept failing after every retry."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class VectorStoreError(DocChatError):
    """A vector store operation failed after retries or timed out."""


class DispatchError(DocChatError):
    """An ingestion job could not be handed to the queue."""


class InvalidSignatureError(DocChatError):
    """Webhook delivery signature is missing or does not match any key."""


class ConfigurationError(DocChatError):
    """A startup invariant does not hold (e.g. embedding dimension mismatch)."""
