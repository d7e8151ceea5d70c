"""
Document Service

User-facing document operations around the ledger: upload and
registration, listing, deletion and manual retry. Ownership is checked
here; the API layer only supplies the caller's user id.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from docchat.core.exceptions import (
    DispatchError,
    DocumentNotFoundError,
    InvalidDocumentStateError,
    UnauthorizedDocumentAccessError,
)
from docchat.models.schemas import Document, ProcessingStatus, chunk_vector_id
from docchat.repositories.documents import DocumentLedger
from docchat.services.blob_store import HttpBlobStore
from docchat.services.dispatcher import JobDispatcher
from docchat.services.extraction import is_supported, resolve_mime_type
from docchat.services.ingestion import job_for
from docchat.services.vector_store import PgVectorStore, VectorStore

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    document: Document
    queued: bool
    message_id: str | None = None
    warning: str | None = None


@dataclass
class DeletionReport:
    """
    Outcome of deleting one document.

    Vectors, blob and ledger row are removed independently; ``success``
    requires all three.
    """

    document_id: uuid.UUID
    vectors_deleted: bool = False
    blob_deleted: bool = False
    record_deleted: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.vectors_deleted and self.blob_deleted and self.record_deleted


class DocumentService:
    def __init__(
        self,
        *,
        dispatcher: JobDispatcher,
        ledger: DocumentLedger | Any | None = None,
        vector_store: VectorStore | None = None,
        blob_store: HttpBlobStore | Any | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._ledger = ledger or DocumentLedger()
        self._vector_store = vector_store or PgVectorStore()
        self._blob_store = blob_store or HttpBlobStore()

    # ------------------------------------------------------------------
    # Upload / read
    # ------------------------------------------------------------------

    async def upload(
        self,
        *,
        user_id: str,
        file_name: str,
        content_type: str | None,
        data: bytes,
        folder_path: str | None = None,
    ) -> UploadResult:
        """
        Store the raw bytes, register a pending document and enqueue it.

        Files of an unsupported type are stored but immediately marked
        failed instead of being queued.
        """
        mime_type = resolve_mime_type(content_type, file_name)
        blob_url = await self._blob_store.upload(file_name, data, mime_type)
        document = await self._ledger.create(
            user_id=user_id,
            file_name=file_name,
            file_type=mime_type,
            file_size=len(data),
            blob_url=blob_url,
            folder_path=folder_path,
        )

        if not is_supported(mime_type, file_name):
            message = f"Unsupported file type: {content_type or mime_type}"
            document = await self._ledger.mark_failed(document.id, message) or document
            return UploadResult(document=document, queued=False, warning=message)

        try:
            message_id = await self._dispatcher.enqueue(job_for(document))
        except DispatchError as exc:
            logger.error("Could not enqueue %s: %s", document.id, exc)
            message = f"Queueing failed: {exc}"
            document = await self._ledger.mark_failed(document.id, message) or document
            return UploadResult(
                document=document,
                queued=False,
                warning="File uploaded but processing could not be queued.",
            )

        await self._ledger.update_status_message(
            document.id,
            f"Queued for processing ({message_id})",
            expected_status=ProcessingStatus.PENDING,
        )
        return UploadResult(
            document=await self._ledger.get(document.id) or document,
            queued=True,
            message_id=message_id,
        )

    async def get_owned(self, document_id: uuid.UUID | str, user_id: str) -> Document:
        """
        Raises:
            DocumentNotFoundError: Unknown id.
            UnauthorizedDocumentAccessError: Owned by another user.
        """
        document = await self._ledger.get(document_id)
        if document is None:
            raise DocumentNotFoundError(str(document_id))
        if document.user_id != user_id:
            raise UnauthorizedDocumentAccessError(str(document_id))
        return document

    async def download(
        self, document_id: uuid.UUID | str, user_id: str
    ) -> tuple[Document, bytes]:
        """
        The caller's document and its stored bytes.

        Raises:
            DocumentNotFoundError: Unknown id.
            UnauthorizedDocumentAccessError: Owned by another user.
            DownloadError: The blob store could not return the file.
        """
        document = await self.get_owned(document_id, user_id)
        return document, await self._blob_store.download(document.blob_url)

    async def list_documents(
        self, user_id: str, folder_path: str | None = None
    ) -> list[Document]:
        return await self._ledger.list_for_user(user_id, folder_path)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete_document(
        self, document_id: uuid.UUID | str, user_id: str
    ) -> DeletionReport:
        """
        Remove a document's vectors, blob and ledger row.

        Vector ids are derived from ``total_chunks``; when it is unknown
        the vectors are deleted by ``documentId`` filter instead. A failing
        step is recorded in the report and does not stop the others.
        """
        document = await self.get_owned(document_id, user_id)
        report = DeletionReport(document_id=document.id)

        try:
            if document.total_chunks:
                ids = [
                    chunk_vector_id(document.id, i) for i in range(document.total_chunks)
                ]
                await self._vector_store.delete_by_ids(ids)
            else:
                await self._vector_store.delete_by_filter({"documentId": str(document.id)})
            report.vectors_deleted = True
        except Exception as exc:
            logger.exception("Deleting vectors of %s failed", document.id)
            report.errors.append(f"vectors: {exc}")

        if document.blob_url:
            try:
                await self._blob_store.delete(document.blob_url)
                report.blob_deleted = True
            except Exception as exc:
                logger.exception("Deleting blob of %s failed", document.id)
                report.errors.append(f"blob: {exc}")
        else:
            report.blob_deleted = True

        try:
            await self._ledger.delete(document.id)
            report.record_deleted = True
        except Exception as exc:
            logger.exception("Deleting ledger row of %s failed", document.id)
            report.errors.append(f"record: {exc}")

        logger.info(
            "Deleted document %s (vectors=%s, blob=%s, record=%s)",
            document.id,
            report.vectors_deleted,
            report.blob_deleted,
            report.record_deleted,
        )
        return report

    async def delete_documents(
        self, document_ids: list[str], user_id: str
    ) -> tuple[list[str], list[tuple[str, str]]]:
        """Batch delete; returns (deleted ids, [(id, error), ...])."""
        deleted: list[str] = []
        failed: list[tuple[str, str]] = []
        for document_id in document_ids:
            try:
                report = await self.delete_document(document_id, user_id)
            except (DocumentNotFoundError, UnauthorizedDocumentAccessError) as exc:
                failed.append((document_id, str(exc)))
                continue
            if report.success:
                deleted.append(document_id)
            else:
                failed.append((document_id, "; ".join(report.errors)))
        return deleted, failed

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    async def retry_document_processing(
        self, document_id: uuid.UUID | str, user_id: str
    ) -> str:
        """
        Reset a failed document to pending and enqueue it again.

        Returns:
            The queue message id.

        Raises:
            DocumentNotFoundError, UnauthorizedDocumentAccessError,
            InvalidDocumentStateError: Not currently failed.
            DispatchError: The job could not be enqueued (the document is
                marked failed again).
        """
        document = await self.get_owned(document_id, user_id)
        if document.processing_status is not ProcessingStatus.FAILED:
            raise InvalidDocumentStateError(
                str(document.id), document.processing_status.value, "failed"
            )

        reset = await self._ledger.reset_for_retry(document.id)
        if reset is None:
            current = await self._ledger.get(document.id) or document
            raise InvalidDocumentStateError(
                str(document.id), current.processing_status.value, "failed"
            )

        try:
            message_id = await self._dispatcher.enqueue(job_for(reset))
        except DispatchError as exc:
            await self._ledger.mark_failed(document.id, f"Failed to retry: {exc}")
            raise

        await self._ledger.update_status_message(
            document.id,
            f"Queued for processing ({message_id})",
            expected_status=ProcessingStatus.PENDING,
        )
        logger.info("Retry queued for %s (message=%s)", document.id, message_id)
        return message_id
