"""
Documents API Router

Endpoints:
    POST   /documents                - Upload a file and enqueue ingestion.
    GET    /documents                - List the caller's documents.
    GET    /documents/{id}           - Status and progress of one document.
    GET    /documents/{id}/download  - The original file.
    DELETE /documents/{id}           - Delete vectors, blob and record.
    POST   /documents/batch-delete   - Delete several documents.
    POST   /documents/{id}/retry     - Re-enqueue a failed document.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx
from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    HTTPException,
    Response,
    UploadFile,
    status,
)

from docchat.api.deps import get_document_service, get_user_id, http_error
from docchat.core.config import settings
from docchat.core.exceptions import DocChatError, DownloadError
from docchat.schemas.documents import (
    BatchDeleteFailure,
    BatchDeleteRequest,
    BatchDeleteResponse,
    DeleteResponse,
    DocumentResponse,
    RetryResponse,
    UploadResponse,
)
from docchat.services.documents import DocumentService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "",
    response_model=UploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a document for ingestion",
    responses={
        202: {"description": "Stored and queued (or stored and marked failed)"},
        413: {"description": "File too large"},
        502: {"description": "Blob store unavailable"},
    },
)
async def upload_document(
    file: UploadFile = File(...),
    folder_path: str | None = Form(default=None),
    user_id: str = Depends(get_user_id),
    service: DocumentService = Depends(get_document_service),
) -> UploadResponse:
    """
    Upload a file; ingestion runs asynchronously.

    Poll ``GET /documents/{id}`` for progress.
    """
    raw = await file.read()
    if len(raw) > settings.MAX_FILE_SIZE_BYTES:
        limit_mb = settings.MAX_FILE_SIZE_BYTES // (1024 * 1024)
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large. Maximum size is {limit_mb}MB",
        )

    try:
        result = await service.upload(
            user_id=user_id,
            file_name=file.filename or "unnamed",
            content_type=file.content_type,
            data=raw,
            folder_path=folder_path,
        )
    except httpx.HTTPError as exc:
        logger.error("Blob upload failed for '%s': %s", file.filename, exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail="File storage unavailable"
        ) from exc

    return UploadResponse(
        document=DocumentResponse.from_document(result.document),
        queued=result.queued,
        message_id=result.message_id,
        warning=result.warning,
    )


@router.get("", response_model=list[DocumentResponse], summary="List documents")
async def list_documents(
    folder_path: str | None = None,
    user_id: str = Depends(get_user_id),
    service: DocumentService = Depends(get_document_service),
) -> list[DocumentResponse]:
    documents = await service.list_documents(user_id, folder_path)
    return [DocumentResponse.from_document(d) for d in documents]


@router.post(
    "/batch-delete",
    response_model=BatchDeleteResponse,
    summary="Delete several documents",
)
async def batch_delete(
    request: BatchDeleteRequest,
    user_id: str = Depends(get_user_id),
    service: DocumentService = Depends(get_document_service),
) -> BatchDeleteResponse:
    deleted, failed = await service.delete_documents(request.document_ids, user_id)
    return BatchDeleteResponse(
        message=f"Deleted {len(deleted)} documents, {len(failed)} failed",
        success=deleted,
        failed=[BatchDeleteFailure(id=doc_id, error=error) for doc_id, error in failed],
    )


@router.get(
    "/{document_id}",
    response_model=DocumentResponse,
    summary="Document status and progress",
)
async def get_document(
    document_id: str,
    user_id: str = Depends(get_user_id),
    service: DocumentService = Depends(get_document_service),
) -> DocumentResponse:
    try:
        document = await service.get_owned(document_id, user_id)
    except DocChatError as exc:
        raise http_error(exc) from exc
    return DocumentResponse.from_document(document)


@router.get(
    "/{document_id}/download",
    summary="Download the original file",
    response_class=Response,
    responses={
        403: {"description": "Document belongs to another user"},
        404: {"description": "Document not found"},
        502: {"description": "Blob store unavailable"},
    },
)
async def download_document(
    document_id: str,
    user_id: str = Depends(get_user_id),
    service: DocumentService = Depends(get_document_service),
) -> Response:
    try:
        document, data = await service.download(document_id, user_id)
    except DownloadError as exc:
        logger.error("Download of %s failed: %s", document_id, exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail="File storage unavailable"
        ) from exc
    except DocChatError as exc:
        raise http_error(exc) from exc

    return Response(
        content=data,
        media_type=document.file_type or "application/octet-stream",
        headers={
            "Content-Disposition": (
                f"attachment; filename*=utf-8''{quote(document.file_name)}"
            )
        },
    )


@router.delete(
    "/{document_id}",
    response_model=DeleteResponse,
    summary="Delete a document and its vectors",
    responses={500: {"description": "Some resources could not be removed"}},
)
async def delete_document(
    document_id: str,
    response: Response,
    user_id: str = Depends(get_user_id),
    service: DocumentService = Depends(get_document_service),
) -> DeleteResponse:
    try:
        report = await service.delete_document(document_id, user_id)
    except DocChatError as exc:
        raise http_error(exc) from exc

    if not report.success:
        response.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return DeleteResponse(
        document_id=report.document_id,
        success=report.success,
        vectors_deleted=report.vectors_deleted,
        blob_deleted=report.blob_deleted,
        record_deleted=report.record_deleted,
        errors=report.errors,
    )


@router.post(
    "/{document_id}/retry",
    response_model=RetryResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry processing of a failed document",
    responses={
        404: {"description": "Document not found"},
        403: {"description": "Document belongs to another user"},
        409: {"description": "Document is not in a failed state"},
        503: {"description": "Job could not be queued"},
    },
)
async def retry_document(
    document_id: str,
    user_id: str = Depends(get_user_id),
    service: DocumentService = Depends(get_document_service),
) -> RetryResponse:
    try:
        message_id = await service.retry_document_processing(document_id, user_id)
        document = await service.get_owned(document_id, user_id)
    except DocChatError as exc:
        raise http_error(exc) from exc

    return RetryResponse(
        document_id=document.id,
        message_id=message_id,
        message="Document queued for reprocessing",
    )
