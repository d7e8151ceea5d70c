"""
Worker Webhook

The job queue delivers ingestion jobs here, at least once, signed with
HMAC-SHA256 over the raw body.

    POST /worker/ingest

Status codes tell the queue what to do: 2xx means done (including
duplicate deliveries), 5xx asks for redelivery, 4xx marks a bad request.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import ValidationError

from docchat.api.deps import get_pipeline
from docchat.core.config import settings
from docchat.core.exceptions import (
    DocumentNotFoundError,
    InvalidSignatureError,
    UnauthorizedDocumentAccessError,
)
from docchat.models.schemas import IngestionJob
from docchat.schemas.documents import WorkerResponse
from docchat.services.ingestion import IngestionPipeline
from docchat.services.signatures import SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/ingest",
    response_model=WorkerResponse,
    summary="Process one ingestion job delivery",
    responses={
        200: {"description": "Processed, or ignored as a duplicate"},
        400: {"description": "Malformed payload"},
        401: {"description": "Missing or invalid signature"},
        404: {"description": "Document not found"},
        500: {"description": "Processing failed; the queue may redeliver"},
    },
)
async def ingest_job(
    request: Request,
    response: Response,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> WorkerResponse:
    body = await request.body()

    try:
        key_index = verify_signature(
            body, request.headers.get(SIGNATURE_HEADER), settings.signing_keys
        )
    except InvalidSignatureError as exc:
        logger.warning("Rejected job delivery: %s", exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    if key_index > 0:
        logger.info("Job delivery signed with the next signing key")

    try:
        job = IngestionJob.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid job payload: documentId and userId are required",
        ) from exc

    try:
        outcome = await pipeline.run(job)
    except DocumentNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except UnauthorizedDocumentAccessError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Job for document %s failed outside the pipeline", job.document_id)
        response.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        return WorkerResponse(
            success=False,
            status="failed",
            message=f"Processing failed: {type(exc).__name__}: {exc}",
            document_id=job.document_id,
        )

    if not outcome.succeeded:
        response.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return WorkerResponse(
        success=outcome.succeeded,
        status=outcome.status.value,
        message=outcome.message,
        document_id=outcome.document_id,
        processing_time_ms=outcome.processing_time_ms,
    )
