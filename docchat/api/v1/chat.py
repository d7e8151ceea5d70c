"""
Chat API Router

Endpoints:
    POST /chat/context - Retrieved document context for a question.
    POST /chat         - Full answer (JSON) or NDJSON stream.

Stream format (``application/x-ndjson``), one JSON object per line::

    {"type": "metadata", "metadata": {...}}
    {"type": "delta", "content": "..."}
    {"type": "done"}
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from docchat.api.deps import get_assembler, get_chat_service, get_user_id
from docchat.models.schemas import RetrievedContext
from docchat.schemas.chat import ChatRequest, ChatResponse, ContextRequest
from docchat.services.chat import ChatService, PreparedChat
from docchat.services.retrieval import ContextAssembler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/context",
    response_model=RetrievedContext,
    summary="Assemble document context for a question",
)
async def chat_context(
    request: ContextRequest,
    user_id: str = Depends(get_user_id),
    assembler: ContextAssembler = Depends(get_assembler),
) -> RetrievedContext:
    return await assembler.assemble(request.question, user_id, request.attachments)


@router.post(
    "",
    response_model=ChatResponse,
    summary="Answer a chat turn grounded in the user's documents",
)
async def chat(
    request: ChatRequest,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    try:
        prepared = await service.prepare(user_id, request.messages, request.web_search)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    logger.info(
        "Chat turn for %s: %d context sources, web search=%s",
        user_id,
        len(prepared.metadata.context_sources),
        prepared.metadata.search_info is not None,
    )

    if request.stream:
        return StreamingResponse(
            _ndjson_stream(service, prepared), media_type="application/x-ndjson"
        )

    response = await service.answer(prepared)
    return ChatResponse(
        answer=response.content,
        is_mocked=response.is_mocked,
        metadata=prepared.metadata,
    )


async def _ndjson_stream(service: ChatService, prepared: PreparedChat) -> AsyncIterator[str]:
    metadata = prepared.metadata.model_dump(mode="json", by_alias=True)
    yield json.dumps({"type": "metadata", "metadata": metadata}) + "\n"
    async for delta in service.stream(prepared):
        yield json.dumps({"type": "delta", "content": delta}) + "\n"
    yield json.dumps({"type": "done"}) + "\n"
