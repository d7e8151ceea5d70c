"""
Chat API Schemas

Pydantic models for the chat and context endpoints.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from docchat.models.schemas import Attachment, MessageMetadata


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str = Field(..., max_length=32000)
    attachments: list[Attachment] = Field(default_factory=list)


class ChatRequest(BaseModel):
    """Request body for a chat turn."""

    messages: list[ChatMessage] = Field(..., min_length=1)
    web_search: bool = Field(default=False, description="Augment with live web results")
    stream: bool = Field(default=False, description="Stream NDJSON deltas")


class ContextRequest(BaseModel):
    """Request body for context assembly only."""

    question: str = Field(..., min_length=1, max_length=32000)
    attachments: list[Attachment] = Field(default_factory=list)


class ChatResponse(BaseModel):
    answer: str
    is_mocked: bool = Field(
        default=False,
        description="True if the LLM was unavailable and the answer is simulated",
    )
    metadata: MessageMetadata
