"""
Chat Orchestrator

One chat turn: document context for the last user message, optional
web search, system prompt assembly and generation.

System prompt layout::

    {base prompt}

    RELEVANT DOCUMENT CONTEXT:
    {context}

    {instructions}

    WEB SEARCH RESULTS:
    {results}
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass

from docchat.models.schemas import MessageMetadata, RetrievedContext, SearchInfo
from docchat.schemas.chat import ChatMessage
from docchat.services.llm import BASE_SYSTEM_PROMPT, LLMResponse, LLMService
from docchat.services.retrieval import ContextAssembler
from docchat.services.web_search import WebSearchService, format_web_results

logger = logging.getLogger(__name__)


@dataclass
class PreparedChat:
    system_prompt: str
    messages: list[dict[str, str]]
    context: RetrievedContext
    metadata: MessageMetadata


def build_system_prompt(
    context: RetrievedContext,
    search_info: SearchInfo | None = None,
    base: str = BASE_SYSTEM_PROMPT,
) -> str:
    prompt = base + context.system_prompt_addition()
    if search_info is not None and search_info.results:
        prompt += f"\n\nWEB SEARCH RESULTS:\n{format_web_results(search_info.results)}"
    return prompt


class ChatService:
    def __init__(
        self,
        *,
        assembler: ContextAssembler | None = None,
        llm: LLMService | None = None,
        web_search: WebSearchService | None = None,
    ) -> None:
        self._assembler = assembler or ContextAssembler()
        self._llm = llm or LLMService()
        self._web_search = web_search or WebSearchService(llm=self._llm)

    async def prepare(
        self,
        user_id: str,
        messages: Sequence[ChatMessage],
        use_web_search: bool = False,
    ) -> PreparedChat:
        """
        Retrieve context for the last user message and build the prompt.

        Raises:
            ValueError: If there is no user message.
        """
        last_user = next((m for m in reversed(messages) if m.role == "user"), None)
        if last_user is None:
            raise ValueError("Conversation has no user message")

        context = await self._assembler.assemble(
            last_user.content, user_id, last_user.attachments
        )

        search_info: SearchInfo | None = None
        if use_web_search and self._web_search.enabled:
            search_info = await self._web_search.search_with_enhancement(
                last_user.content, context.context_text
            )

        return PreparedChat(
            system_prompt=build_system_prompt(context, search_info),
            messages=[
                {"role": m.role, "content": m.content}
                for m in messages
                if m.role != "system"
            ],
            context=context,
            metadata=MessageMetadata(
                context_sources=context.sources,
                vector_ids=context.vector_ids,
                search_info=search_info,
            ),
        )

    async def answer(self, prepared: PreparedChat) -> LLMResponse:
        return await self._llm.chat(prepared.system_prompt, prepared.messages)

    def stream(self, prepared: PreparedChat) -> AsyncIterator[str]:
        return self._llm.stream_chat(prepared.system_prompt, prepared.messages)
