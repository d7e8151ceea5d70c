"""
Retrieval & Context Assembly

Request-time half of the RAG flow: embed the question, fetch the
user's nearest chunks, format them as a context block and pick the
instruction that tells the model how much to lean on one document.

Instruction decision table (deterministic):

    generic question?  intended document?  relevance >= threshold  variant
    no                 -                   -                       DEFAULT
    yes                no                  -                       CLARIFY
    yes                yes                 yes                     FOCUS
    yes                yes                 no                      WARN

``relevance`` is the fraction of retrieved matches whose metadata
``documentId`` equals the intended document.

Retrieval never fails a chat request: embedding or query errors and
timeouts degrade to an empty context.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any, Final

from docchat.core.config import settings
from docchat.models.schemas import (
    Attachment,
    ContextSource,
    InstructionVariant,
    RetrievedContext,
    VectorMatch,
)
from docchat.services.embedding import EmbeddingClient
from docchat.services.intent import (
    LexiconIntentClassifier,
    QueryIntent,
    QueryIntentClassifier,
)
from docchat.services.vector_store import PgVectorStore, VectorStore

logger = logging.getLogger(__name__)

FALLBACK_DOCUMENT_NAME: Final[str] = "recently uploaded document"

_CITE = 'mention the source document (e.g., "According to [SOURCE NAME]")'

DEFAULT_INSTRUCTIONS: Final[str] = (
    "Use the above context information to answer the user's question if relevant. "
    f"When using information from the context, {_CITE}. "
    "If the context doesn't contain information relevant to the user's query, "
    "rely on your general knowledge or web search."
)
FOCUS_INSTRUCTIONS: Final[str] = (
    'IMPORTANT: The user is referring to the document "{name}". '
    "Please provide a comprehensive summary or analysis based on the context "
    f"provided from that document. When using information from the context, {_CITE}."
)
WARN_INSTRUCTIONS: Final[str] = (
    'NOTE: The user appears to be asking about the document "{name}", but the '
    "retrieved context may not contain sufficient information from this document. "
    f"Please do your best to summarize the available context, {_CITE}. "
    "If the context isn't sufficient, politely explain that you don't have enough "
    "information about this specific document."
)
CLARIFY_INSTRUCTIONS: Final[str] = (
    "NOTE: The user asked a generic question about a document, but it's unclear "
    "which specific document they're referring to. Use the context provided if "
    f"relevant, {_CITE}. If you're unsure which document they mean, please ask "
    "for clarification."
)


def select_instruction(
    is_generic: bool,
    has_intended_document: bool,
    relevance: float | None,
    threshold: float,
) -> InstructionVariant:
    """Decision table: (generic?, intended document?, relevance) → variant."""
    if not is_generic:
        return InstructionVariant.DEFAULT
    if not has_intended_document:
        return InstructionVariant.CLARIFY
    if relevance is not None and relevance >= threshold:
        return InstructionVariant.FOCUS
    return InstructionVariant.WARN


def render_instructions(variant: InstructionVariant, document_name: str | None) -> str:
    name = document_name or FALLBACK_DOCUMENT_NAME
    if variant is InstructionVariant.FOCUS:
        return FOCUS_INSTRUCTIONS.format(name=name)
    if variant is InstructionVariant.WARN:
        return WARN_INSTRUCTIONS.format(name=name)
    if variant is InstructionVariant.CLARIFY:
        return CLARIFY_INSTRUCTIONS
    return DEFAULT_INSTRUCTIONS


def document_relevance(matches: Sequence[VectorMatch], document_id: str) -> float:
    """Fraction of ``matches`` that belong to ``document_id``."""
    if not matches:
        return 0.0
    hits = sum(1 for m in matches if str(m.metadata.get("documentId")) == document_id)
    return hits / len(matches)


def format_match(match: VectorMatch) -> str:
    source = match.metadata.get("source", "unknown")
    text = match.metadata.get("text", "")
    return f"[SOURCE: {source}] (relevance: {match.score:.2f})\n{text}"


class ContextAssembler:
    """
    Builds the document context for one chat turn.

    Usage::

        assembler = ContextAssembler()
        ctx = await assembler.assemble("summarize this", user_id, attachments)
        system_prompt = BASE_PROMPT + ctx.system_prompt_addition()
    """

    def __init__(
        self,
        *,
        embedder: EmbeddingClient | Any | None = None,
        vector_store: VectorStore | None = None,
        classifier: QueryIntentClassifier | None = None,
        top_k: int | None = None,
        relevance_threshold: float | None = None,
        timeout: float | None = None,
    ) -> None:
        self._embedder = embedder or EmbeddingClient()
        self._vector_store = vector_store or PgVectorStore()
        self._classifier = classifier or LexiconIntentClassifier()
        self._top_k = top_k or settings.RETRIEVAL_TOP_K
        self._threshold = (
            settings.RELEVANCE_THRESHOLD
            if relevance_threshold is None
            else relevance_threshold
        )
        self._timeout = timeout or settings.RETRIEVAL_TIMEOUT_SECONDS

    async def assemble(
        self,
        question: str,
        user_id: str,
        attachments: Sequence[Attachment] = (),
    ) -> RetrievedContext:
        intent = self._classifier.classify(question, attachments)

        try:
            matches = await asyncio.wait_for(
                self._retrieve(question, user_id), timeout=self._timeout
            )
        except TimeoutError:
            logger.warning(
                "Retrieval timed out after %.1fs, answering without document context",
                self._timeout,
            )
            return self._without_context(intent)
        except Exception:
            logger.exception("Retrieval failed, answering without document context")
            return self._without_context(intent)

        return self._build(intent, matches)

    async def _retrieve(self, question: str, user_id: str) -> list[VectorMatch]:
        vector = await self._embedder.embed(question)
        return await self._vector_store.query(
            vector, top_k=self._top_k, filter={"userId": user_id}
        )

    def _build(self, intent: QueryIntent, matches: list[VectorMatch]) -> RetrievedContext:
        relevance: float | None = None
        name = intent.document_name
        if intent.document_id is not None:
            relevance = document_relevance(matches, intent.document_id)
            for match in matches:
                if str(match.metadata.get("documentId")) == intent.document_id:
                    name = match.metadata.get("source") or name
                    break

        variant = select_instruction(
            intent.is_generic, intent.document_id is not None, relevance, self._threshold
        )
        logger.info(
            "Retrieved %d matches (generic=%s, intended=%s, relevance=%s, variant=%s)",
            len(matches),
            intent.is_generic,
            intent.document_id,
            None if relevance is None else round(relevance, 2),
            variant.value,
        )

        return RetrievedContext(
            context_text="\n\n".join(format_match(m) for m in matches),
            sources=[
                ContextSource(
                    source=str(m.metadata.get("source", "unknown")),
                    content=str(m.metadata.get("text", "")),
                    relevance=m.score,
                )
                for m in matches
            ],
            vector_ids=[m.id for m in matches],
            is_generic_query=intent.is_generic,
            intended_document_id=intent.document_id,
            intended_document_name=name,
            relevance=relevance,
            instruction_variant=variant,
            instructions=render_instructions(variant, name),
        )

    @staticmethod
    def _without_context(intent: QueryIntent) -> RetrievedContext:
        return RetrievedContext(
            is_generic_query=intent.is_generic,
            intended_document_id=intent.document_id,
            intended_document_name=intent.document_name,
            degraded=True,
        )
