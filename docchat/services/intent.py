"""
Query Intent Classification

Decides whether a chat question is a generic request about "this
document" and, if so, which attached document it most likely refers to.

The strategy is pluggable (``QueryIntentClassifier``); the default
``LexiconIntentClassifier`` is driven by the GENERIC_QUERY_LEXICON
setting. A question is generic when, lower-cased and trimmed, it equals
a lexicon phrase, starts with the phrase followed by a space, or
contains it.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol

from docchat.core.config import settings
from docchat.models.schemas import Attachment

_UUID = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
UUID_PATH_SEGMENT = re.compile(rf"/({_UUID})(?:/|$)", re.IGNORECASE)
UUID_ANYWHERE = re.compile(_UUID, re.IGNORECASE)


@dataclass(frozen=True)
class QueryIntent:
    """
    Attributes:
        is_generic: The question matched the generic lexicon.
        document_id: Intended document, only set for generic questions
            with exactly one attachment that carries an identifiable id.
        document_name: Attachment name, if any.
    """

    is_generic: bool
    document_id: str | None = None
    document_name: str | None = None


class QueryIntentClassifier(Protocol):
    def classify(self, text: str, attachments: Sequence[Attachment]) -> QueryIntent: ...


def attachment_document_id(attachment: Attachment) -> str | None:
    """
    Document id of an attachment.

    Explicit ``documentId`` first, then a UUID path segment of the URL,
    then a UUID anywhere in the attachment name.
    """
    if attachment.document_id:
        return attachment.document_id.strip().lower()
    match = UUID_PATH_SEGMENT.search(attachment.url or "")
    if match:
        return match.group(1).lower()
    match = UUID_ANYWHERE.search(attachment.name or "")
    if match:
        return match.group(0).lower()
    return None


class LexiconIntentClassifier:
    """Generic-query detection from a configurable phrase list."""

    def __init__(self, lexicon: Iterable[str] | None = None) -> None:
        phrases = settings.GENERIC_QUERY_LEXICON if lexicon is None else lexicon
        self._lexicon = tuple(p.strip().lower() for p in phrases if p.strip())

    @property
    def lexicon(self) -> tuple[str, ...]:
        return self._lexicon

    def is_generic(self, text: str) -> bool:
        query = text.strip().lower()
        if not query:
            return False
        return any(
            query == phrase or query.startswith(phrase + " ") or phrase in query
            for phrase in self._lexicon
        )

    def classify(self, text: str, attachments: Sequence[Attachment]) -> QueryIntent:
        if not self.is_generic(text):
            return QueryIntent(is_generic=False)
        if len(attachments) != 1:
            return QueryIntent(is_generic=True)

        attachment = attachments[0]
        return QueryIntent(
            is_generic=True,
            document_id=attachment_document_id(attachment),
            document_name=attachment.name or None,
        )
