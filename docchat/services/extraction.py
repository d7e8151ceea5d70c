"""
Text Extraction Service

Turns the raw bytes of an uploaded file into plain UTF-8 text.

Supported formats:
    - Plain text family (text/plain, text/markdown, text/csv,
      application/json): UTF-8 decoding
    - PDF: text layer extraction via PyMuPDF (fitz)
    - DOCX: paragraph and table text via python-docx

Parser failures never escape this module: they are converted into a
placeholder text describing the problem, so the document still
completes and the user sees what went wrong when asking about it.
Only an unsupported MIME type is a hard failure.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Final

import docx
import fitz  # PyMuPDF

from docchat.core.exceptions import UnsupportedFormatError

logger = logging.getLogger(__name__)

PDF_MIME: Final[str] = "application/pdf"
DOCX_MIME: Final[str] = (
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
)
TEXT_MIMES: Final[frozenset[str]] = frozenset(
    {"text/plain", "text/markdown", "text/csv", "application/json"}
)
SUPPORTED_MIME_TYPES: Final[frozenset[str]] = TEXT_MIMES | {PDF_MIME, DOCX_MIME}

# Browsers frequently report octet-stream (or nothing) for these
EXTENSION_MIME_TYPES: Final[dict[str, str]] = {
    ".pdf": PDF_MIME,
    ".docx": DOCX_MIME,
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".csv": "text/csv",
    ".json": "application/json",
}

PDF_NO_TEXT_PLACEHOLDER: Final[str] = (
    "This PDF appears to contain no extractable text. "
    "It may be image-based or scanned."
)
PDF_ERROR_PLACEHOLDER: Final[str] = (
    "This PDF file could not be processed ({error}). "
    "It may be corrupted or password-protected. "
    "Please try uploading a different version of this document."
)
DOCX_ERROR_PLACEHOLDER: Final[str] = (
    "This DOCX file could not be processed due to formatting issues. "
    "Please try uploading a different file or a text-based version of this document."
)


@dataclass(frozen=True)
class ExtractedText:
    """
    Result of an extraction.

    Attributes:
        text: Extracted text, or a placeholder when degraded.
        mime_type: MIME type actually used for parsing.
        page_count: Number of pages (PDF only).
        is_placeholder: True when ``text`` describes a failure
            instead of holding document content.
    """

    text: str
    mime_type: str
    page_count: int | None = None
    is_placeholder: bool = False


def resolve_mime_type(mime_type: str | None, file_name: str | None = None) -> str:
    """
    Normalise a reported MIME type, falling back to the file extension.

    Parameters such as ``; charset=utf-8`` are dropped. Unknown or generic
    types (``application/octet-stream``) are resolved from the extension
    when one is available; otherwise the reported type is returned as-is.
    """
    base = (mime_type or "").split(";", 1)[0].strip().lower()
    if base in SUPPORTED_MIME_TYPES:
        return base
    if file_name:
        by_extension = EXTENSION_MIME_TYPES.get(PurePosixPath(file_name).suffix.lower())
        if by_extension:
            return by_extension
    return base or "application/octet-stream"


def is_supported(mime_type: str | None, file_name: str | None = None) -> bool:
    return resolve_mime_type(mime_type, file_name) in SUPPORTED_MIME_TYPES


class TextExtractor:
    """
    Async, best-effort text extractor.

    Blocking parsers run in a worker thread via ``asyncio.to_thread``.

    Usage::

        extractor = TextExtractor()
        result = await extractor.extract(raw, "application/pdf", "report.pdf")
        print(result.text[:200], result.is_placeholder)
    """

    async def extract(
        self,
        raw: bytes,
        mime_type: str | None,
        file_name: str | None = None,
    ) -> ExtractedText:
        """
        Extract text from raw file bytes.

        Raises:
            UnsupportedFormatError: If the MIME type (after extension
                fallback) is not one of the supported formats.
        """
        resolved = resolve_mime_type(mime_type, file_name)

        if resolved in TEXT_MIMES:
            text = raw.decode("utf-8", errors="replace")
            logger.info("Decoded %s as text (%d bytes)", file_name or resolved, len(raw))
            return ExtractedText(text=text, mime_type=resolved)
        if resolved == PDF_MIME:
            return await self._extract_pdf(raw, file_name)
        if resolved == DOCX_MIME:
            return await self._extract_docx(raw, file_name)

        raise UnsupportedFormatError(mime_type or resolved)

    # ------------------------------------------------------------------
    # PDF
    # ------------------------------------------------------------------

    @staticmethod
    def _read_pdf(raw: bytes) -> tuple[str, int]:
        """Synchronous helper; call via ``asyncio.to_thread``."""
        doc = fitz.open(stream=raw, filetype="pdf")
        try:
            pages: list[str] = [page.get_text() for page in doc]
            return "\n".join(pages), len(pages)
        finally:
            doc.close()

    async def _extract_pdf(self, raw: bytes, file_name: str | None) -> ExtractedText:
        try:
            text, page_count = await asyncio.to_thread(self._read_pdf, raw)
        except Exception as exc:
            logger.warning("PDF extraction failed for %s: %s", file_name, exc)
            return ExtractedText(
                text=PDF_ERROR_PLACEHOLDER.format(error=exc),
                mime_type=PDF_MIME,
                is_placeholder=True,
            )

        if not text.strip():
            logger.warning(
                "PDF %s parsed (%d pages) but has no text layer", file_name, page_count
            )
            return ExtractedText(
                text=PDF_NO_TEXT_PLACEHOLDER,
                mime_type=PDF_MIME,
                page_count=page_count,
                is_placeholder=True,
            )

        logger.info(
            "Extracted PDF %s (%d pages, %d chars)", file_name, page_count, len(text)
        )
        return ExtractedText(text=text, mime_type=PDF_MIME, page_count=page_count)

    # ------------------------------------------------------------------
    # DOCX
    # ------------------------------------------------------------------

    @staticmethod
    def _read_docx(raw: bytes) -> str:
        """Synchronous helper; call via ``asyncio.to_thread``."""
        document = docx.Document(io.BytesIO(raw))
        parts = [p.text for p in document.paragraphs if p.text.strip()]
        for table in document.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if cells:
                    parts.append(" | ".join(cells))
        return "\n\n".join(parts)

    async def _extract_docx(self, raw: bytes, file_name: str | None) -> ExtractedText:
        try:
            text = await asyncio.to_thread(self._read_docx, raw)
        except Exception as exc:
            logger.warning("DOCX extraction failed for %s: %s", file_name, exc)
            return ExtractedText(
                text=DOCX_ERROR_PLACEHOLDER, mime_type=DOCX_MIME, is_placeholder=True
            )

        logger.info("Extracted DOCX %s (%d chars)", file_name, len(text))
        return ExtractedText(text=text, mime_type=DOCX_MIME)
