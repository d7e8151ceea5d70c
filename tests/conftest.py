"""
Pytest Configuration and Fixtures

In-memory stand-ins for the ledger, vector store, embedding provider,
blob store and job dispatcher, so the ingestion, retrieval and document
flows can be exercised without PostgreSQL or any network access.
"""

import os

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Test environment defaults. MUST be set before any docchat imports.
#
# 1. Load .env first (local credentials win).
# 2. setdefault fills in anything still missing (CI runners, fresh clones).
# ---------------------------------------------------------------------------
load_dotenv()  # .env → os.environ (no-op if file is missing)

_test_env = {
    "POSTGRES_USER": "docchat",
    "POSTGRES_PASSWORD": "docchat_password",
    "POSTGRES_HOST": "localhost",
    "POSTGRES_PORT": "5432",
    "POSTGRES_DB": "docchat_test",
    "OPENAI_API_KEY": "mock",
    "SIGNING_KEY_CURRENT": "sig_current_test_key",
    "SIGNING_KEY_NEXT": "sig_next_test_key",
}
for _key, _value in _test_env.items():
    os.environ.setdefault(_key, _value)

# ---------------------------------------------------------------------------
# Imports (safe now that env vars are set)
# ---------------------------------------------------------------------------
import asyncio  # noqa: E402
import hashlib  # noqa: E402
import math  # noqa: E402
import uuid  # noqa: E402
from collections.abc import Awaitable, Callable, Iterator, Mapping, Sequence  # noqa: E402
from contextlib import contextmanager  # noqa: E402
from datetime import UTC, datetime, timedelta  # noqa: E402
from typing import Any  # noqa: E402
from unittest.mock import patch  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402

from docchat.core.exceptions import (  # noqa: E402
    DispatchError,
    DownloadError,
    EmbeddingError,
)
from docchat.models.schemas import (  # noqa: E402
    Document,
    IngestionJob,
    ProcessingStatus,
    VectorMatch,
    VectorRecord,
)
from docchat.repositories.documents import as_uuid  # noqa: E402
from docchat.services.chunking import TextChunker  # noqa: E402
from docchat.services.dispatcher import JobDispatcher  # noqa: E402
from docchat.services.documents import DocumentService  # noqa: E402
from docchat.services.ingestion import IngestionPipeline  # noqa: E402
from docchat.services.vector_store import (  # noqa: E402
    UpsertReport,
    VectorStore,
    require_user_scope,
)

TEST_DIMENSION = 8
USER_ID = "user-1"
OTHER_USER_ID = "user-2"


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class InMemoryLedger:
    """
    Same transitions and guards as DocumentLedger, on a dict.

    Every mutation happens under one lock, the equivalent of a single
    guarded UPDATE statement. ``progress_log`` records every value
    ``processed_chunks`` took, per document.
    """

    def __init__(self) -> None:
        self.documents: dict[uuid.UUID, Document] = {}
        self.progress_log: dict[uuid.UUID, list[int]] = {}
        self.fail_delete = False
        self._lock = asyncio.Lock()

    async def create(
        self,
        *,
        user_id: str,
        file_name: str,
        file_type: str,
        file_size: int = 0,
        blob_url: str = "",
        folder_path: str | None = None,
        title: str | None = None,
        document_id: uuid.UUID | None = None,
    ) -> Document:
        now = datetime.now(UTC)
        document = Document(
            id=document_id or uuid.uuid4(),
            user_id=user_id,
            file_name=file_name,
            file_type=file_type,
            file_size=file_size,
            blob_url=blob_url,
            folder_path=folder_path,
            title=title or file_name,
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            self.documents[document.id] = document
        return document

    async def get(self, document_id: uuid.UUID | str) -> Document | None:
        doc_uuid = as_uuid(document_id)
        return self.documents.get(doc_uuid) if doc_uuid else None

    async def list_for_user(
        self, user_id: str, folder_path: str | None = None
    ) -> list[Document]:
        return [
            d
            for d in self.documents.values()
            if d.user_id == user_id and (folder_path is None or d.folder_path == folder_path)
        ]

    async def delete(self, document_id: uuid.UUID | str) -> bool:
        if self.fail_delete:
            raise RuntimeError("ledger unavailable")
        async with self._lock:
            return self.documents.pop(as_uuid(document_id), None) is not None

    async def claim_for_processing(
        self, document_id: uuid.UUID | str, lease_minutes: int = 0
    ) -> Document | None:
        cutoff = datetime.now(UTC) - timedelta(minutes=lease_minutes)

        def guard(d: Document) -> bool:
            if d.processing_status is ProcessingStatus.PENDING:
                return True
            return (
                lease_minutes > 0
                and d.processing_status is ProcessingStatus.PROCESSING
                and d.updated_at is not None
                and d.updated_at < cutoff
            )

        return await self._transition(
            document_id,
            guard,
            processing_status=ProcessingStatus.PROCESSING,
            status_message="Starting document processing",
        )

    async def set_total_chunks(
        self, document_id: uuid.UUID | str, total_chunks: int
    ) -> Document | None:
        return await self._transition(
            document_id,
            lambda d: d.processing_status is ProcessingStatus.PROCESSING,
            total_chunks=total_chunks,
            processed_chunks=lambda d: min(d.processed_chunks, total_chunks),
            status_message=f"Split into {total_chunks} chunks, generating embeddings",
        )

    async def increment_processed_chunks(
        self, document_id: uuid.UUID | str
    ) -> Document | None:
        return await self._transition(
            document_id,
            lambda d: d.total_chunks is None or d.processed_chunks < d.total_chunks,
            processed_chunks=lambda d: d.processed_chunks + 1,
        )

    async def update_status_message(
        self,
        document_id: uuid.UUID | str,
        message: str,
        *,
        expected_status: ProcessingStatus | None = None,
    ) -> Document | None:
        guard = None
        if expected_status is not None:
            guard = lambda d: d.processing_status is expected_status  # noqa: E731
        return await self._transition(document_id, guard, status_message=message)

    async def mark_completed(
        self, document_id: uuid.UUID | str, message: str
    ) -> Document | None:
        return await self._transition(
            document_id,
            lambda d: d.processing_status is ProcessingStatus.PROCESSING,
            processing_status=ProcessingStatus.COMPLETED,
            status_message=message,
        )

    async def mark_failed(
        self, document_id: uuid.UUID | str, message: str
    ) -> Document | None:
        return await self._transition(
            document_id,
            lambda d: d.processing_status
            in (ProcessingStatus.PENDING, ProcessingStatus.PROCESSING),
            processing_status=ProcessingStatus.FAILED,
            status_message=message,
        )

    async def reset_for_retry(
        self, document_id: uuid.UUID | str, message: str = "Retrying document processing"
    ) -> Document | None:
        return await self._transition(
            document_id,
            lambda d: d.processing_status is ProcessingStatus.FAILED,
            processing_status=ProcessingStatus.PENDING,
            status_message=message,
            total_chunks=None,
            processed_chunks=0,
        )

    async def _transition(
        self,
        document_id: uuid.UUID | str,
        guard: Callable[[Document], bool] | None,
        **values: Any,
    ) -> Document | None:
        doc_uuid = as_uuid(document_id)
        await asyncio.sleep(0)  # let concurrent callers interleave
        async with self._lock:
            current = self.documents.get(doc_uuid) if doc_uuid else None
            if current is None or (guard is not None and not guard(current)):
                return None
            resolved = {k: v(current) if callable(v) else v for k, v in values.items()}
            updated = current.model_copy(
                update={**resolved, "updated_at": datetime.now(UTC)}
            )
            self.documents[doc_uuid] = updated
            self.progress_log.setdefault(doc_uuid, []).append(updated.processed_chunks)
            return updated


# ---------------------------------------------------------------------------
# Vector store
# ---------------------------------------------------------------------------


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 0.0
    return sum(x * y for x, y in zip(a, b, strict=True)) / norm


def _matches(metadata: Mapping[str, Any], filter: Mapping[str, Any]) -> bool:
    for key, value in filter.items():
        actual = metadata.get(key)
        if isinstance(value, (list, tuple, set)):
            if actual not in value:
                return False
        elif actual != value:
            return False
    return True


class InMemoryVectorStore(VectorStore):
    """
    Dict-backed VectorStore with the same batching contract.

    ``fail_batches`` holds 1-based batch numbers (counted across the
    store's lifetime) whose upsert fails.
    """

    def __init__(self, batch_limit: int = 1000) -> None:
        self.records: dict[str, VectorRecord] = {}
        self.batch_limit = batch_limit
        self.batch_sizes: list[int] = []
        self.fail_batches: set[int] = set()
        self.query_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.queries: list[dict[str, Any]] = []

    async def upsert(self, records: Sequence[VectorRecord]) -> UpsertReport:
        failed_ids: list[str] = []
        errors: list[str] = []
        for start in range(0, len(records), self.batch_limit):
            batch = list(records[start : start + self.batch_limit])
            self.batch_sizes.append(len(batch))
            if len(self.batch_sizes) in self.fail_batches:
                failed_ids.extend(r.id for r in batch)
                errors.append("Vector upsert failed after 3 attempt(s): OSError: down")
                continue
            for record in batch:
                self.records[record.id] = record
        return UpsertReport(
            attempted=len(records),
            upserted=len(records) - len(failed_ids),
            failed_ids=failed_ids,
            errors=errors,
        )

    async def query(
        self, vector: Sequence[float], top_k: int, filter: Mapping[str, Any]
    ) -> list[VectorMatch]:
        require_user_scope(filter)
        self.queries.append(dict(filter))
        if self.query_error is not None:
            raise self.query_error
        scored = [
            VectorMatch(
                id=r.id, score=round(_cosine(vector, r.values), 4), metadata=r.metadata
            )
            for r in self.records.values()
            if _matches(r.metadata, filter)
        ]
        scored.sort(key=lambda m: m.score, reverse=True)
        return scored[:top_k]

    async def delete_by_ids(self, ids: Sequence[str]) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        for vector_id in ids:
            self.records.pop(vector_id, None)

    async def delete_by_filter(self, filter: Mapping[str, Any]) -> None:
        if not filter:
            raise ValueError("Refusing to delete vectors with an empty filter")
        if self.delete_error is not None:
            raise self.delete_error
        for vector_id in [
            i for i, r in self.records.items() if _matches(r.metadata, filter)
        ]:
            del self.records[vector_id]

    async def count(self, filter: Mapping[str, Any]) -> int:
        return sum(1 for r in self.records.values() if _matches(r.metadata, filter))


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


def text_vector(text: str, dimension: int = TEST_DIMENSION) -> list[float]:
    """Deterministic pseudo-embedding derived from the text's hash."""
    digest = hashlib.sha256(text.encode()).digest()
    return [b / 255.0 + 0.01 for b in digest[:dimension]]


class FakeEmbedder:
    """
    Embedding client double.

    ``fail_texts``: texts that raise EmbeddingError.
    ``vectors``: explicit vectors per text (otherwise hash-derived).
    ``delay``: seconds to sleep per call.
    """

    def __init__(self, dimension: int = TEST_DIMENSION) -> None:
        self.dimension = dimension
        self.calls: list[str] = []
        self.fail_texts: set[str] = set()
        self.fail_all = False
        self.vectors: dict[str, list[float]] = {}
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_all or text in self.fail_texts:
                raise EmbeddingError("RateLimitError: quota exceeded", attempts=3)
            return self.vectors.get(text) or text_vector(text, self.dimension)
        finally:
            self.in_flight -= 1


class FakeBlobStore:
    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_delete = False

    async def upload(self, file_name: str, data: bytes, content_type: str) -> str:
        url = f"https://blobs.test/{uuid.uuid4()}/{file_name}"
        self.blobs[url] = data
        return url

    async def download(self, url: str) -> bytes:
        if url not in self.blobs:
            raise DownloadError(f"HTTP 404 fetching {url}")
        return self.blobs[url]

    async def delete(self, url: str) -> None:
        if self.fail_delete:
            raise RuntimeError("blob store unavailable")
        self.blobs.pop(url, None)
        self.deleted.append(url)


class RecordingDispatcher(JobDispatcher):
    """Records jobs instead of delivering them."""

    def __init__(self) -> None:
        self.jobs: list[IngestionJob] = []
        self.error: DispatchError | None = None

    async def enqueue(self, job: IngestionJob) -> str:
        if self.error is not None:
            raise self.error
        self.jobs.append(job)
        return f"msg-{len(self.jobs)}"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def small_chunker() -> TextChunker:
    """Small windows so short test texts produce several chunks."""
    return TextChunker(chunk_size=120, chunk_overlap=20)


@pytest.fixture
def pipeline(
    ledger: InMemoryLedger,
    vector_store: InMemoryVectorStore,
    embedder: FakeEmbedder,
    blob_store: FakeBlobStore,
    small_chunker: TextChunker,
) -> IngestionPipeline:
    return IngestionPipeline(
        ledger=ledger,
        vector_store=vector_store,
        embedder=embedder,
        blob_store=blob_store,
        chunker=small_chunker,
        batch_size=4,
        concurrency=2,
        lease_minutes=0,
        status_write_backoff=0,
    )


@pytest.fixture
def document_service(
    ledger: InMemoryLedger,
    vector_store: InMemoryVectorStore,
    blob_store: FakeBlobStore,
    dispatcher: RecordingDispatcher,
) -> DocumentService:
    return DocumentService(
        dispatcher=dispatcher,
        ledger=ledger,
        vector_store=vector_store,
        blob_store=blob_store,
    )


@pytest.fixture
def add_document(
    ledger: InMemoryLedger, blob_store: FakeBlobStore
) -> Callable[..., Awaitable[Document]]:
    """Factory: store ``content`` as a blob and register a pending document."""

    async def _add(
        content: bytes | str,
        file_name: str = "notes.txt",
        file_type: str = "text/plain",
        user_id: str = USER_ID,
    ) -> Document:
        raw = content.encode() if isinstance(content, str) else content
        url = await blob_store.upload(file_name, raw, file_type)
        return await ledger.create(
            user_id=user_id,
            file_name=file_name,
            file_type=file_type,
            file_size=len(raw),
            blob_url=url,
        )

    return _add


_RealAsyncClient = httpx.AsyncClient


@contextmanager
def mock_http(
    module: str, handler: Callable[[httpx.Request], httpx.Response]
) -> Iterator[None]:
    """Route every ``httpx.AsyncClient`` built in ``module`` to ``handler``."""

    def factory(*args, **kwargs):
        return _RealAsyncClient(*args, transport=httpx.MockTransport(handler), **kwargs)

    with patch(f"{module}.httpx.AsyncClient", side_effect=factory):
        yield


def sentences(count: int, word: str = "alpha") -> str:
    """``count`` short sentences, enough to span several small chunks."""
    return "".join(f"Sentence {i} talks about {word} topics. " for i in range(count))
