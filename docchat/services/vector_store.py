"""
Vector Store Adapter

The only vector operations the core needs: batched upsert, user-scoped
nearest-neighbour query, and idempotent delete by ids or by metadata
filter. ``VectorStore`` is the contract; ``PgVectorStore`` implements it
on the ``vector_chunks`` table with pgvector cosine distance.

Filters are flat ``{metadataKey: value}`` mappings using the vector
metadata keys (``userId``, ``documentId``, ``chunkIndex``, ...). A list
value means "any of".
"""

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any, NamedTuple, TypeVar

from sqlalchemy import ColumnElement, delete, func, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docchat.core.config import settings
from docchat.core.database import get_session_factory
from docchat.core.exceptions import VectorStoreError
from docchat.models.orm import VectorChunkRecord
from docchat.models.schemas import VectorMatch, VectorRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    SQLAlchemyError,
    OSError,
    TimeoutError,
)


class UpsertReport(NamedTuple):
    """Outcome of a (possibly partially failed) batched upsert."""

    attempted: int
    upserted: int
    failed_ids: list[str]
    errors: list[str]

    @property
    def ok(self) -> bool:
        return not self.failed_ids


def require_user_scope(filter: Mapping[str, Any]) -> None:
    """Reject queries that are not restricted to a single user."""
    if not filter.get("userId"):
        raise ValueError("Vector queries must be filtered by userId")


class VectorStore(ABC):
    """Contract every vector index backend satisfies."""

    @abstractmethod
    async def upsert(self, records: Sequence[VectorRecord]) -> UpsertReport:
        """Insert or overwrite records; failed batches are reported, not raised."""

    @abstractmethod
    async def query(
        self,
        vector: Sequence[float],
        top_k: int,
        filter: Mapping[str, Any],
    ) -> list[VectorMatch]:
        """Top-K matches by similarity; ``filter`` must contain ``userId``."""

    @abstractmethod
    async def delete_by_ids(self, ids: Sequence[str]) -> None:
        """Delete records by id; absent ids are ignored."""

    @abstractmethod
    async def delete_by_filter(self, filter: Mapping[str, Any]) -> None:
        """Delete every record matching a non-empty filter."""

    @abstractmethod
    async def count(self, filter: Mapping[str, Any]) -> int:
        """Number of records matching ``filter``."""


class PgVectorStore(VectorStore):
    """
    pgvector-backed vector store.

    Each call runs in its own short transaction from the session factory
    and is bounded by ``timeout``. Upserts and deletes are split into
    batches of ``batch_limit`` rows and retried with exponential backoff;
    queries get a single attempt so chat requests fail fast.

    Usage::

        store = PgVectorStore()
        report = await store.upsert(records)
        hits = await store.query(vector, top_k=5, filter={"userId": "u1"})
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        batch_limit: int | None = None,
        retries: int | None = None,
        timeout: float | None = None,
        backoff_seconds: float = 1.0,
    ) -> None:
        self._session_factory = session_factory
        self._batch_limit = batch_limit or settings.VECTOR_UPSERT_LIMIT
        self._retries = max(1, retries or settings.VECTOR_UPSERT_RETRIES)
        self._timeout = timeout or settings.VECTOR_TIMEOUT_SECONDS
        self._backoff = backoff_seconds

    @property
    def batch_limit(self) -> int:
        return self._batch_limit

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def upsert(self, records: Sequence[VectorRecord]) -> UpsertReport:
        failed_ids: list[str] = []
        errors: list[str] = []
        batches = _batched(list(records), self._batch_limit)

        for number, batch in enumerate(batches, start=1):
            try:
                await self._with_retries("upsert", self._upsert_batch, batch)
            except VectorStoreError as exc:
                logger.error(
                    "Upsert batch %d/%d (%d records) failed: %s",
                    number,
                    len(batches),
                    len(batch),
                    exc,
                )
                failed_ids.extend(r.id for r in batch)
                errors.append(str(exc))

        return UpsertReport(
            attempted=len(records),
            upserted=len(records) - len(failed_ids),
            failed_ids=failed_ids,
            errors=errors,
        )

    async def _upsert_batch(self, batch: list[VectorRecord]) -> None:
        table = VectorChunkRecord.__table__
        rows = [
            {
                "id": record.id,
                "document_id": str(record.metadata.get("documentId", "")),
                "user_id": str(record.metadata.get("userId", "")),
                "chunk_index": int(record.metadata.get("chunkIndex", 0)),
                "embedding": list(record.values),
                "metadata": dict(record.metadata),
            }
            for record in batch
        ]
        stmt = pg_insert(table).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.id],
            set_={
                "document_id": stmt.excluded["document_id"],
                "user_id": stmt.excluded["user_id"],
                "chunk_index": stmt.excluded["chunk_index"],
                "embedding": stmt.excluded["embedding"],
                "metadata": stmt.excluded["metadata"],
                "upserted_at": func.now(),
            },
        )
        async with self._sessions()() as session:
            await session.execute(stmt)
            await session.commit()

    async def delete_by_ids(self, ids: Sequence[str]) -> None:
        for batch in _batched(list(ids), self._batch_limit):
            clauses = [VectorChunkRecord.id.in_(batch)]
            await self._with_retries("delete", self._delete_where, clauses)
        logger.info("Deleted vectors by id (%d ids)", len(ids))

    async def delete_by_filter(self, filter: Mapping[str, Any]) -> None:
        if not filter:
            raise ValueError("Refusing to delete vectors with an empty filter")
        await self._with_retries("delete", self._delete_where, _filter_clauses(filter))
        logger.info("Deleted vectors by filter %s", dict(filter))

    async def _delete_where(self, clauses: list[ColumnElement[bool]]) -> None:
        async with self._sessions()() as session:
            await session.execute(delete(VectorChunkRecord).where(*clauses))
            await session.commit()

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def query(
        self,
        vector: Sequence[float],
        top_k: int,
        filter: Mapping[str, Any],
    ) -> list[VectorMatch]:
        """
        Cosine-similarity search restricted by ``filter``.

        The cosine distance is converted to a similarity score:
        ``score = 1 - distance``. Zero vectors have no defined distance
        and score 0.
        """
        require_user_scope(filter)
        distance = VectorChunkRecord.embedding.cosine_distance(list(vector)).label(
            "distance"
        )
        stmt = (
            select(VectorChunkRecord.id, VectorChunkRecord.chunk_metadata, distance)
            .where(*_filter_clauses(filter))
            .order_by(distance)
            .limit(top_k)
        )

        async def _run() -> list[Any]:
            async with self._sessions()() as session:
                result = await session.execute(stmt)
                return list(result.all())

        rows = await self._with_retries("query", _run, attempts=1)
        return [
            VectorMatch(id=row[0], score=_similarity(row[2]), metadata=row[1] or {})
            for row in rows
        ]

    async def count(self, filter: Mapping[str, Any]) -> int:
        stmt = select(func.count()).select_from(VectorChunkRecord)
        if filter:
            stmt = stmt.where(*_filter_clauses(filter))

        async def _run() -> int:
            async with self._sessions()() as session:
                return int((await session.execute(stmt)).scalar_one())

        return await self._with_retries("count", _run, attempts=1)

    async def index_dimension(self) -> int | None:
        """
        Dimension the ``embedding`` column was created with.

        Returns None when the table does not exist (migrations not run).
        """
        stmt = text(
            "SELECT atttypmod FROM pg_attribute "
            "WHERE attrelid = to_regclass('vector_chunks') AND attname = 'embedding'"
        )
        async with self._sessions()() as session:
            value = (await session.execute(stmt)).scalar_one_or_none()
        if value is None or value < 0:
            return None
        return int(value)

    async def orphaned_document_ids(self) -> list[str]:
        """Document ids present in the index but absent from the ledger."""
        stmt = text(
            "SELECT DISTINCT v.document_id FROM vector_chunks v "
            "LEFT JOIN documents d ON d.id::text = v.document_id "
            "WHERE d.id IS NULL"
        )
        async with self._sessions()() as session:
            return [str(row[0]) for row in (await session.execute(stmt)).all()]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _with_retries(
        self,
        operation: str,
        func_: Callable[..., Awaitable[T]],
        *args: Any,
        attempts: int | None = None,
    ) -> T:
        attempts = attempts or self._retries
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(func_(*args), timeout=self._timeout)
            except RETRYABLE_ERRORS as exc:
                if attempt == attempts:
                    raise VectorStoreError(
                        f"Vector {operation} failed after {attempt} attempt(s): "
                        f"{type(exc).__name__}: {exc}"
                    ) from exc
                delay = self._backoff * 2 ** (attempt - 1)
                logger.warning(
                    "Vector %s attempt %d/%d failed (%s), retrying in %.1fs",
                    operation,
                    attempt,
                    attempts,
                    type(exc).__name__,
                    delay,
                )
                await asyncio.sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover


def _batched(items: list[T], size: int) -> list[list[T]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def _similarity(distance: float | None) -> float:
    if distance is None or math.isnan(float(distance)):
        return 0.0
    return round(1.0 - float(distance), 4)


def _filter_clauses(filter: Mapping[str, Any]) -> list[ColumnElement[bool]]:
    """Translate a metadata filter into SQL clauses."""
    columns = {
        "userId": VectorChunkRecord.user_id,
        "documentId": VectorChunkRecord.document_id,
        "chunkIndex": VectorChunkRecord.chunk_index,
    }
    clauses: list[ColumnElement[bool]] = []
    for key, value in filter.items():
        column = columns.get(key)
        if column is not None:
            cast = int if key == "chunkIndex" else str
            if isinstance(value, (list, tuple, set)):
                clauses.append(column.in_([cast(v) for v in value]))
            else:
                clauses.append(column == cast(value))
        elif isinstance(value, (list, tuple, set)):
            clauses.append(
                VectorChunkRecord.chunk_metadata[key].astext.in_([str(v) for v in value])
            )
        else:
            clauses.append(VectorChunkRecord.chunk_metadata.contains({key: value}))
    return clauses
