"""
Orphan Vector Cleanup Tests

Runs the maintenance script's cleanup routine against the in-memory
vector store.
"""

from __future__ import annotations

import importlib.util
from pathlib import Path

import pytest

from conftest import USER_ID, InMemoryVectorStore
from docchat.models.schemas import VectorRecord, chunk_vector_id

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "cleanup_orphan_vectors.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("cleanup_orphan_vectors", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class OrphanAwareStore(InMemoryVectorStore):
    """In-memory store that knows which document ids the ledger still has."""

    def __init__(self, known_ids: set[str]) -> None:
        super().__init__()
        self.known_ids = known_ids

    async def orphaned_document_ids(self) -> list[str]:
        present = {r.metadata["documentId"] for r in self.records.values()}
        return sorted(present - self.known_ids)


def _store_vectors(store: InMemoryVectorStore, document_id: str, count: int) -> None:
    for i in range(count):
        vector_id = chunk_vector_id(document_id, i)
        store.records[vector_id] = VectorRecord(
            id=vector_id,
            values=[0.1] * 8,
            metadata={"documentId": document_id, "userId": USER_ID},
        )


@pytest.mark.asyncio
async def test_deletes_only_orphaned_vectors() -> None:
    cleanup = _load_script()
    store = OrphanAwareStore(known_ids={"kept"})
    _store_vectors(store, "kept", 2)
    _store_vectors(store, "gone", 3)

    orphaned = await cleanup.cleanup_orphans(store)

    assert orphaned == ["gone"]
    assert await store.count({"documentId": "gone"}) == 0
    assert await store.count({"documentId": "kept"}) == 2


@pytest.mark.asyncio
async def test_dry_run_keeps_vectors() -> None:
    cleanup = _load_script()
    store = OrphanAwareStore(known_ids=set())
    _store_vectors(store, "gone", 3)

    orphaned = await cleanup.cleanup_orphans(store, dry_run=True)

    assert orphaned == ["gone"]
    assert await store.count({"documentId": "gone"}) == 3
