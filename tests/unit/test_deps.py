"""
API Dependency Unit Tests

Service factories share one embedding client per process, and shutdown
closes it.
"""

from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from docchat.api import deps


@pytest.fixture
def embedding_client() -> Iterator[MagicMock]:
    client_cls = MagicMock()
    client_cls.return_value.close = AsyncMock()
    deps._embedder = None
    with patch("docchat.api.deps.EmbeddingClient", client_cls):
        yield client_cls
    deps._embedder = None


def test_factories_share_one_embedding_client(embedding_client: MagicMock):
    first = deps.get_assembler()
    second = deps.get_chat_service()
    pipeline = deps.get_pipeline()

    embedding_client.assert_called_once()
    shared = embedding_client.return_value
    assert first._embedder is shared
    assert second._assembler._embedder is shared
    assert pipeline._embedder is shared


@pytest.mark.asyncio
async def test_close_embedder_closes_and_forgets_client(embedding_client: MagicMock):
    shared = deps.get_embedder()

    await deps.close_embedder()
    await deps.close_embedder()

    shared.close.assert_awaited_once()
    deps.get_embedder()
    assert embedding_client.call_count == 2
