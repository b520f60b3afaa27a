"""
Live Qdrant Integration Tests

Round-trips the REST adapter against a real Qdrant instance
(``QDRANT_URL``, default http://localhost:6333). Skipped automatically
when no Qdrant is reachable.
"""

from __future__ import annotations

import uuid

import httpx
import pytest
import pytest_asyncio

from bookmatch.core.config import Settings
from bookmatch.models.schemas import IndexPoint
from bookmatch.services.vector_index import QdrantIndexClient

DIM = 4


def _qdrant_reachable(url: str) -> bool:
    try:
        return httpx.get(f"{url}/collections", timeout=1.0).status_code == 200
    except httpx.RequestError:
        return False


@pytest.fixture(scope="module")
def live_settings() -> Settings:
    settings = Settings()
    if not _qdrant_reachable(settings.qdrant_url):
        pytest.skip(f"Qdrant unreachable at {settings.qdrant_url}")
    return settings


@pytest_asyncio.fixture
async def live_index(live_settings):
    client = QdrantIndexClient(live_settings)
    yield client
    await client.aclose()


@pytest.fixture
def collection() -> str:
    return f"bookmatch_test_{uuid.uuid4().hex[:8]}"


@pytest.mark.asyncio
async def test_collection_lifecycle(live_index, collection):
    try:
        assert await live_index.ensure_collection(collection, DIM) is True
        assert await live_index.ensure_collection(collection, DIM) is False

        info = await live_index.get_collection_info(collection)
        assert info is not None
        assert info.vector_size == DIM
        assert info.distance == "Cosine"
    finally:
        await live_index.delete_collection(collection)

    assert await live_index.get_collection_info(collection) is None


@pytest.mark.asyncio
async def test_upsert_is_idempotent_and_searchable(live_index, collection):
    points = [
        IndexPoint(
            id=str(uuid.uuid4()),
            vector=[1.0, 0.0, 0.0, 0.0],
            payload={"isbn": "9780000000001", "title": "The Dragon Mage"},
        ),
        IndexPoint(
            id=str(uuid.uuid4()),
            vector=[0.0, 1.0, 0.0, 0.0],
            payload={"isbn": "9780000000002", "title": "Stars Beyond"},
        ),
    ]
    try:
        await live_index.ensure_collection(collection, DIM)
        await live_index.upsert_batch(collection, points)
        await live_index.upsert_batch(collection, points)

        info = await live_index.get_collection_info(collection)
        assert info.points_count == 2

        hits = await live_index.search(collection, [0.9, 0.1, 0.0, 0.0], limit=1)
        assert len(hits) == 1
        assert hits[0].payload["isbn"] == "9780000000001"

        await live_index.delete_point(collection, points[0].id)
        hits = await live_index.search(collection, [0.9, 0.1, 0.0, 0.0], limit=5)
        assert [hit.payload["isbn"] for hit in hits] == ["9780000000002"]
    finally:
        await live_index.delete_collection(collection)


@pytest.mark.asyncio
async def test_search_missing_collection(live_index, collection):
    assert await live_index.search(collection, [1.0, 0.0, 0.0, 0.0], limit=3) == []
