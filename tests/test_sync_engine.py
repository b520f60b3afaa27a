"""
Sync Engine Tests

Batch synchronization from the embedding store into an in-memory vector
index: success path, failure isolation, idempotent full resync and the
single-record helpers.
"""

from __future__ import annotations

import pytest

from bookmatch.core.errors import (
    ConsistencyError,
    NotFoundError,
    TransientProviderError,
)
from bookmatch.models.orm import EbookEmbedding
from bookmatch.repositories.embeddings import EmbeddingRepository
from bookmatch.services.sync import SyncEngine

DIM = 4
COLLECTION = "ebooks_test"


@pytest.fixture
def repo() -> EmbeddingRepository:
    return EmbeddingRepository(dimension=DIM)


@pytest.fixture
def sync_engine(settings, index, repo) -> SyncEngine:
    return SyncEngine(settings, index, repository=repo)


async def _seed(repo, session, count: int) -> list[EbookEmbedding]:
    records = []
    for i in range(count):
        records.append(
            await repo.put(
                session,
                isbn=f"97800000000{i:02d}",
                vector=[0.1 * (i + 1)] * DIM,
                title=f"Book {i}",
                author="Author",
                tags=["Fantasy", "Adventure"],
                description=f"Description {i}",
            )
        )
    return records


@pytest.mark.asyncio
async def test_full_pass_syncs_everything(sync_engine, repo, session, index):
    await _seed(repo, session, 5)

    report = await sync_engine.sync_unsynced(session)

    assert (report.total, report.synced, report.errors, report.batches) == (5, 5, 0, 3)
    assert await repo.find_unsynced(session, limit=10) == []
    points = index.points(COLLECTION)
    assert len(points) == 5
    stored = await repo.get(session, "9780000000003")
    point = points[stored.payload_uuid]
    assert set(point.payload) == {
        "isbn",
        "title",
        "author",
        "tags",
        "description",
        "created_at",
    }
    assert point.payload["isbn"] == "9780000000003"
    assert point.payload["tags"] == ["Fantasy", "Adventure"]


@pytest.mark.asyncio
async def test_failed_batch_stays_pending_with_same_token(
    sync_engine, repo, session, index
):
    records = await _seed(repo, session, 4)
    index.fail_upserts = 1

    report = await sync_engine.sync_unsynced(session)

    assert (report.synced, report.errors, report.batches) == (2, 2, 2)
    pending = await repo.find_unsynced(session, limit=10)
    assert [r.id for r in pending] == [records[0].id, records[1].id]
    failed_ids = [point.id for point in index.upsert_calls[0]]
    assert [r.payload_uuid for r in pending] == failed_ids

    retry = await sync_engine.sync_unsynced(session)

    assert (retry.synced, retry.errors) == (2, 0)
    assert [point.id for point in index.upsert_calls[-1]] == failed_ids
    assert len(index.points(COLLECTION)) == 4


@pytest.mark.asyncio
async def test_sync_all_twice_is_idempotent(sync_engine, repo, session, index):
    await _seed(repo, session, 3)

    first = await sync_engine.sync_all(session)
    tokens = set(index.points(COLLECTION))
    second = await sync_engine.sync_all(session)

    assert first.synced == second.synced == 3
    assert set(index.points(COLLECTION)) == tokens
    assert len(index.points(COLLECTION)) == 3


@pytest.mark.asyncio
async def test_sync_all_restores_externally_deleted_point(
    sync_engine, repo, session, index
):
    await _seed(repo, session, 3)
    await sync_engine.sync_unsynced(session)
    victim = await repo.get(session, "9780000000001")
    del index.points(COLLECTION)[victim.payload_uuid]

    nothing = await sync_engine.sync_unsynced(session)
    assert nothing.total == 0
    assert len(index.points(COLLECTION)) == 2

    report = await sync_engine.sync_all(session)

    assert report.synced == 3
    assert victim.payload_uuid in index.points(COLLECTION)


@pytest.mark.asyncio
async def test_wrong_dimension_record_is_skipped(sync_engine, repo, session, index):
    await _seed(repo, session, 1)
    broken = EbookEmbedding(
        ebook_isbn="9789999999999",
        vector=[0.1] * (DIM - 1),
        payload_title="Broken",
        payload_author="Nobody",
        payload_tags=[],
    )
    session.add(broken)
    await session.commit()

    report = await sync_engine.sync_unsynced(session)

    assert (report.total, report.synced, report.errors) == (2, 1, 1)
    assert [r.ebook_isbn for r in await repo.find_unsynced(session, limit=10)] == [
        "9789999999999"
    ]


@pytest.mark.asyncio
async def test_batch_cap_and_deadline_stop_the_pass(sync_engine, repo, session):
    await _seed(repo, session, 5)

    capped = await sync_engine.sync_unsynced(session, max_batches=1)
    assert (capped.batches, capped.synced) == (1, 2)

    expired = await sync_engine.sync_unsynced(session, deadline_seconds=0)
    assert expired.batches == 0
    assert len(await repo.find_unsynced(session, limit=10)) == 3


@pytest.mark.asyncio
async def test_collection_setup_failure_aborts(sync_engine, repo, session, index):
    await _seed(repo, session, 2)
    index.unreachable = True

    with pytest.raises(TransientProviderError):
        await sync_engine.sync_unsynced(session)
    assert len(await repo.find_unsynced(session, limit=10)) == 2


@pytest.mark.asyncio
async def test_sync_one_and_remove(sync_engine, repo, session, index):
    await _seed(repo, session, 2)

    assert await sync_engine.sync_one(session, "9780000000000") is True
    record = await repo.get(session, "9780000000000")
    assert record.synced_to_index is True
    assert list(index.points(COLLECTION)) == [record.payload_uuid]

    await sync_engine.remove(session, "9780000000000")

    record = await repo.get(session, "9780000000000")
    assert record.synced_to_index is False
    assert record.payload_uuid is not None
    assert index.points(COLLECTION) == {}

    with pytest.raises(NotFoundError):
        await sync_engine.sync_one(session, "9781111111111")


@pytest.mark.asyncio
async def test_collection_stats(sync_engine, repo, session):
    await _seed(repo, session, 3)
    stats = await sync_engine.collection_stats(session)
    assert stats.collection is None
    assert stats.pending_embeddings == 3

    await sync_engine.sync_unsynced(session, max_batches=1)
    stats = await sync_engine.collection_stats(session)

    assert stats.collection.points_count == 2
    assert stats.collection.vector_size == DIM
    assert (stats.total_embeddings, stats.synced_embeddings) == (3, 2)


@pytest.mark.asyncio
async def test_reembed_during_upload_stays_pending(sync_engine, repo, session, index):
    (record,) = await _seed(repo, session, 1)

    async def reembed() -> None:
        await repo.put(
            session,
            isbn=record.ebook_isbn,
            vector=[0.9] * DIM,
            title="Book 0, revised",
            author="Author",
            tags=["Fantasy"],
            description="Revised",
        )

    index.after_upsert = reembed
    report = await sync_engine.sync_unsynced(session)

    assert (report.synced, report.skipped) == (0, 1)
    stored = await repo.get(session, record.ebook_isbn)
    assert stored.synced_to_index is False
    assert list(index.points(COLLECTION)[stored.payload_uuid].vector) == [0.1] * DIM

    retry = await sync_engine.sync_unsynced(session)

    assert retry.synced == 1
    point = index.points(COLLECTION)[stored.payload_uuid]
    assert list(point.vector) == [0.9] * DIM
    assert point.payload["title"] == "Book 0, revised"
    assert (await repo.get(session, record.ebook_isbn)).synced_to_index is True


@pytest.mark.asyncio
async def test_collection_of_other_size_aborts_pass(sync_engine, repo, session, index):
    await _seed(repo, session, 2)
    await index.ensure_collection(COLLECTION, DIM + 380)

    with pytest.raises(ConsistencyError):
        await sync_engine.sync_unsynced(session)
    assert index.upsert_calls == []
    assert len(await repo.find_unsynced(session, limit=10)) == 2
