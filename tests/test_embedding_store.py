"""
Embedding Repository Tests

Catalog and query pool behaviour against an in-memory SQLite database:
replace semantics, compare-and-set token minting, token-guarded sync
flags and keyset pagination.
"""

from __future__ import annotations

import pytest
from sqlalchemy import select, update

from bookmatch.core.errors import ValidationError
from bookmatch.models.orm import EbookEmbedding
from bookmatch.repositories.embeddings import EmbeddingRepository, SyncStamp

DIM = 4


@pytest.fixture
def repo() -> EmbeddingRepository:
    return EmbeddingRepository(dimension=DIM)


async def _put(repo, session, isbn: str, value: float = 0.1) -> EbookEmbedding:
    return await repo.put(
        session,
        isbn=isbn,
        vector=[value] * DIM,
        title=f"Title {isbn}",
        author="Author",
        tags=["Fantasy"],
        description="A book",
    )


@pytest.mark.asyncio
async def test_put_creates_pending_record(repo, session):
    record = await _put(repo, session, "9780000000001")

    assert record.id is not None
    assert record.synced_to_index is False
    assert record.payload_uuid is None
    assert record.payload_tags == ["Fantasy"]


@pytest.mark.asyncio
async def test_put_replace_resets_flag_and_keeps_token(repo, session):
    record = await _put(repo, session, "9780000000001")
    token = await repo.assign_token(session, record.id, "tok-1")
    await repo.mark_synced(session, [SyncStamp.of(record)])
    assert (await repo.get(session, "9780000000001")).synced_to_index is True

    replaced = await _put(repo, session, "9780000000001", value=0.9)

    assert replaced.id == record.id
    assert replaced.payload_uuid == token
    assert replaced.synced_to_index is False
    assert list(replaced.vector) == [0.9] * DIM


@pytest.mark.asyncio
async def test_put_rejects_wrong_dimension(repo, session):
    with pytest.raises(ValidationError):
        await repo.put(
            session,
            isbn="9780000000001",
            vector=[0.1] * (DIM + 1),
            title="t",
            author="a",
            tags=[],
            description=None,
        )


@pytest.mark.asyncio
async def test_assign_token_first_writer_wins(repo, session):
    record = await _put(repo, session, "9780000000001")

    first = await repo.assign_token(session, record.id, "tok-first")
    second = await repo.assign_token(session, record.id, "tok-second")

    assert first == "tok-first"
    assert second == "tok-first"
    assert record.payload_uuid == "tok-first"


@pytest.mark.asyncio
async def test_mark_synced_skips_records_whose_token_changed(repo, session):
    a = await _put(repo, session, "9780000000001")
    b = await _put(repo, session, "9780000000002")
    await repo.assign_token(session, a.id, "tok-a")
    await repo.assign_token(session, b.id, "tok-b")

    # A concurrent writer re-tokenizes b behind this session's back
    await session.execute(
        update(EbookEmbedding)
        .where(EbookEmbedding.id == b.id)
        .values(payload_uuid="tok-b2")
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    flagged = await repo.mark_synced(session, [SyncStamp.of(a), SyncStamp.of(b)])

    assert flagged == 1
    rows = await session.execute(
        select(EbookEmbedding.ebook_isbn, EbookEmbedding.synced_to_index).order_by(
            EbookEmbedding.id
        )
    )
    assert rows.all() == [("9780000000001", True), ("9780000000002", False)]


@pytest.mark.asyncio
async def test_mark_synced_skips_records_replaced_under_same_token(repo, session):
    record = await _put(repo, session, "9780000000001")
    await repo.assign_token(session, record.id, "tok-1")
    stamp = SyncStamp.of(record)

    replaced = await _put(repo, session, "9780000000001", value=0.9)
    assert replaced.payload_uuid == "tok-1"
    assert replaced.sync_version == stamp.version + 1

    assert await repo.mark_synced(session, [stamp]) == 0
    assert (await repo.get(session, "9780000000001")).synced_to_index is False


@pytest.mark.asyncio
async def test_find_unsynced_orders_by_id_and_paginates(repo, session):
    records = [await _put(repo, session, f"978000000000{i}") for i in range(5)]
    await repo.assign_token(session, records[1].id, "tok")
    await repo.mark_synced(session, [SyncStamp.of(records[1])])

    first_page = await repo.find_unsynced(session, limit=2)
    assert [r.id for r in first_page] == [records[0].id, records[2].id]

    next_page = await repo.find_unsynced(session, limit=2, after_id=first_page[-1].id)
    assert [r.id for r in next_page] == [records[3].id, records[4].id]

    assert await repo.find_unsynced(session, limit=2, after_id=records[4].id) == []


@pytest.mark.asyncio
async def test_reset_all_and_counts(repo, session):
    records = [await _put(repo, session, f"978000000000{i}") for i in range(3)]
    for record in records:
        await repo.assign_token(session, record.id, f"tok-{record.id}")
    await repo.mark_synced(session, [SyncStamp.of(r) for r in records])
    assert await repo.count(session) == 3
    assert await repo.count_synced(session) == 3

    assert await repo.reset_all(session) == 3

    assert await repo.count_synced(session) == 0
    assert len(await repo.find_unsynced(session, limit=10)) == 3


@pytest.mark.asyncio
async def test_query_pool_create_or_get(repo, session):
    first = await repo.save_query_embedding(
        session, text_hash="h" * 64, description="Dragons!", vector=[0.1] * DIM
    )
    second = await repo.save_query_embedding(
        session, text_hash="h" * 64, description="dragons", vector=[0.9] * DIM
    )

    assert second.id == first.id
    assert second.description == "Dragons!"
    assert list(second.vector) == [0.1] * DIM
    assert (await repo.get_query_embedding(session, "h" * 64)).id == first.id
    assert await repo.get_query_embedding(session, "x" * 64) is None
