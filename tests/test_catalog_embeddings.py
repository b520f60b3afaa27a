"""
Catalog Embedding Indexer Tests

Embedding of catalog records into the store: payload text, tag parsing,
chunking by provider batch cap, failure isolation and forced re-embeds.
"""

from __future__ import annotations

import pytest
from sqlalchemy import select

from bookmatch.core.errors import NotFoundError, TransientProviderError, ValidationError
from bookmatch.models.orm import Ebook
from bookmatch.repositories.embeddings import EmbeddingRepository, SyncStamp
from bookmatch.services.catalog_embeddings import (
    CatalogEmbeddingIndexer,
    parse_tags,
    validate_isbn,
)

DIM = 4


@pytest.fixture
def indexer(provider) -> CatalogEmbeddingIndexer:
    return CatalogEmbeddingIndexer(provider)


@pytest.fixture
def repo() -> EmbeddingRepository:
    return EmbeddingRepository(dimension=DIM)


async def _has_embedding(session, isbn: str) -> bool:
    result = await session.execute(select(Ebook.has_embedding).where(Ebook.isbn == isbn))
    return result.scalar_one()


def test_parse_tags():
    raw = " Fantasy, ,Adventure ,," + "x" * 51 + ", Magic"
    assert parse_tags(raw) == ["Fantasy", "Adventure", "Magic"]
    assert parse_tags(None) == []
    assert parse_tags("") == []


@pytest.mark.parametrize("isbn", ["0123456789", "9780000000001", " 9780000000001 "])
def test_valid_isbns(isbn):
    assert validate_isbn(isbn) == isbn.strip()


@pytest.mark.parametrize("isbn", ["123", "97800000000011", "978-0000000001", "abcdefghij"])
def test_invalid_isbns(isbn):
    with pytest.raises(ValidationError):
        validate_isbn(isbn)


@pytest.mark.asyncio
async def test_embed_pending_stores_payload(
    indexer, provider, repo, session, add_ebook
):
    await add_ebook(
        "9780000000001",
        title="The Dragon Mage",
        author="A. Writer",
        tags="Fantasy, Magic",
        description="Dragons everywhere.",
    )

    report = await indexer.embed_pending(session)

    assert (report.total, report.embedded, report.errors) == (1, 1, 0)
    assert provider.calls == [["The Dragon Mage\nA. Writer\nDragons everywhere."]]
    record = await repo.get(session, "9780000000001")
    assert record.payload_title == "The Dragon Mage"
    assert record.payload_tags == ["Fantasy", "Magic"]
    assert record.synced_to_index is False
    assert await _has_embedding(session, "9780000000001") is True


@pytest.mark.asyncio
async def test_embed_pending_chunks_by_batch_cap(indexer, provider, session, add_ebook):
    provider.max_batch_size = 2
    for i in range(5):
        await add_ebook(f"978000000000{i}", title=f"Book {i}")

    report = await indexer.embed_pending(session, limit=4)

    assert (report.total, report.embedded) == (4, 4)
    assert [len(call) for call in provider.calls] == [2, 2]
    assert await _has_embedding(session, "9780000000004") is False


@pytest.mark.asyncio
async def test_failing_chunk_is_counted_and_retried_later(
    indexer, provider, session, add_ebook
):
    await add_ebook("9780000000001", title="Book")
    provider.fail_with = TransientProviderError("provider down")

    report = await indexer.embed_pending(session)

    assert (report.embedded, report.errors) == (0, 1)
    assert await _has_embedding(session, "9780000000001") is False

    provider.fail_with = None
    retry = await indexer.embed_pending(session)
    assert retry.embedded == 1


@pytest.mark.asyncio
async def test_embed_one(indexer, provider, repo, session, add_ebook):
    await add_ebook("9780000000001", title="Book")

    record = await indexer.embed_one(session, "9780000000001")
    assert record.ebook_isbn == "9780000000001"
    assert len(provider.calls) == 1

    again = await indexer.embed_one(session, "9780000000001")
    assert again.id == record.id
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_forced_reembed_keeps_token_and_resets_flag(
    indexer, provider, repo, session, add_ebook
):
    await add_ebook("9780000000001", title="Book", description="old")
    record = await indexer.embed_one(session, "9780000000001")
    token = await repo.assign_token(session, record.id, "tok-1")
    await repo.mark_synced(session, [SyncStamp.of(record)])
    provider.vectors["Book\nAnonymous\nold"] = [0.9, 0.9, 0.9, 0.9]

    forced = await indexer.embed_one(session, "9780000000001", force=True)

    assert len(provider.calls) == 2
    assert forced.payload_uuid == token
    assert forced.synced_to_index is False
    assert list(forced.vector) == [0.9, 0.9, 0.9, 0.9]


@pytest.mark.asyncio
async def test_embed_one_errors(indexer, session):
    with pytest.raises(ValidationError):
        await indexer.embed_one(session, "not-an-isbn")
    with pytest.raises(NotFoundError):
        await indexer.embed_one(session, "9781111111111")
