"""
Catalog Embedding Indexer

Fills the catalog embedding pool from the ``ebooks`` table. Each record
is embedded from ``"{title}\\n{author}\\n{description}"`` and stored with
a payload snapshot, PENDING, for the sync engine to pick up.

Design:
    - Records are embedded in chunks of the provider's batch cap.
    - A failing chunk is logged, counted and skipped; the next run
      retries it since ``has_embedding`` stays False.
    - A forced re-embed keeps the record's idempotency token, so the
      next sync overwrites the existing point.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bookmatch.core.errors import BookmatchError, NotFoundError, ValidationError
from bookmatch.models.orm import MAX_TAG_LENGTH, Ebook, EbookEmbedding
from bookmatch.models.schemas import IndexingReport
from bookmatch.ports.embedding import EmbeddingProvider
from bookmatch.repositories.catalog import CatalogRepository
from bookmatch.repositories.embeddings import EmbeddingRepository

logger = logging.getLogger(__name__)

_ISBN_PATTERN = re.compile(r"\d{10,13}")


def parse_tags(raw: str | None) -> list[str]:
    """Split the catalog's comma-joined tags, dropping blanks and oversized ones."""
    if not raw:
        return []
    tags = [tag.strip() for tag in raw.split(",")]
    return [tag for tag in tags if tag and len(tag) <= MAX_TAG_LENGTH]


def validate_isbn(isbn: str) -> str:
    """Return the trimmed ISBN or raise ``ValidationError`` unless 10-13 digits."""
    isbn = isbn.strip()
    if not _ISBN_PATTERN.fullmatch(isbn):
        raise ValidationError(f"Invalid ISBN {isbn!r}: expected 10 to 13 digits")
    return isbn


@dataclass(frozen=True)
class _CatalogSnapshot:
    """Plain copy of the catalog fields the indexer needs."""

    id: int
    isbn: str
    title: str
    author: str
    tags: list[str]
    description: str | None

    @classmethod
    def of(cls, ebook: Ebook) -> _CatalogSnapshot:
        return cls(
            id=ebook.id,
            isbn=ebook.isbn,
            title=ebook.title,
            author=ebook.author,
            tags=parse_tags(ebook.tags),
            description=ebook.main_description,
        )

    @property
    def text(self) -> str:
        return f"{self.title}\n{self.author}\n{self.description or ''}"


class CatalogEmbeddingIndexer:
    """
    Embeds catalog records into the embedding store.

    Usage::

        indexer = CatalogEmbeddingIndexer(provider)
        report = await indexer.embed_pending(session, limit=200)
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        embeddings: EmbeddingRepository | None = None,
        catalog: CatalogRepository | None = None,
    ) -> None:
        self._provider = provider
        self._embeddings = embeddings or EmbeddingRepository(provider.dimension)
        self._catalog = catalog or CatalogRepository()

    async def embed_pending(
        self,
        session: AsyncSession,
        limit: int = 50,
    ) -> IndexingReport:
        """
        Embed up to ``limit`` catalog records that have no embedding yet.

        Returns:
            IndexingReport with per-record counts.
        """
        ebooks = await self._catalog.find_pending_embedding_candidates(session, limit)
        snapshots = [_CatalogSnapshot.of(ebook) for ebook in ebooks]
        report = IndexingReport(total=len(snapshots))

        batch_size = self._provider.max_batch_size
        for start in range(0, len(snapshots), batch_size):
            chunk = snapshots[start : start + batch_size]
            try:
                await self._embed_chunk(session, chunk)
            except (BookmatchError, SQLAlchemyError) as e:
                await session.rollback()
                logger.error(
                    "Failed to embed %d records starting at ISBN %s (%s): %s",
                    len(chunk),
                    chunk[0].isbn,
                    type(e).__name__,
                    e,
                )
                report.errors += len(chunk)
                continue
            report.embedded += len(chunk)

        logger.info(
            "Indexing finished: %d total, %d embedded, %d errors",
            report.total,
            report.embedded,
            report.errors,
        )
        return report

    async def _embed_chunk(
        self,
        session: AsyncSession,
        chunk: list[_CatalogSnapshot],
    ) -> None:
        """Embed one provider batch and store it in a single transaction."""
        vectors = await self._provider.embed_batch([item.text for item in chunk])
        for item, vector in zip(chunk, vectors, strict=True):
            await self._store(session, item, vector)
        await self._catalog.mark_embedded(
            session, [item.id for item in chunk], commit=False
        )
        await session.commit()

    async def _store(
        self,
        session: AsyncSession,
        item: _CatalogSnapshot,
        vector: list[float],
    ) -> EbookEmbedding:
        return await self._embeddings.put(
            session,
            isbn=item.isbn,
            vector=vector,
            title=item.title,
            author=item.author,
            tags=item.tags,
            description=item.description,
            commit=False,
        )

    async def embed_one(
        self,
        session: AsyncSession,
        isbn: str,
        force: bool = False,
    ) -> EbookEmbedding:
        """
        Embed a single catalog record.

        Args:
            session: Active async database session.
            isbn: ISBN of the record (10-13 digits).
            force: Re-embed even if an embedding exists. The record goes
                back to PENDING and keeps its token.

        Raises:
            ValidationError: Malformed ISBN.
            NotFoundError: No catalog record with this ISBN.
            TransientProviderError: The provider failed.
        """
        isbn = validate_isbn(isbn)
        ebook = await self._catalog.find_by_key(session, isbn)
        if ebook is None:
            raise NotFoundError(f"Ebook with ISBN {isbn} not found")

        existing = await self._embeddings.get(session, isbn)
        if existing is not None and not force:
            logger.info("Embedding for ISBN %s already exists, skipping", isbn)
            return existing

        item = _CatalogSnapshot.of(ebook)
        vector = await self._provider.embed(item.text)
        record = await self._store(session, item, vector)
        await self._catalog.mark_embedded(session, [item.id], commit=False)
        await session.commit()

        logger.info(
            "%s embedding for ISBN %s (uuid=%s)",
            "Re-embedded" if existing is not None else "Created",
            isbn,
            record.payload_uuid,
        )
        return record
