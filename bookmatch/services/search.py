"""
Similarity Search Service

Free text in, catalog records out. The query embedding is cached in the
query pool under the hash of the normalized text, so resubmitting the
same (or an equivalent) description never costs a second provider call.
The raw text, not the normalized one, is what gets embedded.

Hits are reconciled against the catalog: the index is a mirror, the
``ebooks`` table is the source of truth.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from bookmatch.core.config import Settings
from bookmatch.core.errors import ValidationError
from bookmatch.models.base import as_vector
from bookmatch.models.orm import Ebook
from bookmatch.ports.embedding import EmbeddingProvider
from bookmatch.ports.vector_index import VectorIndex
from bookmatch.repositories.catalog import CatalogRepository
from bookmatch.repositories.embeddings import EmbeddingRepository
from bookmatch.services.normalization import text_hash

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankedHit:
    """
    One search hit resolved to its catalog record.

    Attributes:
        ebook: Authoritative catalog row.
        score: Cosine similarity reported by the index.
        isbn: ISBN carried in the point payload.
    """

    ebook: Ebook
    score: float
    isbn: str


class SimilaritySearchService:
    """
    Nearest-neighbour search over the catalog.

    Usage::

        service = SimilaritySearchService(settings, provider, index)
        hits = await service.find_similar(session, "dragons and magic", limit=5)
        for hit in hits:
            print(hit.score, hit.ebook.title)
    """

    def __init__(
        self,
        settings: Settings,
        provider: EmbeddingProvider,
        index: VectorIndex,
        embeddings: EmbeddingRepository | None = None,
        catalog: CatalogRepository | None = None,
    ) -> None:
        self._provider = provider
        self._index = index
        self._collection = settings.qdrant_collection
        self._dimension = settings.embedding_dimension
        self._embeddings = embeddings or EmbeddingRepository(self._dimension)
        self._catalog = catalog or CatalogRepository()

    async def embed_query(self, session: AsyncSession, query_text: str) -> list[float]:
        """
        Embedding of a query, served from the query pool when possible.

        Raises:
            ValidationError: Blank query.
            TransientProviderError: Cache miss and the provider failed.
        """
        if not query_text or not query_text.strip():
            raise ValidationError("Query text must not be empty")

        key = text_hash(query_text)
        cached = await self._embeddings.get_query_embedding(session, key)
        if cached is not None:
            logger.debug("Query embedding cache hit (hash=%s)", key[:12])
            return as_vector(cached.vector)

        vector = await self._provider.embed(query_text)
        stored = await self._embeddings.save_query_embedding(
            session, text_hash=key, description=query_text, vector=vector
        )
        logger.info("Cached new query embedding (hash=%s)", key[:12])
        return as_vector(stored.vector)

    async def find_similar(
        self,
        session: AsyncSession,
        query_text: str,
        limit: int = 10,
        filter: dict[str, Any] | None = None,
    ) -> list[RankedHit]:
        """
        Catalog records most similar to ``query_text``.

        Args:
            session: Active async database session.
            query_text: Raw user text.
            limit: Maximum number of hits (>= 1).
            filter: Optional Qdrant payload filter.

        Returns:
            At most ``limit`` hits in index order (non-increasing score).
            Hits whose payload has no ISBN, or whose ISBN is not in the
            catalog any more, are dropped.
        """
        if limit < 1:
            raise ValidationError("limit must be at least 1")

        vector = await self.embed_query(session, query_text)
        await self._index.ensure_collection(self._collection, self._dimension)
        hits = await self._index.search(self._collection, vector, limit, filter)
        if not hits:
            return []

        isbns = [str(hit.payload["isbn"]) for hit in hits if hit.payload.get("isbn")]
        ebooks = await self._catalog.find_by_isbns(session, isbns)

        ranked: list[RankedHit] = []
        for hit in hits:
            isbn = hit.payload.get("isbn")
            if not isbn:
                logger.warning("Index hit %s has no ISBN in its payload", hit.id)
                continue
            ebook = ebooks.get(str(isbn))
            if ebook is None:
                logger.warning("Index hit %s points to unknown ISBN %s", hit.id, isbn)
                continue
            ranked.append(RankedHit(ebook=ebook, score=hit.score, isbn=str(isbn)))

        logger.info(
            "Found %d similar ebooks (%d raw hits, limit=%d)",
            len(ranked),
            len(hits),
            limit,
        )
        return ranked[:limit]
