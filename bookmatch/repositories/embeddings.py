"""
Embedding Repository

Data access for the two embedding pools:

    catalog pool  EbookEmbedding rows keyed by ISBN, mirrored into the
                  vector index by the sync engine.
    query pool    RecommendationEmbedding rows keyed by the hash of the
                  normalized query text, never indexed.

Every write commits before returning, so no lock or open transaction is
held while the caller talks to the embedding provider or the index.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from bookmatch.core.database import dialect_insert
from bookmatch.core.errors import NotFoundError, ValidationError
from bookmatch.models.base import utcnow
from bookmatch.models.orm import (
    EMBEDDING_DIMENSION,
    EbookEmbedding,
    RecommendationEmbedding,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncStamp:
    """Token and content version a point was built from."""

    record: EbookEmbedding
    token: str | None
    version: int

    @classmethod
    def of(cls, record: EbookEmbedding) -> SyncStamp:
        return cls(
            record=record, token=record.payload_uuid, version=record.sync_version
        )


class EmbeddingRepository:
    """
    Repository for the catalog and query embedding pools.

    All methods expect an externally managed ``AsyncSession``.

    Key guarantees:
        - ``put``: a replaced vector or payload always goes back to PENDING,
          keeps its idempotency token and gets a new ``sync_version``.
        - ``assign_token``: compare-and-set, so concurrent minters agree on
          a single token per record.
        - ``mark_synced``: only flags records whose token and content
          version are still the ones that were upserted.
    """

    def __init__(self, dimension: int = EMBEDDING_DIMENSION) -> None:
        self.dimension = dimension

    def _check_vector(self, vector: Sequence[float]) -> list[float]:
        if len(vector) != self.dimension:
            raise ValidationError(
                f"Embedding has {len(vector)} dimensions, expected {self.dimension}"
            )
        return [float(x) for x in vector]

    # ------------------------------------------------------------------
    # Catalog pool: writes
    # ------------------------------------------------------------------

    async def put(
        self,
        session: AsyncSession,
        *,
        isbn: str,
        vector: Sequence[float],
        title: str,
        author: str,
        tags: list[str],
        description: str | None,
        commit: bool = True,
    ) -> EbookEmbedding:
        """
        Insert or replace the catalog embedding of one ISBN.

        A single ``INSERT ... ON CONFLICT (ebook_isbn) DO UPDATE`` so that
        a replace never touches ``payload_uuid``. A replace bumps
        ``sync_version``, so an upload still in flight cannot flag it.

        Args:
            session: Active async database session.
            isbn: ISBN of the catalog record.
            vector: Embedding of exactly ``dimension`` floats.
            title, author, tags, description: Index payload snapshot.
            commit: Commit immediately (False lets the caller group writes).

        Returns:
            The stored EbookEmbedding, PENDING.
        """
        values = {
            "ebook_isbn": isbn,
            "vector": self._check_vector(vector),
            "payload_title": title,
            "payload_author": author,
            "payload_tags": list(tags),
            "payload_description": description,
            "synced_to_index": False,
        }
        now = utcnow()
        stmt = dialect_insert(session, EbookEmbedding).values(
            created_at=now, updated_at=now, sync_version=0, **values
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[EbookEmbedding.ebook_isbn],
            set_={
                "vector": stmt.excluded.vector,
                "payload_title": stmt.excluded.payload_title,
                "payload_author": stmt.excluded.payload_author,
                "payload_tags": stmt.excluded.payload_tags,
                "payload_description": stmt.excluded.payload_description,
                "sync_version": EbookEmbedding.sync_version + 1,
                "synced_to_index": False,
                "updated_at": now,
            },
        )
        await session.execute(stmt)
        if commit:
            await session.commit()

        record = await self.get(session, isbn)
        if record is None:
            raise NotFoundError(f"Embedding for ISBN {isbn} vanished after write")
        logger.debug(
            "Stored embedding for ISBN %s (uuid=%s, version=%d)",
            isbn,
            record.payload_uuid,
            record.sync_version,
        )
        return record

    async def assign_token(
        self,
        session: AsyncSession,
        record_id: int,
        token: str,
    ) -> str:
        """
        Persist ``token`` as the record's idempotency token unless one exists.

        Returns:
            The token the row holds afterwards: ``token`` if this call won,
            otherwise the one minted by a concurrent run.
        """
        stmt = (
            update(EbookEmbedding)
            .where(
                EbookEmbedding.id == record_id,
                EbookEmbedding.payload_uuid.is_(None),
            )
            .values(payload_uuid=token, synced_to_index=False)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        await session.commit()

        record = await session.get(EbookEmbedding, record_id, populate_existing=True)
        if record is None or record.payload_uuid is None:
            raise NotFoundError(f"Embedding {record_id} not found")
        if result.rowcount == 0:
            logger.debug(
                "Embedding %d already carried token %s", record_id, record.payload_uuid
            )
        return record.payload_uuid

    async def mark_synced(
        self,
        session: AsyncSession,
        stamps: Sequence[SyncStamp],
    ) -> int:
        """
        Flag a successfully upserted batch as SYNCED in one transaction.

        Each row is guarded by the token and ``sync_version`` captured when
        its point was built; a row rewritten meanwhile stays PENDING.

        Returns:
            Number of records actually flagged.
        """
        flagged: list[EbookEmbedding] = []
        for stamp in stamps:
            stmt = (
                update(EbookEmbedding)
                .where(
                    EbookEmbedding.id == stamp.record.id,
                    EbookEmbedding.payload_uuid == stamp.token,
                    EbookEmbedding.sync_version == stamp.version,
                )
                .values(synced_to_index=True)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            if result.rowcount:
                flagged.append(stamp.record)
        await session.commit()

        for record in flagged:
            set_committed_value(record, "synced_to_index", True)
        if len(flagged) != len(stamps):
            logger.warning(
                "%d of %d records changed during sync, left pending",
                len(stamps) - len(flagged),
                len(stamps),
            )
        return len(flagged)

    async def mark_pending(self, session: AsyncSession, record: EbookEmbedding) -> None:
        """Send one record back to PENDING (its point left the index)."""
        stmt = (
            update(EbookEmbedding)
            .where(EbookEmbedding.id == record.id)
            .values(
                synced_to_index=False,
                sync_version=EbookEmbedding.sync_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await session.execute(stmt)
        await session.commit()
        await session.refresh(record)

    async def reset_all(self, session: AsyncSession) -> int:
        """
        Mark every catalog embedding PENDING with a single UPDATE.

        Returns:
            Number of rows touched.
        """
        stmt = (
            update(EbookEmbedding)
            .values(synced_to_index=False)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        await session.commit()
        logger.info("Reset sync flag on %d embeddings", result.rowcount)
        return result.rowcount

    # ------------------------------------------------------------------
    # Catalog pool: reads
    # ------------------------------------------------------------------

    async def get(self, session: AsyncSession, isbn: str) -> EbookEmbedding | None:
        """Look up the catalog embedding of one ISBN."""
        stmt = (
            select(EbookEmbedding)
            .where(EbookEmbedding.ebook_isbn == isbn)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def find_unsynced(
        self,
        session: AsyncSession,
        limit: int,
        after_id: int | None = None,
    ) -> list[EbookEmbedding]:
        """
        Next PENDING records in creation order.

        Args:
            session: Active async database session.
            limit: Maximum number of records.
            after_id: Keyset cursor; only records with a greater id.

        Returns:
            Up to ``limit`` records ordered by ascending id.
        """
        stmt = select(EbookEmbedding).where(EbookEmbedding.synced_to_index.is_(False))
        if after_id is not None:
            stmt = stmt.where(EbookEmbedding.id > after_id)
        stmt = (
            stmt.order_by(EbookEmbedding.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def count(self, session: AsyncSession) -> int:
        """Total number of catalog embeddings."""
        result = await session.execute(
            select(func.count()).select_from(EbookEmbedding)
        )
        return result.scalar_one()

    async def count_synced(self, session: AsyncSession) -> int:
        """Number of catalog embeddings currently SYNCED."""
        result = await session.execute(
            select(func.count())
            .select_from(EbookEmbedding)
            .where(EbookEmbedding.synced_to_index.is_(True))
        )
        return result.scalar_one()

    # ------------------------------------------------------------------
    # Query pool
    # ------------------------------------------------------------------

    async def get_query_embedding(
        self,
        session: AsyncSession,
        text_hash: str,
    ) -> RecommendationEmbedding | None:
        """Look up a cached query embedding by normalized-text hash."""
        stmt = select(RecommendationEmbedding).where(
            RecommendationEmbedding.normalized_text_hash == text_hash
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def save_query_embedding(
        self,
        session: AsyncSession,
        *,
        text_hash: str,
        description: str,
        vector: Sequence[float],
    ) -> RecommendationEmbedding:
        """
        Cache a query embedding (create-or-get on the hash).

        If another writer stored the same hash first, its row is returned
        and this vector is discarded.
        """
        stmt = (
            dialect_insert(session, RecommendationEmbedding)
            .values(
                normalized_text_hash=text_hash,
                description=description,
                vector=self._check_vector(vector),
                created_at=utcnow(),
            )
            .on_conflict_do_nothing(
                index_elements=[RecommendationEmbedding.normalized_text_hash]
            )
        )
        await session.execute(stmt)
        await session.commit()

        record = await self.get_query_embedding(session, text_hash)
        if record is None:
            raise NotFoundError(
                f"Query embedding {text_hash[:12]} vanished after write"
            )
        return record
