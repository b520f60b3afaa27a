"""
Sync Engine

Mirrors the catalog embedding pool into the vector index with
at-least-once delivery.

Per-record states::

    PENDING (synced_to_index=False) -> SYNCING (in flight) -> SYNCED
    SYNCED -> PENDING on forced re-embed, sync-all reset or point removal

Design:
    - The idempotency token (point id) is minted with a compare-and-set
      and committed before any network call, so a retried batch rewrites
      the same points instead of duplicating them.
    - Batches are fetched with a keyset cursor on ``id``: a failing batch
      stays PENDING for the next pass without blocking the rest of this one.
    - A record is flagged SYNCED only if its content version is still the
      one uploaded; a re-embed landing mid-flight keeps it PENDING.
    - Per-record and per-batch failures are logged and counted; only a
      failure to set up the collection aborts the pass.
"""

from __future__ import annotations

import logging
import time
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from bookmatch.core.config import Settings
from bookmatch.core.errors import (
    ConsistencyError,
    NotFoundError,
    TransientProviderError,
    ValidationError,
)
from bookmatch.models.base import as_vector
from bookmatch.models.orm import EbookEmbedding
from bookmatch.models.schemas import IndexPoint, SyncReport, SyncStats
from bookmatch.ports.vector_index import VectorIndex
from bookmatch.repositories.embeddings import EmbeddingRepository, SyncStamp

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Batch synchronizer between the embedding store and the vector index.

    Usage::

        engine = SyncEngine(settings, QdrantIndexClient(settings))
        async with session_scope(settings) as session:
            report = await engine.sync_unsynced(session, max_batches=10)
        print(report.synced, report.errors)
    """

    def __init__(
        self,
        settings: Settings,
        index: VectorIndex,
        repository: EmbeddingRepository | None = None,
    ) -> None:
        self._index = index
        self._collection = settings.qdrant_collection
        self._dimension = settings.embedding_dimension
        self._batch_size = settings.sync_batch_size
        self._repository = repository or EmbeddingRepository(self._dimension)

    @property
    def collection(self) -> str:
        return self._collection

    # ------------------------------------------------------------------
    # Batch passes
    # ------------------------------------------------------------------

    async def sync_unsynced(
        self,
        session: AsyncSession,
        *,
        batch_size: int | None = None,
        max_batches: int | None = None,
        deadline_seconds: float | None = None,
    ) -> SyncReport:
        """
        Push every PENDING record to the index, batch by batch.

        Args:
            session: Active async database session.
            batch_size: Records per upsert (default ``sync_batch_size``).
            max_batches: Stop after this many batches.
            deadline_seconds: Stop before starting a batch past this budget.

        Returns:
            SyncReport; ``errors`` counts records left PENDING.

        Raises:
            TransientProviderError: The collection could not be ensured.
            ConsistencyError: The collection exists with another vector size.
        """
        size = batch_size or self._batch_size
        if size < 1:
            raise ValidationError("Batch size must be at least 1")

        await self._index.ensure_collection(self._collection, self._dimension)

        report = SyncReport()
        started = time.monotonic()
        cursor: int | None = None

        while True:
            if max_batches is not None and report.batches >= max_batches:
                logger.info("Batch cap reached (%d), stopping pass", max_batches)
                break
            if (
                deadline_seconds is not None
                and time.monotonic() - started >= deadline_seconds
            ):
                logger.info(
                    "Deadline of %.1fs reached, stopping pass", deadline_seconds
                )
                break

            records = await self._repository.find_unsynced(
                session, size, after_id=cursor
            )
            if not records:
                break
            cursor = records[-1].id
            report.batches += 1
            report.total += len(records)
            await self._sync_batch(session, records, report)

        logger.info(
            "Sync pass finished: %d total, %d synced, %d errors, "
            "%d skipped (%d batches)",
            report.total,
            report.synced,
            report.errors,
            report.skipped,
            report.batches,
        )
        return report

    async def sync_all(
        self,
        session: AsyncSession,
        *,
        batch_size: int | None = None,
        max_batches: int | None = None,
        deadline_seconds: float | None = None,
    ) -> SyncReport:
        """
        Mark every record PENDING, then run a normal pass.

        Points keep their ids, so this overwrites the index contents and
        restores points deleted behind our back.
        """
        reset = await self._repository.reset_all(session)
        logger.info("Full resync requested (%d records reset)", reset)
        return await self.sync_unsynced(
            session,
            batch_size=batch_size,
            max_batches=max_batches,
            deadline_seconds=deadline_seconds,
        )

    async def _sync_batch(
        self,
        session: AsyncSession,
        records: list[EbookEmbedding],
        report: SyncReport,
    ) -> None:
        points: list[IndexPoint] = []
        stamps: list[SyncStamp] = []
        for record in records:
            vector = self._checked_vector(record)
            if vector is None:
                report.errors += 1
                continue
            points.append(await self._prepare_point(session, record, vector))
            stamps.append(SyncStamp.of(record))

        if not points:
            return

        try:
            await self._index.upsert_batch(self._collection, points)
        except (TransientProviderError, ValidationError) as e:
            logger.warning(
                "Batch of %d points failed, left pending (%s): %s",
                len(points),
                type(e).__name__,
                e,
            )
            report.errors += len(points)
            return

        flagged = await self._repository.mark_synced(session, stamps)
        report.synced += flagged
        report.skipped += len(stamps) - flagged

    def _checked_vector(self, record: EbookEmbedding) -> list[float] | None:
        """The record's vector, or None (logged) if its dimension is wrong."""
        vector = as_vector(record.vector)
        if len(vector) != self._dimension:
            logger.error(
                "Skipping embedding %s: vector has %d dimensions, expected %d",
                record.ebook_isbn,
                len(vector),
                self._dimension,
            )
            return None
        return vector

    async def _prepare_point(
        self,
        session: AsyncSession,
        record: EbookEmbedding,
        vector: list[float],
    ) -> IndexPoint:
        """Mint the record's token if needed and build its point."""
        if record.payload_uuid is None:
            await self._repository.assign_token(session, record.id, str(uuid4()))
        return IndexPoint(
            id=record.payload_uuid,
            vector=vector,
            payload=record.index_payload(),
        )

    # ------------------------------------------------------------------
    # Single records
    # ------------------------------------------------------------------

    async def sync_one(self, session: AsyncSession, isbn: str) -> bool:
        """
        Push one record to the index right away.

        Returns:
            True if the record ended SYNCED.

        Raises:
            NotFoundError: No embedding stored for this ISBN.
            ConsistencyError: The stored vector has the wrong dimension.
            TransientProviderError: The index did not take the write.
        """
        record = await self._repository.get(session, isbn)
        if record is None:
            raise NotFoundError(f"No embedding stored for ISBN {isbn}")

        vector = self._checked_vector(record)
        if vector is None:
            raise ConsistencyError(f"Embedding {isbn} has the wrong dimension")

        await self._index.ensure_collection(self._collection, self._dimension)
        point = await self._prepare_point(session, record, vector)
        stamp = SyncStamp.of(record)
        await self._index.upsert_batch(self._collection, [point])
        flagged = await self._repository.mark_synced(session, [stamp])
        logger.info("Synced embedding %s (point %s)", isbn, point.id)
        return flagged == 1

    async def remove(self, session: AsyncSession, isbn: str) -> None:
        """
        Delete a record's point from the index and mark it PENDING.

        The token is kept, so a later pass re-creates the same point.
        """
        record = await self._repository.get(session, isbn)
        if record is None:
            raise NotFoundError(f"No embedding stored for ISBN {isbn}")
        if record.payload_uuid is not None:
            await self._index.delete_point(self._collection, record.payload_uuid)
        await self._repository.mark_pending(session, record)
        logger.info("Removed embedding %s from '%s'", isbn, self._collection)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def collection_stats(self, session: AsyncSession) -> SyncStats:
        """Index-side collection info next to the store-side counters."""
        info = await self._index.get_collection_info(self._collection)
        return SyncStats(
            collection=info,
            total_embeddings=await self._repository.count(session),
            synced_embeddings=await self._repository.count_synced(session),
        )
