"""
Recommendation Repository

Persistence for recommendations, their tag sets and their ranked results.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import delete, exists, inspect, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from bookmatch.core.database import dialect_insert
from bookmatch.core.errors import NotFoundError
from bookmatch.models.base import utcnow
from bookmatch.models.orm import Recommendation, RecommendationResult, Tag

logger = logging.getLogger(__name__)

_SCORE_QUANTUM = Decimal("0.0001")


def quantize_score(score: float) -> Decimal:
    """Similarity score at the precision it is stored with."""
    return Decimal(str(score)).quantize(_SCORE_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ResultRow:
    """One ranked hit ready to be stored."""

    ebook_id: int
    score: float
    rank: int


class RecommendationRepository:
    """
    Repository for recommendations and their results.

    Key guarantees:
        - ``get_or_create``: at most one row per (user, text hash), even
          under concurrent submissions.
        - ``replace_results``: old results are deleted and the new set
          inserted in one transaction; readers never see a mix.
    """

    async def get(
        self,
        session: AsyncSession,
        recommendation_id: int,
    ) -> Recommendation | None:
        stmt = (
            select(Recommendation)
            .where(Recommendation.id == recommendation_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def find_by_user_and_hash(
        self,
        session: AsyncSession,
        user_id: int,
        text_hash: str,
    ) -> Recommendation | None:
        stmt = (
            select(Recommendation)
            .where(
                Recommendation.user_id == user_id,
                Recommendation.normalized_text_hash == text_hash,
            )
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def get_or_create(
        self,
        session: AsyncSession,
        *,
        user_id: int,
        text_hash: str,
        short_description: str,
    ) -> tuple[Recommendation, bool]:
        """
        Find the user's recommendation for this text hash, creating it if absent.

        A concurrent duplicate insert is absorbed by ON CONFLICT DO NOTHING
        and the winner's row is returned.

        Returns:
            Tuple of (recommendation, created).
        """
        existing = await self.find_by_user_and_hash(session, user_id, text_hash)
        if existing is not None:
            return existing, False

        now = utcnow()
        stmt = (
            dialect_insert(session, Recommendation)
            .values(
                user_id=user_id,
                short_description=short_description,
                normalized_text_hash=text_hash,
                found_books_count=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=[
                    Recommendation.user_id,
                    Recommendation.normalized_text_hash,
                ]
            )
        )
        result = await session.execute(stmt)
        await session.commit()

        recommendation = await self.find_by_user_and_hash(session, user_id, text_hash)
        if recommendation is None:
            raise NotFoundError(
                f"Recommendation for user {user_id} vanished after write"
            )
        return recommendation, bool(result.rowcount)

    async def set_tags(
        self,
        session: AsyncSession,
        recommendation: Recommendation,
        tags: Sequence[Tag],
    ) -> Recommendation:
        """Replace the tag set and touch ``updated_at``, then commit."""
        recommendation.tags = list(tags)
        recommendation.updated_at = utcnow()
        await session.commit()
        return recommendation

    async def replace_results(
        self,
        session: AsyncSession,
        recommendation: Recommendation,
        rows: Sequence[ResultRow],
        searched_at: datetime | None = None,
    ) -> Recommendation:
        """
        Swap the whole result set of a recommendation atomically.

        Also stores ``found_books_count`` and ``last_search_at``. On any
        failure the transaction is rolled back and the previous results
        remain.
        """
        now = searched_at or utcnow()
        try:
            await session.execute(
                delete(RecommendationResult)
                .where(RecommendationResult.recommendation_id == recommendation.id)
                .execution_options(synchronize_session=False)
            )
            session.expire(recommendation, ["results"])
            self._forget_loaded_results(session, recommendation.id)
            session.add_all(
                RecommendationResult(
                    recommendation_id=recommendation.id,
                    ebook_id=row.ebook_id,
                    similarity_score=quantize_score(row.score),
                    rank_order=row.rank,
                    created_at=now,
                )
                for row in rows
            )
            recommendation.found_books_count = len(rows)
            recommendation.last_search_at = now
            recommendation.updated_at = now
            await session.commit()
        except Exception:
            await session.rollback()
            raise

        await session.refresh(recommendation, attribute_names=["results"])
        logger.debug(
            "Stored %d results for recommendation %d", len(rows), recommendation.id
        )
        return recommendation

    @staticmethod
    def _forget_loaded_results(session: AsyncSession, recommendation_id: int) -> None:
        """Detach in-memory results of rows just deleted in bulk."""
        stale = [
            obj
            for obj in session.identity_map.values()
            if isinstance(obj, RecommendationResult)
            and inspect(obj).dict.get("recommendation_id") == recommendation_id
        ]
        for obj in stale:
            session.expunge(obj)

    async def find_due_for_refresh(
        self,
        session: AsyncSession,
        *,
        stale_before: datetime,
        limit: int | None = None,
        force: bool = False,
    ) -> list[Recommendation]:
        """
        Recommendations whose results are missing or stale, oldest first.

        Due means: no stored results, never searched, or last searched
        before ``stale_before``. ``force`` selects every recommendation.
        """
        stmt = select(Recommendation)
        if not force:
            has_results = exists().where(
                RecommendationResult.recommendation_id == Recommendation.id
            )
            stmt = stmt.where(
                or_(
                    ~has_results,
                    Recommendation.last_search_at.is_(None),
                    Recommendation.last_search_at < stale_before,
                )
            )
        stmt = stmt.order_by(Recommendation.created_at, Recommendation.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())
