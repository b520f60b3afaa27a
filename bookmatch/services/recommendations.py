"""
Recommendation Service

Orchestrates a user's book request end to end:

    text + tag ids -> normalize + hash -> create-or-get recommendation
    -> replace tag set -> similarity search -> ranked results stored

Design:
    - Saving the request never depends on the embedding provider or the
      index being up: ``create_or_update`` only touches the database.
    - ``search_and_store`` reports failures as a ``SearchOutcome`` instead
      of raising, so a search outage never undoes the saved request.
    - The periodic refresher re-runs searches whose results are missing
      or older than the staleness window.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bookmatch.core.config import Settings
from bookmatch.core.errors import NotFoundError, ValidationError
from bookmatch.models.base import utcnow
from bookmatch.models.orm import Recommendation
from bookmatch.models.schemas import RefreshReport
from bookmatch.repositories.recommendations import (
    RecommendationRepository,
    ResultRow,
    quantize_score,
)
from bookmatch.repositories.tags import TagRepository
from bookmatch.services.normalization import generate_hash, normalize_text
from bookmatch.services.search import RankedHit, SimilaritySearchService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchOutcome:
    """
    Result of one search-and-store run.

    Attributes:
        succeeded: True if fresh results were stored.
        found: Number of results stored.
        error: Short description of the failure, if any.
    """

    succeeded: bool
    found: int = 0
    error: str | None = None


def rank_hits(hits: Sequence[RankedHit]) -> list[ResultRow]:
    """
    Turn search hits into gap-free ranks.

    Sorted by descending score at stored precision, ties broken by
    ascending ISBN; an ebook seen twice keeps its best-ranked occurrence.
    """
    rows: list[ResultRow] = []
    seen: set[int] = set()
    for hit in sorted(hits, key=lambda h: (-quantize_score(h.score), h.isbn)):
        if hit.ebook.id in seen:
            continue
        seen.add(hit.ebook.id)
        rows.append(
            ResultRow(ebook_id=hit.ebook.id, score=hit.score, rank=len(rows) + 1)
        )
    return rows


class RecommendationService:
    """
    Create, search and refresh user recommendations.

    Usage::

        service = RecommendationService(settings, search_service)
        recommendation, outcome = await service.create_and_search(
            session, user_id=7, text="Dragons, magic!", tag_ids=[3]
        )
    """

    def __init__(
        self,
        settings: Settings,
        search: SimilaritySearchService,
        recommendations: RecommendationRepository | None = None,
        tags: TagRepository | None = None,
    ) -> None:
        self._search = search
        self._top_k = settings.search_top_k
        self._stale_after = timedelta(days=settings.recommendation_stale_days)
        self._recommendations = recommendations or RecommendationRepository()
        self._tags = tags or TagRepository()

    # ------------------------------------------------------------------
    # Create / update
    # ------------------------------------------------------------------

    async def create_or_update(
        self,
        session: AsyncSession,
        user_id: int,
        text: str,
        tag_ids: Iterable[int],
    ) -> Recommendation:
        """
        Save a user's request, deduplicated on the normalized text.

        Equivalent text from the same user (case, punctuation, spacing)
        lands on the existing recommendation; its tag set is replaced
        by ``tag_ids``. Unknown tag ids are ignored.

        Raises:
            ValidationError: Nothing left of the text after normalization.
        """
        normalized = normalize_text(text)
        if not normalized:
            raise ValidationError("Description is empty after normalization")
        key = generate_hash(normalized)

        recommendation, created = await self._recommendations.get_or_create(
            session,
            user_id=user_id,
            text_hash=key,
            short_description=text,
        )
        tags = await self._tags.find_by_ids(session, tag_ids)
        await self._recommendations.set_tags(session, recommendation, tags)

        logger.info(
            "%s recommendation %d for user %d (hash=%s, tags=%s)",
            "Created" if created else "Updated",
            recommendation.id,
            user_id,
            key[:12],
            [tag.id for tag in tags],
        )
        return recommendation

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search_and_store(
        self,
        session: AsyncSession,
        recommendation: Recommendation,
        top_k: int | None = None,
    ) -> SearchOutcome:
        """
        Run the similarity search and replace the stored results.

        Never raises: on failure the previous results stay in place and
        the outcome says why.
        """
        recommendation_id = recommendation.id
        limit = top_k or self._top_k
        try:
            hits = await self._search.find_similar(
                session, recommendation.short_description, limit
            )
            rows = rank_hits(hits)
            await self._recommendations.replace_results(session, recommendation, rows)
        except Exception as e:
            logger.error(
                "Search failed for recommendation %d (%s): %s",
                recommendation_id,
                type(e).__name__,
                e,
            )
            await self._reload(session, recommendation)
            return SearchOutcome(succeeded=False, error=str(e))

        logger.info(
            "Stored %d results for recommendation %d", len(rows), recommendation_id
        )
        return SearchOutcome(succeeded=True, found=len(rows))

    @staticmethod
    async def _reload(session: AsyncSession, recommendation: Recommendation) -> None:
        """Bring a recommendation back in sync after a rolled-back write."""
        try:
            await session.refresh(recommendation)
        except SQLAlchemyError as e:
            logger.warning("Could not reload recommendation: %s", e)

    async def create_and_search(
        self,
        session: AsyncSession,
        user_id: int,
        text: str,
        tag_ids: Iterable[int],
    ) -> tuple[Recommendation, SearchOutcome]:
        """Save the request, then search; the save stands even if the search fails."""
        recommendation = await self.create_or_update(session, user_id, text, tag_ids)
        outcome = await self.search_and_store(session, recommendation)
        return recommendation, outcome

    # ------------------------------------------------------------------
    # Periodic refresh
    # ------------------------------------------------------------------

    async def find_due_for_refresh(
        self,
        session: AsyncSession,
        stale_after: timedelta | None = None,
        limit: int | None = None,
        force: bool = False,
    ) -> list[Recommendation]:
        """Recommendations with no results or results older than ``stale_after``."""
        window = stale_after if stale_after is not None else self._stale_after
        return await self._recommendations.find_due_for_refresh(
            session,
            stale_before=utcnow() - window,
            limit=limit,
            force=force,
        )

    async def refresh_due(
        self,
        session: AsyncSession,
        *,
        stale_after: timedelta | None = None,
        limit: int | None = None,
        force: bool = False,
    ) -> RefreshReport:
        """Re-run the search for every due recommendation."""
        due = await self.find_due_for_refresh(session, stale_after, limit, force)
        report = RefreshReport(total=len(due))
        for recommendation in due:
            outcome = await self.search_and_store(session, recommendation)
            if outcome.succeeded:
                report.succeeded += 1
            else:
                report.errors += 1

        logger.info(
            "Refresh finished: %d due, %d refreshed, %d errors",
            report.total,
            report.succeeded,
            report.errors,
        )
        return report

    async def refresh_one(
        self,
        session: AsyncSession,
        recommendation_id: int,
    ) -> SearchOutcome:
        """Re-run the search for a single recommendation."""
        recommendation = await self._recommendations.get(session, recommendation_id)
        if recommendation is None:
            raise NotFoundError(f"Recommendation {recommendation_id} not found")
        return await self.search_and_store(session, recommendation)
