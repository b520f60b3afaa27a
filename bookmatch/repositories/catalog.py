"""
Catalog Repository

Read access to the catalog (``ebooks``) plus the single write the core is
allowed to make on it: flipping ``has_embedding``. Catalog rows themselves
are created by an external ingestion job.
"""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bookmatch.models.orm import Ebook


class CatalogRepository:
    """Lookups over the catalog keyed by ISBN."""

    async def find_by_key(self, session: AsyncSession, isbn: str) -> Ebook | None:
        stmt = select(Ebook).where(Ebook.isbn == isbn)
        result = await session.execute(stmt)
        return result.scalars().first()

    async def find_by_isbns(
        self,
        session: AsyncSession,
        isbns: Iterable[str],
    ) -> dict[str, Ebook]:
        """
        Resolve many ISBNs in one query.

        Returns:
            Mapping ISBN -> Ebook; unknown ISBNs are simply absent.
        """
        wanted = set(isbns)
        if not wanted:
            return {}
        stmt = select(Ebook).where(Ebook.isbn.in_(wanted))
        result = await session.execute(stmt)
        return {ebook.isbn: ebook for ebook in result.scalars().all()}

    async def find_pending_embedding_candidates(
        self,
        session: AsyncSession,
        limit: int,
    ) -> list[Ebook]:
        """Catalog rows without an embedding yet, oldest first."""
        stmt = (
            select(Ebook)
            .where(Ebook.has_embedding.is_(False))
            .order_by(Ebook.id)
            .limit(limit)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def mark_embedded(
        self,
        session: AsyncSession,
        ebook_ids: Iterable[int],
        commit: bool = True,
    ) -> None:
        """Set ``has_embedding`` on the given catalog rows."""
        ids = list(ebook_ids)
        if not ids:
            return
        await session.execute(
            update(Ebook)
            .where(Ebook.id.in_(ids))
            .values(has_embedding=True)
            .execution_options(synchronize_session=False)
        )
        if commit:
            await session.commit()
