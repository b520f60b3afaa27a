"""
Tag Repository

Tag dictionary lookups and a race-safe create-or-get used by the seeding
script. Tags are unique by case-insensitive name and by ASCII slug.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Iterable

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from bookmatch.core.database import dialect_insert
from bookmatch.core.errors import NotFoundError, ValidationError
from bookmatch.models.base import utcnow
from bookmatch.models.orm import MAX_TAG_LENGTH, Tag

logger = logging.getLogger(__name__)

# Letters NFKD cannot decompose into an ASCII base
_TRANSLITERATIONS = str.maketrans(
    {"ł": "l", "Ł": "L", "ß": "ss", "ø": "o", "Ø": "O"}
)
_NON_SLUG = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    """
    ASCII slug of a tag name: ``"Science Fiction"`` -> ``"science-fiction"``.

    Raises:
        ValidationError: Nothing ASCII survives.
    """
    decomposed = unicodedata.normalize("NFKD", name.translate(_TRANSLITERATIONS))
    ascii_only = decomposed.encode("ascii", "ignore").decode("ascii")
    slug = _NON_SLUG.sub("-", ascii_only.lower()).strip("-")
    if not slug:
        raise ValidationError(f"Tag name {name!r} has no ASCII slug")
    return slug[:MAX_TAG_LENGTH].rstrip("-")


class TagRepository:
    """Repository for the tag dictionary."""

    async def find_by_ids(
        self,
        session: AsyncSession,
        tag_ids: Iterable[int],
    ) -> list[Tag]:
        """
        Resolve tag ids to rows, ordered by id.

        Unknown ids are dropped silently.
        """
        wanted = set(tag_ids)
        if not wanted:
            return []
        stmt = select(Tag).where(Tag.id.in_(wanted)).order_by(Tag.id)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def find_by_name(self, session: AsyncSession, name: str) -> Tag | None:
        """Case-insensitive lookup by display name."""
        stmt = select(Tag).where(func.lower(Tag.name) == name.strip().lower())
        result = await session.execute(stmt)
        return result.scalars().first()

    async def get_or_create(
        self,
        session: AsyncSession,
        name: str,
        ascii: str | None = None,
    ) -> tuple[Tag, bool]:
        """
        Return the tag with this name or slug, creating it if needed.

        The insert ignores unique conflicts and the row is then re-read, so
        two concurrent seeders end up with the same tag.

        Args:
            session: Active async database session.
            name: Display name (trimmed, 1-50 characters).
            ascii: Explicit slug; derived from ``name`` when omitted.

        Returns:
            Tuple of (tag, created).
        """
        name = name.strip()
        if not name or len(name) > MAX_TAG_LENGTH:
            raise ValidationError(
                f"Tag name must be 1-{MAX_TAG_LENGTH} characters, got {name!r}"
            )
        slug = ascii.strip() if ascii else slugify(name)

        stmt = (
            dialect_insert(session, Tag)
            .values(name=name, ascii=slug, active=True, created_at=utcnow())
            .on_conflict_do_nothing()
        )
        result = await session.execute(stmt)
        await session.commit()
        created = bool(result.rowcount)

        lookup = select(Tag).where(
            or_(func.lower(Tag.name) == name.lower(), Tag.ascii == slug)
        )
        tag = (await session.execute(lookup)).scalars().first()
        if tag is None:
            raise NotFoundError(f"Tag {name!r} vanished after write")
        if created:
            logger.info("Created tag '%s' (%s)", tag.name, tag.ascii)
        return tag, created
