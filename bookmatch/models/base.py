"""
SQLAlchemy Base Models

Provides the declarative base and reusable column helpers for all ORM models.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# pgvector on PostgreSQL, plain JSON arrays on SQLite (tests, local runs).
# No fixed dimension at the column level: the configured provider decides
# it and the repositories enforce it on write.
VectorType = Vector().with_variant(JSON(), "sqlite")


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(UTC)


def as_vector(value: Iterable[float]) -> list[float]:
    """
    Coerce a stored vector into a plain list of floats.

    pgvector hands back numpy arrays, the JSON variant hands back lists;
    callers (Qdrant payloads, comparisons) want native floats.
    """
    return [float(x) for x in value]


class Base(DeclarativeBase):
    """Declarative base class for all SQLAlchemy ORM models."""

    pass


class TimestampMixin:
    """
    Mixin that adds created_at and updated_at timestamp fields.

    Both are set Python-side so they are available right after a flush,
    without an extra round-trip (async sessions cannot lazy-load).
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
