"""
Bookmatch Database Models

SQLAlchemy 2.0 ORM models for the catalog, the local embedding store and
the recommendation tables.

Tables:
    ebooks                     — Catalog records keyed by ISBN.
    ebook_embeddings           — Catalog embedding pool, 1:1 with ebooks,
                                 mirrored into the vector index.
    recommendation_embeddings  — Query embedding pool keyed by the
                                 normalized-text hash (never indexed).
    recommendations            — One row per (user, normalized text).
    recommendation_tags        — Association table recommendation ↔ tag.
    recommendation_results     — Ranked search hits for a recommendation.
    tags                       — Tag dictionary (unique name and slug).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bookmatch.models.base import Base, TimestampMixin, VectorType, utcnow

# OpenAI text-embedding-3-small output size
EMBEDDING_DIMENSION: int = 1536

ISBN_LENGTH: int = 13
MAX_TAG_LENGTH: int = 50


recommendation_tags = Table(
    "recommendation_tags",
    Base.metadata,
    Column(
        "recommendation_id",
        Integer,
        ForeignKey("recommendations.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "tag_id",
        Integer,
        ForeignKey("tags.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class Ebook(TimestampMixin, Base):
    """
    Catalog record.

    Rows are created by catalog ingestion (outside this package). The core
    only flips ``has_embedding`` once an embedding has been stored.

    Attributes:
        isbn: Stable external key, digits only, unique and immutable.
        tags: Comma-joined tag names as delivered by the catalog feed.
        has_embedding: True once an EbookEmbedding row exists.
    """

    __tablename__ = "ebooks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    isbn: Mapped[str] = mapped_column(String(ISBN_LENGTH), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    author: Mapped[str] = mapped_column(String(255), nullable=False)
    tags: Mapped[str | None] = mapped_column(Text, nullable=True)
    main_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    has_embedding: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, index=True
    )

    def __repr__(self) -> str:
        return f"<Ebook(isbn={self.isbn}, title='{self.title}')>"


class EbookEmbedding(TimestampMixin, Base):
    """
    Catalog embedding with its denormalized index payload.

    ``payload_uuid`` is the idempotency token: it doubles as the vector
    index point id, so re-upserting the same record overwrites instead of
    duplicating. ``synced_to_index`` is True only while the index holds the
    current vector under that token.

    Attributes:
        id: Autoincrement key, also the deterministic sync order.
        ebook_isbn: ISBN of the catalog record (unique, 1:1).
        vector: Embedding, exactly the configured dimension.
        payload_tags: Tag names as a JSON list.
        payload_uuid: Idempotency token / point id (nullable until minted).
        sync_version: Bumped by every content write; a sync only flags the
            version it actually uploaded.
        synced_to_index: Sync flag (False = PENDING, True = SYNCED).
    """

    __tablename__ = "ebook_embeddings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ebook_isbn: Mapped[str] = mapped_column(
        String(ISBN_LENGTH), unique=True, nullable=False
    )
    vector: Mapped[list[float]] = mapped_column(VectorType, nullable=False)
    payload_title: Mapped[str] = mapped_column(String(255), nullable=False)
    payload_author: Mapped[str] = mapped_column(String(255), nullable=False)
    payload_tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    payload_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload_uuid: Mapped[str | None] = mapped_column(String(36), nullable=True)
    sync_version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    synced_to_index: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, index=True
    )

    def index_payload(self) -> dict[str, Any]:
        """Flat key/value payload stored next to the vector in the index."""
        return {
            "isbn": self.ebook_isbn,
            "title": self.payload_title,
            "author": self.payload_author,
            "tags": list(self.payload_tags or []),
            "description": self.payload_description,
            "created_at": self.created_at.isoformat(),
        }

    def __repr__(self) -> str:
        return (
            f"<EbookEmbedding(isbn={self.ebook_isbn}, "
            f"uuid={self.payload_uuid}, synced={self.synced_to_index})>"
        )


class RecommendationEmbedding(Base):
    """
    Cached embedding of a user query, keyed by its normalized-text hash.

    Lives only in the database: query vectors are never pushed to the index.
    """

    __tablename__ = "recommendation_embeddings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    normalized_text_hash: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    vector: Mapped[list[float]] = mapped_column(VectorType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<RecommendationEmbedding(hash={self.normalized_text_hash[:12]})>"


class Tag(Base):
    """
    Tag dictionary entry.

    Unique by case-insensitive ``name`` and by ``ascii`` slug.
    """

    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("ascii", name="uq_tags_ascii"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(MAX_TAG_LENGTH), nullable=False)
    ascii: Mapped[str] = mapped_column(String(MAX_TAG_LENGTH), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<Tag(name='{self.name}', ascii='{self.ascii}')>"


# Case-insensitive uniqueness needs an expression index
Index("uq_tags_name_lower", func.lower(Tag.name), unique=True)


class Recommendation(TimestampMixin, Base):
    """
    A user's book request: free-text description plus chosen tags.

    At most one row per (user, normalized-text hash); resubmitting
    equivalent text updates the tags of the existing row.

    Attributes:
        user_id: Owner (the users table lives outside this package).
        short_description: Original, un-normalized text.
        normalized_text_hash: SHA-256 of the normalized text.
        found_books_count: Number of stored results after the last search.
        last_search_at: Time of the last completed search, None if never.
        results: Ranked RecommendationResult rows (cascade delete).
    """

    __tablename__ = "recommendations"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "normalized_text_hash", name="uq_recommendations_user_hash"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    short_description: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_text_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    found_books_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_search_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    tags: Mapped[list[Tag]] = relationship(
        secondary=recommendation_tags,
        lazy="selectin",
        order_by="Tag.id",
    )
    results: Mapped[list[RecommendationResult]] = relationship(
        back_populates="recommendation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="RecommendationResult.rank_order",
    )

    def __repr__(self) -> str:
        return (
            f"<Recommendation(id={self.id}, user={self.user_id}, "
            f"hash={self.normalized_text_hash[:12]})>"
        )


class RecommendationResult(Base):
    """
    One ranked hit stored for a recommendation.

    Unique per (recommendation, ebook). ``rank_order`` is 1-based,
    strictly increasing with decreasing score, without gaps.
    """

    __tablename__ = "recommendation_results"
    __table_args__ = (
        UniqueConstraint(
            "recommendation_id", "ebook_id", name="uq_recommendation_results_ebook"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recommendation_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("recommendations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    ebook_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("ebooks.id", ondelete="CASCADE"),
        nullable=False,
    )
    similarity_score: Mapped[Decimal] = mapped_column(
        Numeric(precision=5, scale=4), nullable=False
    )
    rank_order: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    recommendation: Mapped[Recommendation] = relationship(back_populates="results")
    ebook: Mapped[Ebook] = relationship(lazy="joined")

    def __repr__(self) -> str:
        return (
            f"<RecommendationResult(rec={self.recommendation_id}, "
            f"ebook={self.ebook_id}, rank={self.rank_order})>"
        )
