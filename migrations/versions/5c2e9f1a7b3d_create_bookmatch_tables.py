"""create bookmatch tables

Revision ID: 5c2e9f1a7b3d
Revises:
Create Date: 2026-10-19 10:12:44.205117

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "5c2e9f1a7b3d"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# text-embedding-3-small output size
EMBEDDING_DIMENSION = 1536


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    """Create catalog, embedding store, tag and recommendation tables."""
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    # -- catalog --
    op.create_table(
        "ebooks",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("isbn", sa.String(13), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("author", sa.String(255), nullable=False),
        sa.Column("tags", sa.Text(), nullable=True),
        sa.Column("main_description", sa.Text(), nullable=True),
        sa.Column(
            "has_embedding",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("isbn", name="uq_ebooks_isbn"),
    )
    op.create_index("ix_ebooks_has_embedding", "ebooks", ["has_embedding"])

    # -- catalog embedding pool --
    op.create_table(
        "ebook_embeddings",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("ebook_isbn", sa.String(13), nullable=False),
        sa.Column("vector", Vector(EMBEDDING_DIMENSION), nullable=False),
        sa.Column("payload_title", sa.String(255), nullable=False),
        sa.Column("payload_author", sa.String(255), nullable=False),
        sa.Column(
            "payload_tags",
            JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("payload_description", sa.Text(), nullable=True),
        sa.Column("payload_uuid", sa.String(36), nullable=True),
        sa.Column(
            "sync_version",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column(
            "synced_to_index",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("ebook_isbn", name="uq_ebook_embeddings_isbn"),
    )
    op.create_index(
        "ix_ebook_embeddings_synced_to_index",
        "ebook_embeddings",
        ["synced_to_index"],
    )

    # -- query embedding pool --
    op.create_table(
        "recommendation_embeddings",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("normalized_text_hash", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("vector", Vector(EMBEDDING_DIMENSION), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "normalized_text_hash", name="uq_recommendation_embeddings_hash"
        ),
    )

    # -- tags --
    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("ascii", sa.String(50), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("ascii", name="uq_tags_ascii"),
    )
    op.execute("CREATE UNIQUE INDEX uq_tags_name_lower ON tags (lower(name))")

    # -- recommendations --
    op.create_table(
        "recommendations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("short_description", sa.Text(), nullable=False),
        sa.Column("normalized_text_hash", sa.String(64), nullable=False),
        sa.Column(
            "found_books_count",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("last_search_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "user_id", "normalized_text_hash", name="uq_recommendations_user_hash"
        ),
    )
    op.create_index("ix_recommendations_user_id", "recommendations", ["user_id"])

    op.create_table(
        "recommendation_tags",
        sa.Column("recommendation_id", sa.Integer(), nullable=False),
        sa.Column("tag_id", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("recommendation_id", "tag_id"),
        sa.ForeignKeyConstraint(
            ["recommendation_id"],
            ["recommendations.id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(["tag_id"], ["tags.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "recommendation_results",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("recommendation_id", sa.Integer(), nullable=False),
        sa.Column("ebook_id", sa.Integer(), nullable=False),
        sa.Column("similarity_score", sa.Numeric(5, 4), nullable=False),
        sa.Column("rank_order", sa.Integer(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["recommendation_id"],
            ["recommendations.id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(["ebook_id"], ["ebooks.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "recommendation_id", "ebook_id", name="uq_recommendation_results_ebook"
        ),
    )
    op.create_index(
        "ix_recommendation_results_recommendation_id",
        "recommendation_results",
        ["recommendation_id"],
    )


def downgrade() -> None:
    """Drop all bookmatch tables."""
    op.drop_index(
        "ix_recommendation_results_recommendation_id",
        table_name="recommendation_results",
    )
    op.drop_table("recommendation_results")
    op.drop_table("recommendation_tags")
    op.drop_index("ix_recommendations_user_id", table_name="recommendations")
    op.drop_table("recommendations")
    op.execute("DROP INDEX IF EXISTS uq_tags_name_lower")
    op.drop_table("tags")
    op.drop_table("recommendation_embeddings")
    op.drop_index(
        "ix_ebook_embeddings_synced_to_index", table_name="ebook_embeddings"
    )
    op.drop_table("ebook_embeddings")
    op.drop_index("ix_ebooks_has_embedding", table_name="ebooks")
    op.drop_table("ebooks")
