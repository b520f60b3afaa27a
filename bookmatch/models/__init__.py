"""Models package — SQLAlchemy ORM and Pydantic schemas for the sync pipeline."""

from bookmatch.models.base import Base, as_vector
from bookmatch.models.orm import (
    EMBEDDING_DIMENSION,
    Ebook,
    EbookEmbedding,
    Recommendation,
    RecommendationEmbedding,
    RecommendationResult,
    Tag,
)
from bookmatch.models.schemas import (
    CollectionInfo,
    IndexHit,
    IndexingReport,
    IndexPoint,
    RefreshReport,
    SyncReport,
    SyncStats,
)

__all__ = [
    # SQLAlchemy ORM (persistence layer)
    "Base",
    "EMBEDDING_DIMENSION",
    "Ebook",
    "EbookEmbedding",
    "Recommendation",
    "RecommendationEmbedding",
    "RecommendationResult",
    "Tag",
    "as_vector",
    # Pydantic schemas (adapters and job reports)
    "CollectionInfo",
    "IndexHit",
    "IndexPoint",
    "IndexingReport",
    "RefreshReport",
    "SyncReport",
    "SyncStats",
]
