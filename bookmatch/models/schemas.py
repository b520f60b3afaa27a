"""
Bookmatch Schemas

Pydantic models exchanged with the vector index adapter, plus the
summary records returned by the batch jobs.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class IndexPoint(BaseModel):
    """
    One point sent to the vector index.

    ``id`` is the record's idempotency token, so upserting the same record
    twice overwrites the same point.
    """

    id: str = Field(description="Point id (UUID string)")
    vector: list[float] = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class IndexHit(BaseModel):
    """Single nearest-neighbour hit returned by the vector index."""

    id: str | int
    score: float = Field(description="Cosine similarity (higher = more similar)")
    payload: dict[str, Any] = Field(default_factory=dict)


class CollectionInfo(BaseModel):
    """Subset of the collection metadata reported by the vector index."""

    name: str
    status: str = "unknown"
    points_count: int = 0
    vector_size: int | None = None
    distance: str | None = None


class SyncReport(BaseModel):
    """
    Outcome of one sync pass.

    Partial success is the expected steady state: ``errors`` counts records
    left PENDING for the next pass.
    """

    total: int = 0
    synced: int = 0
    errors: int = 0
    skipped: int = 0
    batches: int = 0


class SyncStats(BaseModel):
    """Index-side and store-side counters, for operators."""

    collection: CollectionInfo | None
    total_embeddings: int
    synced_embeddings: int

    @property
    def pending_embeddings(self) -> int:
        return self.total_embeddings - self.synced_embeddings


class IndexingReport(BaseModel):
    """Outcome of one catalog embedding pass."""

    total: int = 0
    embedded: int = 0
    errors: int = 0


class RefreshReport(BaseModel):
    """Outcome of one recommendation refresh pass."""

    total: int = 0
    succeeded: int = 0
    errors: int = 0
