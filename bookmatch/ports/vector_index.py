"""Vector index port — abstract interface for the external k-NN service."""

from abc import ABC, abstractmethod
from typing import Any

from bookmatch.models.schemas import CollectionInfo, IndexHit, IndexPoint


class VectorIndex(ABC):
    """
    Abstraction over the vector index holding the catalog embeddings.

    Read paths answer "not found" with an empty / None result; transport
    failures surface as ``TransientProviderError``.
    """

    @abstractmethod
    async def ensure_collection(self, name: str, dimension: int) -> bool:
        """Create the collection if absent. Returns True if it was created."""
        ...

    @abstractmethod
    async def upsert_batch(self, name: str, points: list[IndexPoint]) -> None:
        """Insert-or-overwrite points by id, all or nothing."""
        ...

    @abstractmethod
    async def search(
        self,
        name: str,
        vector: list[float],
        limit: int,
        filter: dict[str, Any] | None = None,
    ) -> list[IndexHit]:
        """Return at most ``limit`` hits ordered by descending score."""
        ...

    @abstractmethod
    async def delete_point(self, name: str, point_id: str) -> None:
        """Remove one point; missing points are ignored."""
        ...

    @abstractmethod
    async def delete_collection(self, name: str) -> None:
        """Drop the whole collection; a missing collection is ignored."""
        ...

    @abstractmethod
    async def get_collection_info(self, name: str) -> CollectionInfo | None:
        """Collection metadata, or None when it does not exist."""
        ...
