"""Embedding provider port — abstract interface for text → vector models."""

from abc import ABC, abstractmethod


class EmbeddingProvider(ABC):
    """
    Abstraction over an external text-embedding model.

    Implementations must return vectors positionally aligned with their
    inputs and reject (never truncate) batches above ``max_batch_size``.
    """

    dimension: int
    max_batch_size: int

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts; output[i] belongs to texts[i]."""
        ...

    async def embed(self, text: str) -> list[float]:
        """Embed a single text."""
        vectors = await self.embed_batch([text])
        return vectors[0]
