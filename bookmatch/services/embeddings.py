"""
Embedding Clients

Adapters that turn text into fixed-length vectors.

    OpenAIEmbeddingClient   text-embedding-3-small (1536 dims) via the
                            OpenAI API. Default backend.
    LocalEmbeddingClient    sentence-transformers model run in-process,
                            for offline development.

Both enforce the same contract: non-empty texts only, batches capped at
``max_batch_size`` (rejected, never truncated), output aligned with input,
every vector exactly ``dimension`` long. A batch either fully succeeds or
raises; there is no inline retry, so a flaky paid API is never charged
twice for the same call.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, ClassVar

import httpx
import openai
from openai import AsyncOpenAI

from bookmatch.core.config import Settings
from bookmatch.core.errors import (
    ConsistencyError,
    TransientProviderError,
    ValidationError,
)
from bookmatch.ports.embedding import EmbeddingProvider

logger = logging.getLogger(__name__)


def validate_texts(texts: list[str], max_batch_size: int) -> None:
    """
    Reject a batch before it reaches the provider.

    Raises:
        ValidationError: Batch above the cap, or any text empty after strip.
    """
    if len(texts) > max_batch_size:
        raise ValidationError(
            f"Batch of {len(texts)} texts exceeds the provider limit "
            f"of {max_batch_size}"
        )
    for position, text in enumerate(texts):
        if not isinstance(text, str) or not text.strip():
            raise ValidationError(
                f"All texts must be non-empty strings (position {position})"
            )


def validate_vectors(
    vectors: list[list[float]],
    expected_count: int,
    dimension: int,
) -> None:
    """Check the provider answered one vector of the right size per input."""
    if len(vectors) != expected_count:
        raise ConsistencyError(
            f"Provider returned {len(vectors)} embeddings for "
            f"{expected_count} inputs"
        )
    for position, vector in enumerate(vectors):
        if len(vector) != dimension:
            raise ConsistencyError(
                f"Embedding {position} has {len(vector)} dimensions, "
                f"expected {dimension}"
            )


class OpenAIEmbeddingClient(EmbeddingProvider):
    """
    Async batch embedding client backed by the OpenAI embeddings API.

    The SDK's own retry loop is disabled (``max_retries=0``): a failed call
    surfaces as ``TransientProviderError`` and the caller's next scheduled
    pass is the retry.

    Usage::

        client = OpenAIEmbeddingClient(settings)
        vectors = await client.embed_batch(["dragons", "space opera"])
        assert len(vectors[0]) == 1536
    """

    def __init__(self, settings: Settings, client: AsyncOpenAI | None = None) -> None:
        self._model = settings.embedding_model
        self.dimension = settings.embedding_dimension
        self.max_batch_size = settings.embedding_batch_limit
        if client is None:
            try:
                client = AsyncOpenAI(
                    api_key=settings.openai_api_key or None,
                    timeout=settings.embedding_timeout,
                    max_retries=0,
                )
            except openai.OpenAIError as e:
                raise ValidationError(f"OpenAI client misconfigured: {e}") from e
        self._client = client

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Embed up to ``max_batch_size`` texts in a single API call.

        The API tags each item with the index of its input; items are
        re-sorted by that index so callers can zip inputs to outputs.

        Raises:
            ValidationError: Oversized batch or empty text.
            TransientProviderError: Any API / network failure.
            ConsistencyError: Wrong item count or vector dimension.
        """
        if not texts:
            return []
        validate_texts(texts, self.max_batch_size)

        try:
            response = await self._client.embeddings.create(
                model=self._model,
                input=texts,
                encoding_format="float",
            )
        except (openai.OpenAIError, httpx.HTTPError) as e:
            logger.warning(
                "Embedding request failed (%s, batch=%d): %s",
                type(e).__name__,
                len(texts),
                e,
            )
            raise TransientProviderError(f"Failed to generate embeddings: {e}") from e

        items = sorted(response.data, key=lambda item: item.index)
        vectors = [list(item.embedding) for item in items]
        validate_vectors(vectors, len(texts), self.dimension)

        logger.debug("Embedded %d texts (model=%s)", len(texts), self._model)
        return vectors


class LocalEmbeddingClient(EmbeddingProvider):
    """
    Embedding client backed by a local sentence-transformers model.

    The model is loaded lazily on first use and cached as a class-level
    singleton. Inference is CPU-bound and runs in a worker thread.
    """

    _models: ClassVar[dict[str, Any]] = {}

    def __init__(self, settings: Settings) -> None:
        self._model_name = settings.local_embedding_model
        self.dimension = settings.embedding_dimension
        self.max_batch_size = settings.embedding_batch_limit

    def _get_model(self) -> Any:
        """
        Get or lazily initialize the sentence-transformers model.

        The import is deferred so that ``sentence_transformers`` is not
        required at module-import time (keeps test collection fast).
        """
        model = self._models.get(self._model_name)
        if model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("Loading embedding model: %s ...", self._model_name)
            model = SentenceTransformer(self._model_name)
            self._models[self._model_name] = model
            logger.info(
                "Model loaded (dim=%d)", model.get_sentence_embedding_dimension()
            )
        size = model.get_sentence_embedding_dimension()
        if size is not None and size != self.dimension:
            raise ConsistencyError(
                f"Model {self._model_name} produces {size}-dimensional vectors "
                f"but EMBEDDING_DIMENSION is {self.dimension}"
            )
        return model

    def _encode_sync(self, texts: list[str]) -> list[list[float]]:
        """Synchronous batch encoding; always call via ``asyncio.to_thread``."""
        model = self._get_model()
        embeddings = model.encode(texts, normalize_embeddings=True)
        result: list[list[float]] = embeddings.tolist()
        return result

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch in a worker thread; same contract as the OpenAI client."""
        if not texts:
            return []
        validate_texts(texts, self.max_batch_size)

        try:
            vectors = await asyncio.to_thread(self._encode_sync, texts)
        except (OSError, RuntimeError) as e:
            raise TransientProviderError(f"Local embedding failed: {e}") from e

        validate_vectors(vectors, len(texts), self.dimension)
        return vectors

    @classmethod
    def reset(cls) -> None:
        """Release all loaded models from memory."""
        cls._models.clear()
        logger.info("Local embedding models released")


def build_embedding_provider(settings: Settings) -> EmbeddingProvider:
    """Instantiate the backend selected by ``EMBEDDING_BACKEND``."""
    if settings.embedding_backend == "local":
        return LocalEmbeddingClient(settings)
    return OpenAIEmbeddingClient(settings)
