"""
Pytest Configuration and Fixtures

Shared fixtures for the repository and service tests. Everything runs
offline: an in-memory SQLite database (aiosqlite) stands in for
PostgreSQL, and in-memory fakes stand in for the embedding provider and
for Qdrant.
"""

import os

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Test environment defaults — MUST be before any bookmatch imports.
#
# setdefault fills in anything still missing (CI runners, fresh clones
# without a .env file) so that pydantic Settings validation doesn't crash.
# ---------------------------------------------------------------------------
load_dotenv()  # .env → os.environ (no-op if file is missing)

_test_env = {
    "OPENAI_API_KEY": "sk-test",
    "QDRANT_URL": "http://localhost:6333",
}
for _key, _value in _test_env.items():
    os.environ.setdefault(_key, _value)

# ---------------------------------------------------------------------------
# Imports (safe now that env vars are set)
# ---------------------------------------------------------------------------
import hashlib  # noqa: E402
import math  # noqa: E402
from collections.abc import AsyncGenerator, Awaitable, Callable  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from bookmatch.core.config import Settings  # noqa: E402
from bookmatch.core.database import create_schema  # noqa: E402
from bookmatch.core.errors import (  # noqa: E402
    ConsistencyError,
    TransientProviderError,
    ValidationError,
)
from bookmatch.models.orm import Ebook, Tag  # noqa: E402
from bookmatch.models.schemas import (  # noqa: E402
    CollectionInfo,
    IndexHit,
    IndexPoint,
)
from bookmatch.ports.embedding import EmbeddingProvider  # noqa: E402
from bookmatch.ports.vector_index import VectorIndex  # noqa: E402

TEST_DIMENSION = 4


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic embedding provider.

    Texts listed in ``vectors`` get that exact vector; anything else gets
    a stable pseudo-random vector derived from its SHA-256.
    """

    def __init__(self, dimension: int = TEST_DIMENSION, max_batch_size: int = 10) -> None:
        self.dimension = dimension
        self.max_batch_size = max_batch_size
        self.vectors: dict[str, list[float]] = {}
        self.calls: list[list[str]] = []
        self.fail_with: Exception | None = None

    def vector_for(self, text: str) -> list[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(b / 255.0) + 0.01 for b in digest[: self.dimension]]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        if len(texts) > self.max_batch_size:
            raise ValidationError("batch too large")
        self.calls.append(list(texts))
        if self.fail_with is not None:
            raise self.fail_with
        return [self.vector_for(text) for text in texts]


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class InMemoryVectorIndex(VectorIndex):
    """
    Vector index kept in a dict, with cosine search and failure injection.

    Set ``fail_upserts`` to make the next N ``upsert_batch`` calls raise.
    Set ``after_upsert`` to run a coroutine once, right after the next
    upsert has landed.
    """

    def __init__(self) -> None:
        self.collections: dict[str, dict[str, Any]] = {}
        self.upsert_calls: list[list[IndexPoint]] = []
        self.fail_upserts = 0
        self.unreachable = False
        self.after_upsert: Callable[[], Awaitable[None]] | None = None

    def _check_reachable(self) -> None:
        if self.unreachable:
            raise TransientProviderError("index unreachable")

    def points(self, name: str) -> dict[str, IndexPoint]:
        return self.collections.get(name, {}).get("points", {})

    async def ensure_collection(self, name: str, dimension: int) -> bool:
        self._check_reachable()
        if name in self.collections:
            if self.collections[name]["dimension"] != dimension:
                raise ConsistencyError("collection has another vector size")
            return False
        self.collections[name] = {"dimension": dimension, "points": {}}
        return True

    async def upsert_batch(self, name: str, points: list[IndexPoint]) -> None:
        self._check_reachable()
        self.upsert_calls.append(list(points))
        if self.fail_upserts > 0:
            self.fail_upserts -= 1
            raise TransientProviderError("upsert failed")
        collection = self.collections[name]
        for point in points:
            if len(point.vector) != collection["dimension"]:
                raise ValidationError("wrong dimension")
        for point in points:
            collection["points"][point.id] = point
        if self.after_upsert is not None:
            hook, self.after_upsert = self.after_upsert, None
            await hook()

    async def search(
        self,
        name: str,
        vector: list[float],
        limit: int,
        filter: dict[str, Any] | None = None,
    ) -> list[IndexHit]:
        self._check_reachable()
        scored = [
            IndexHit(id=point.id, score=_cosine(vector, point.vector), payload=point.payload)
            for point in self.points(name).values()
        ]
        scored.sort(key=lambda hit: hit.score, reverse=True)
        return scored[:limit]

    async def delete_point(self, name: str, point_id: str) -> None:
        self._check_reachable()
        self.points(name).pop(point_id, None)

    async def delete_collection(self, name: str) -> None:
        self._check_reachable()
        self.collections.pop(name, None)

    async def get_collection_info(self, name: str) -> CollectionInfo | None:
        self._check_reachable()
        if name not in self.collections:
            return None
        return CollectionInfo(
            name=name,
            status="green",
            points_count=len(self.points(name)),
            vector_size=self.collections[name]["dimension"],
            distance="Cosine",
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings pointing at in-memory SQLite with a tiny vector size."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        openai_api_key="sk-test",
        embedding_dimension=TEST_DIMENSION,
        embedding_batch_limit=10,
        qdrant_collection="ebooks_test",
        sync_batch_size=2,
        search_top_k=20,
    )


@pytest_asyncio.fixture
async def engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test (StaticPool keeps one connection)."""
    engine = create_async_engine(
        settings.database_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):  # noqa: ANN001
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Session with the same options as production (no expiry on commit)."""
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def index() -> InMemoryVectorIndex:
    return InMemoryVectorIndex()


@pytest.fixture
def add_ebook(session: AsyncSession) -> Callable[..., Awaitable[Ebook]]:
    """Factory inserting a catalog record."""

    async def _add(
        isbn: str,
        title: str = "Untitled",
        author: str = "Anonymous",
        tags: str | None = None,
        description: str | None = None,
    ) -> Ebook:
        ebook = Ebook(
            isbn=isbn,
            title=title,
            author=author,
            tags=tags,
            main_description=description,
        )
        session.add(ebook)
        await session.commit()
        return ebook

    return _add


@pytest.fixture
def add_tag(session: AsyncSession) -> Callable[..., Awaitable[Tag]]:
    """Factory inserting a tag with an explicit id."""

    async def _add(tag_id: int, name: str) -> Tag:
        tag = Tag(id=tag_id, name=name, ascii=name.lower().replace(" ", "-"))
        session.add(tag)
        await session.commit()
        return tag

    return _add
