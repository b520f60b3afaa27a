"""
Vector Index Client

Qdrant adapter over its REST API. Qdrant owns storage and k-NN search;
this module only speaks the handful of endpoints the sync engine and the
search service need.

Design:
    - Async HTTP calls via httpx with an explicit timeout.
    - Optional ``api-key`` header for managed Qdrant.
    - "Not found" on read paths is an answer (empty / None), not an error.
    - Transport failures, timeouts, 5xx, 408 and 429 surface as
      ``TransientProviderError``; the caller decides whether to retry.
    - Any other rejected request is malformed and raises
      ``ValidationError``; retrying it cannot succeed.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from bookmatch.core.config import Settings
from bookmatch.core.errors import (
    ConsistencyError,
    TransientProviderError,
    ValidationError,
)
from bookmatch.models.schemas import CollectionInfo, IndexHit, IndexPoint
from bookmatch.ports.vector_index import VectorIndex

logger = logging.getLogger(__name__)

# Statuses Qdrant reports for a write it has applied (wait=true) or queued
_ACCEPTED_STATUSES = frozenset({"completed", "acknowledged"})

# Client errors that clear up on their own
_RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


class QdrantIndexClient(VectorIndex):
    """
    Async Qdrant client (cosine distance).

    Usage::

        index = QdrantIndexClient(settings)
        await index.ensure_collection("ebooks", 1536)
        hits = await index.search("ebooks", vector, limit=10)
        await index.aclose()
    """

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            settings: Application settings (URL, API key, timeout).
            client: Pre-built httpx client (tests inject a MockTransport).
        """
        self._base_url = settings.qdrant_url.rstrip("/")
        self._timeout = settings.qdrant_timeout
        self._headers: dict[str, str] = {}
        if settings.qdrant_api_key:
            self._headers["api-key"] = settings.qdrant_api_key
        self._client = client
        self._owns_client = client is None
        self._dimensions: dict[str, int] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers,
                timeout=self._timeout,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """
        Send one request, mapping transport and server failures.

        4xx responses are returned to the caller, which knows whether a
        404 or 409 is meaningful for its endpoint.
        """
        try:
            response = await self._get_client().request(
                method, path, json=json, params=params
            )
        except httpx.HTTPError as e:
            logger.warning(
                "Qdrant unreachable (%s %s, %s): %s",
                method,
                path,
                type(e).__name__,
                e,
            )
            raise TransientProviderError(f"Qdrant request failed: {e}") from e

        if response.status_code >= 500:
            logger.error(
                "Qdrant server error %d on %s %s: %s",
                response.status_code,
                method,
                path,
                response.text,
            )
            raise TransientProviderError(
                f"Qdrant returned {response.status_code} for {method} {path}"
            )
        return response

    @staticmethod
    def _raise_for_client_error(response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        message = (
            f"Qdrant rejected {action} ({response.status_code}): {response.text}"
        )
        if response.status_code in _RETRYABLE_CLIENT_STATUSES:
            raise TransientProviderError(message)
        raise ValidationError(message)

    @staticmethod
    def _parse_info(name: str, response: httpx.Response) -> CollectionInfo:
        result = response.json().get("result") or {}
        vectors = (result.get("config") or {}).get("params", {}).get("vectors") or {}
        return CollectionInfo(
            name=name,
            status=result.get("status", "unknown"),
            points_count=result.get("points_count") or 0,
            vector_size=vectors.get("size"),
            distance=vectors.get("distance"),
        )

    async def ensure_collection(self, name: str, dimension: int) -> bool:
        """
        Create the collection with cosine distance unless it exists.

        Returns:
            True if this call created it, False if it was already there
            (including losing a creation race to another process).

        Raises:
            ConsistencyError: The existing collection has another vector size.
        """
        if dimension < 1:
            raise ValidationError("Collection dimension must be positive")

        response = await self._request("GET", f"/collections/{name}")
        if response.is_success:
            info = self._parse_info(name, response)
            if info.vector_size is not None and info.vector_size != dimension:
                raise ConsistencyError(
                    f"Collection '{name}' holds {info.vector_size}-dimensional "
                    f"vectors, expected {dimension}"
                )
            self._dimensions[name] = dimension
            return False
        if response.status_code != 404:
            self._raise_for_client_error(response, f"lookup of '{name}'")

        response = await self._request(
            "PUT",
            f"/collections/{name}",
            json={"vectors": {"size": dimension, "distance": "Cosine"}},
        )
        if response.status_code == 409 or (
            response.status_code == 400 and "already exists" in response.text
        ):
            logger.debug("Collection '%s' created concurrently", name)
            self._dimensions[name] = dimension
            return False
        self._raise_for_client_error(response, f"creation of '{name}'")

        self._dimensions[name] = dimension
        logger.info("Created collection '%s' (dim=%d, Cosine)", name, dimension)
        return True

    def _check_dimensions(self, name: str, points: list[IndexPoint]) -> None:
        expected = self._dimensions.get(name, len(points[0].vector))
        for point in points:
            if len(point.vector) != expected:
                raise ValidationError(
                    f"Point {point.id} has {len(point.vector)} dimensions, "
                    f"collection '{name}' expects {expected}"
                )

    async def upsert_batch(self, name: str, points: list[IndexPoint]) -> None:
        """
        Insert-or-overwrite a batch of points, waiting for the write.

        Raises:
            ValidationError: A point's vector has the wrong dimension, or
                Qdrant rejected the request as malformed.
            TransientProviderError: The write was not applied.
        """
        if not points:
            return
        self._check_dimensions(name, points)

        body = {"points": [point.model_dump() for point in points]}
        response = await self._request(
            "PUT",
            f"/collections/{name}/points",
            json=body,
            params={"wait": "true"},
        )
        self._raise_for_client_error(response, f"upsert into '{name}'")

        status = (response.json().get("result") or {}).get("status")
        if status not in _ACCEPTED_STATUSES:
            raise TransientProviderError(
                f"Qdrant upsert into '{name}' ended with status {status!r}"
            )
        logger.debug("Upserted %d points into '%s'", len(points), name)

    async def search(
        self,
        name: str,
        vector: list[float],
        limit: int,
        filter: dict[str, Any] | None = None,
    ) -> list[IndexHit]:
        """Nearest-neighbour search; an absent collection yields no hits."""
        if limit < 1:
            raise ValidationError("Search limit must be at least 1")

        body: dict[str, Any] = {
            "vector": vector,
            "limit": limit,
            "with_payload": True,
        }
        if filter:
            body["filter"] = filter

        response = await self._request(
            "POST", f"/collections/{name}/points/search", json=body
        )
        if response.status_code == 404:
            return []
        self._raise_for_client_error(response, f"search in '{name}'")

        hits = [IndexHit.model_validate(item) for item in response.json()["result"]]
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:limit]

    async def delete_point(self, name: str, point_id: str) -> None:
        response = await self._request(
            "POST",
            f"/collections/{name}/points/delete",
            json={"points": [point_id]},
            params={"wait": "true"},
        )
        if response.status_code == 404:
            return
        self._raise_for_client_error(response, f"delete of point {point_id}")
        logger.debug("Deleted point %s from '%s'", point_id, name)

    async def delete_collection(self, name: str) -> None:
        response = await self._request("DELETE", f"/collections/{name}")
        self._dimensions.pop(name, None)
        if response.status_code == 404:
            return
        self._raise_for_client_error(response, f"drop of '{name}'")
        logger.info("Deleted collection '%s'", name)

    async def get_collection_info(self, name: str) -> CollectionInfo | None:
        response = await self._request("GET", f"/collections/{name}")
        if response.status_code == 404:
            return None
        self._raise_for_client_error(response, f"lookup of '{name}'")
        return self._parse_info(name, response)
