"""
HTTP client for the Qdrant vector store.

Implements RemoteStoreProtocol over Qdrant's REST API. Every method is
a single request/response; retries are the caller's decision (SyncEngine
retries transient failures, tag write-back never does).

Failures are mapped onto two exception types:
  - TransientStoreError: timeouts, refused connections, 5xx and 429
  - StoreError: everything else (4xx, malformed responses)
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .filters import Filter

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

# Page size for draining a filter with repeated scrolls
SCROLL_PAGE_SIZE = 256


class StoreError(Exception):
    """Error communicating with the store."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientStoreError(StoreError):
    """A failure worth retrying: deadline exceeded, connection refused, 5xx."""


def _is_transient_status(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


class QdrantStore:
    """HTTP client for a Qdrant instance."""

    def __init__(
        self,
        url: str,
        *,
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        self._url = url.rstrip("/")

        headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            headers["api-key"] = api_key

        self._client = httpx.Client(
            base_url=self._url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @property
    def url(self) -> str:
        return self._url

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send one request and return the ``result`` member of the body."""
        kwargs: dict[str, Any] = {}
        if json is not None:
            kwargs["json"] = json
        if params is not None:
            kwargs["params"] = params
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            resp = self._client.request(method, path, **kwargs)
        except (httpx.TimeoutException, httpx.ConnectError) as e:
            raise TransientStoreError(f"{method} {path} failed: {e}") from e
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {path} failed: {e}") from e

        if resp.status_code >= 400:
            detail = _error_detail(resp)
            message = f"{method} {path} returned {resp.status_code}: {detail}"
            if _is_transient_status(resp.status_code):
                raise TransientStoreError(message, resp.status_code)
            raise StoreError(message, resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise StoreError(f"{method} {path} returned malformed JSON", resp.status_code) from e
        if not isinstance(data, dict):
            raise StoreError(f"{method} {path} returned unexpected body", resp.status_code)
        return data.get("result")

    # -------------------------------------------------------------------------
    # Collections
    # -------------------------------------------------------------------------

    def collection_exists(self, collection: str) -> bool:
        try:
            self._request("GET", f"/collections/{collection}")
        except StoreError as e:
            if e.status_code == 404:
                return False
            raise
        return True

    def collection_info(self, collection: str) -> dict:
        """Collection status and point count."""
        result = self._request("GET", f"/collections/{collection}") or {}
        return {
            "status": result.get("status", "unknown"),
            "points_count": result.get("points_count") or 0,
        }

    def ensure_collection(
        self,
        collection: str,
        dimension: int,
        indexes: dict[str, str] | None = None,
    ) -> bool:
        """Create a cosine-distance collection and payload indexes if missing.

        Returns True if the collection was created.
        """
        if self.collection_exists(collection):
            return False
        logger.info("Creating collection %s (dimension %d)", collection, dimension)
        self._request(
            "PUT",
            f"/collections/{collection}",
            json={"vectors": {"size": dimension, "distance": "Cosine"}},
        )
        for field_name, schema in (indexes or {}).items():
            self._request(
                "PUT",
                f"/collections/{collection}/index",
                params={"wait": "true"},
                json={"field_name": field_name, "field_schema": schema},
            )
        return True

    # -------------------------------------------------------------------------
    # Points
    # -------------------------------------------------------------------------

    def upsert(
        self,
        collection: str,
        id: str,
        vector: list[float],
        fields: dict,
        *,
        timeout: float | None = None,
    ) -> None:
        """Insert or replace one point by id."""
        self._request(
            "PUT",
            f"/collections/{collection}/points",
            params={"wait": "true"},
            json={"points": [{"id": id, "vector": vector, "payload": fields}]},
            timeout=timeout,
        )

    def scroll(
        self,
        collection: str,
        filter: Filter | None = None,
        *,
        limit: int = SCROLL_PAGE_SIZE,
        offset: Any = None,
        with_vectors: bool = False,
        order_by: tuple[str, str] | None = None,
        payload_fields: list[str] | None = None,
    ) -> tuple[list[dict], Any]:
        """One page of points matching a filter.

        Returns (points, next_offset); next_offset is None on the last page.
        ``order_by`` is (field, "asc"|"desc"); the store does not page
        ordered scrolls, so next_offset is always None with ordering.
        ``payload_fields`` limits the payload to those keys.
        """
        body: dict[str, Any] = {
            "limit": limit,
            "with_payload": list(payload_fields) if payload_fields else True,
            "with_vector": with_vectors,
        }
        if filter is not None and not filter.is_empty():
            body["filter"] = filter.to_dict()
        if offset is not None:
            body["offset"] = offset
        if order_by is not None:
            key, direction = order_by
            body["order_by"] = {"key": key, "direction": direction}
        result = self._request(
            "POST", f"/collections/{collection}/points/scroll", json=body,
        ) or {}
        points = [_normalize_point(p) for p in result.get("points", [])]
        return points, result.get("next_page_offset")

    def query_by_filter(
        self,
        collection: str,
        filter: Filter | None = None,
        limit: int | None = None,
        want_vectors: bool = False,
        payload_fields: list[str] | None = None,
    ) -> list[dict]:
        """All points matching a filter, up to ``limit`` (None for every page)."""
        points: list[dict] = []
        offset = None
        while True:
            page_size = SCROLL_PAGE_SIZE
            if limit is not None:
                page_size = min(page_size, limit - len(points))
            page, offset = self.scroll(
                collection, filter,
                limit=page_size, offset=offset, with_vectors=want_vectors,
                payload_fields=payload_fields,
            )
            points.extend(page)
            if offset is None or not page:
                break
            if limit is not None and len(points) >= limit:
                break
        return points

    def search(
        self,
        collection: str,
        vector: list[float],
        limit: int,
        filter: Filter | None = None,
    ) -> list[dict]:
        """Nearest points by vector similarity, best first, with ``score``."""
        body: dict[str, Any] = {
            "vector": vector,
            "limit": limit,
            "with_payload": True,
        }
        if filter is not None and not filter.is_empty():
            body["filter"] = filter.to_dict()
        result = self._request(
            "POST", f"/collections/{collection}/points/search", json=body,
        ) or []
        return [_normalize_point(p) for p in result]

    def retrieve(self, collection: str, ids: list[str]) -> list[dict]:
        """Points by id; unknown ids are omitted."""
        result = self._request(
            "POST",
            f"/collections/{collection}/points",
            json={"ids": list(ids), "with_payload": True, "with_vector": False},
        ) or []
        return [_normalize_point(p) for p in result]

    def count_by_filter(self, collection: str, filter: Filter | None = None) -> int:
        body: dict[str, Any] = {"exact": True}
        if filter is not None and not filter.is_empty():
            body["filter"] = filter.to_dict()
        result = self._request(
            "POST", f"/collections/{collection}/points/count", json=body,
        ) or {}
        try:
            return int(result.get("count", 0))
        except (TypeError, ValueError) as e:
            raise StoreError(f"Malformed count response: {result!r}") from e

    def delete_by_filter(self, collection: str, filter: Filter) -> None:
        if filter.is_empty():
            # Qdrant rejects an empty filter; match every point instead
            body: dict[str, Any] = {"filter": {"must": []}}
        else:
            body = {"filter": filter.to_dict()}
        self._request(
            "POST",
            f"/collections/{collection}/points/delete",
            params={"wait": "true"},
            json=body,
        )

    def delete_points(self, collection: str, ids: list[str]) -> None:
        self._request(
            "POST",
            f"/collections/{collection}/points/delete",
            params={"wait": "true"},
            json={"points": list(ids)},
        )

    def set_payload_batch(
        self,
        collection: str,
        updates: list[tuple[list[str], dict]],
    ) -> None:
        """Apply several set_payload operations in one request.

        Each update is (point_ids, payload_fields); fields not named are kept.
        """
        if not updates:
            return
        operations = [
            {"set_payload": {"payload": payload, "points": list(ids)}}
            for ids, payload in updates
        ]
        self._request(
            "POST",
            f"/collections/{collection}/points/batch",
            params={"wait": "true"},
            json={"operations": operations},
        )

    def ping(self) -> bool:
        """True if the store answers."""
        try:
            self._request("GET", "/collections")
            return True
        except StoreError as e:
            logger.debug("Store ping failed: %s", e)
            return False

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()


def _normalize_point(point: dict) -> dict:
    """Uniform point dict: {id, payload, vector?, score?} with a str id."""
    out: dict[str, Any] = {
        "id": str(point.get("id")),
        "payload": point.get("payload") or {},
    }
    if point.get("vector") is not None:
        out["vector"] = point["vector"]
    if "score" in point:
        out["score"] = point["score"]
    return out


def _error_detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        status = data.get("status")
        if isinstance(status, dict) and "error" in status:
            return str(status["error"])
    return resp.text[:200]
