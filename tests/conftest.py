"""
Shared pytest fixtures for memsync tests.

Provides an in-memory store and a deterministic embedder so no test
needs a running Qdrant or embedding model.
"""

import copy
import hashlib
import math
import os
import threading
from pathlib import Path
from typing import Any, Optional

import pytest

from memsync.api import MemoryClient, MemoryService
from memsync.filters import Filter


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Generates consistent embeddings based on text hash - no model loading.
    """

    dimension = 16

    def __init__(self):
        self.embed_calls = 0

    def embed(self, text: str) -> list[float]:
        """Generate deterministic embedding from text hash."""
        self.embed_calls += 1
        h = hashlib.md5(text.encode()).hexdigest()
        return [int(h[i:i + 2], 16) / 255.0 + 0.01 for i in range(0, 32, 2)]


class FakeStore:
    """
    In-memory RemoteStoreProtocol implementation.

    Evaluates filters the way the real store does (Filter.matches).
    Failure injection:
        upsert_error: raised by every upsert while set
        set_payload_error: raised by every set_payload_batch while set
    """

    def __init__(self):
        self._data: dict[str, dict[str, dict]] = {}  # collection -> {id -> point}
        self._lock = threading.Lock()
        self.calls: list[tuple] = []
        self.upsert_error: Optional[Exception] = None
        self.set_payload_error: Optional[Exception] = None
        self.upsert_timeouts: list[Optional[float]] = []
        self.closed = False

    # -- helpers for assertions --

    def points(self, collection: str) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(p) for p in self._data.get(collection, {}).values()]

    def payload(self, collection: str, id: str) -> dict:
        with self._lock:
            return copy.deepcopy(self._data[collection][id]["payload"])

    def count_calls(self, name: str) -> int:
        return sum(1 for c in self.calls if c[0] == name)

    def _select(self, collection: str, filter: Optional[Filter]) -> list[dict]:
        points = list(self._data.get(collection, {}).values())
        if filter is not None:
            points = [p for p in points if filter.matches(p["payload"])]
        return points

    # -- protocol --

    def ensure_collection(self, collection, dimension, indexes=None) -> bool:
        with self._lock:
            self.calls.append(("ensure_collection", collection))
            if collection in self._data:
                return False
            self._data[collection] = {}
            return True

    def collection_info(self, collection: str) -> dict:
        with self._lock:
            return {"status": "green", "points_count": len(self._data.get(collection, {}))}

    def upsert(self, collection, id, vector, fields, *, timeout=None) -> None:
        with self._lock:
            self.calls.append(("upsert", collection, id))
            self.upsert_timeouts.append(timeout)
            if self.upsert_error is not None:
                raise self.upsert_error
            self._data.setdefault(collection, {})[str(id)] = {
                "id": str(id),
                "vector": list(vector),
                "payload": copy.deepcopy(fields),
            }

    def set_payload_batch(self, collection, updates) -> None:
        with self._lock:
            self.calls.append(("set_payload_batch", collection, len(updates)))
            if self.set_payload_error is not None:
                raise self.set_payload_error
            for ids, payload in updates:
                for id in ids:
                    point = self._data.get(collection, {}).get(id)
                    if point is not None:
                        point["payload"].update(copy.deepcopy(payload))

    def delete_by_filter(self, collection, filter) -> None:
        with self._lock:
            self.calls.append(("delete_by_filter", collection))
            for point in self._select(collection, filter):
                del self._data[collection][point["id"]]

    def delete_points(self, collection, ids) -> None:
        with self._lock:
            self.calls.append(("delete_points", collection, tuple(ids)))
            for id in ids:
                self._data.get(collection, {}).pop(id, None)

    def scroll(self, collection, filter=None, *, limit=256, offset=None,
               with_vectors=False, order_by=None, payload_fields=None):
        with self._lock:
            self.calls.append(("scroll", collection))
            points = self._select(collection, filter)
            if order_by is not None:
                key, direction = order_by
                points.sort(key=lambda p: p["payload"].get(key, 0), reverse=direction == "desc")
            start = offset or 0
            page = points[start:start + limit]
            next_offset = start + limit if start + limit < len(points) else None
            if order_by is not None:
                next_offset = None
            return [self._out(p, with_vectors, payload_fields) for p in page], next_offset

    def query_by_filter(self, collection, filter=None, limit=None, want_vectors=False,
                        payload_fields=None):
        with self._lock:
            self.calls.append(("query_by_filter", collection))
            points = self._select(collection, filter)
            if limit is not None:
                points = points[:limit]
            return [self._out(p, want_vectors, payload_fields) for p in points]

    def search(self, collection, vector, limit, filter=None):
        with self._lock:
            self.calls.append(("search", collection))
            scored = []
            for p in self._select(collection, filter):
                out = self._out(p, False)
                out["score"] = _cosine(vector, p["vector"])
                scored.append(out)
            scored.sort(key=lambda p: p["score"], reverse=True)
            return scored[:limit]

    def retrieve(self, collection, ids):
        with self._lock:
            self.calls.append(("retrieve", collection))
            data = self._data.get(collection, {})
            return [self._out(data[id], False) for id in ids if id in data]

    def count_by_filter(self, collection, filter=None) -> int:
        with self._lock:
            return len(self._select(collection, filter))

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        self.closed = True

    @staticmethod
    def _out(point: dict, with_vector: bool, payload_fields=None) -> dict[str, Any]:
        payload = copy.deepcopy(point["payload"])
        if payload_fields:
            payload = {k: v for k, v in payload.items() if k in payload_fields}
        out = {"id": point["id"], "payload": payload}
        if with_vector:
            out["vector"] = list(point["vector"])
        return out


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    return dot / (na * nb) if na and nb else 0.0


def set_mtime(path: Path, mtime_ns: int) -> None:
    """Set a file's modification time explicitly (nanoseconds)."""
    os.utime(path, ns=(mtime_ns, mtime_ns))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_embedding_provider():
    return MockEmbeddingProvider()


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def client(fake_store, mock_embedding_provider):
    """MemoryClient over the fake store, collections created, no retry delay."""
    c = MemoryClient(
        fake_store,
        mock_embedding_provider,
        collection="test_memory",
        retry_backoff=0.0,
    )
    c.ensure_collections()
    return c


@pytest.fixture
def service(client):
    """MemoryService with default threshold/mode; closed after the test."""
    svc = MemoryService(client)
    yield svc
    svc.buffer.close(drain=True)


@pytest.fixture
def project_dir(tmp_path):
    """A small project: three text files and one image."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "main.py").write_text("def main():\n    print('hello')\n")
    (root / "README.md").write_text("# Project\n\nA small test project.\n")
    docs = root / "docs"
    docs.mkdir()
    (docs / "notes.txt").write_text("Remember to write tests.\n")
    (root / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 32)
    base = 1_700_000_000_000_000_000
    for i, p in enumerate([root / "main.py", root / "README.md", docs / "notes.txt"]):
        set_mtime(p, base + i)
    return root
