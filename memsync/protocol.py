"""
Protocol definitions for memsync's external collaborators.

- RemoteStoreProtocol: the content/vector store (Qdrant over HTTP, or
  an in-memory fake in tests)
- EmbeddingProvider: text -> vector

Using Protocol for structural subtyping - no explicit inheritance required.
"""

from typing import Any, Optional, Protocol, runtime_checkable

from .filters import Filter


@runtime_checkable
class RemoteStoreProtocol(Protocol):
    """
    A key/vector store with filter-based queries.

    Implemented by:
    - QdrantStore (HTTP client)
    - FakeStore (tests)

    ``collection`` is the namespace: messages and project files live in
    separate collections. Failures raise StoreError; retryable ones raise
    TransientStoreError.
    """

    def ensure_collection(
        self,
        collection: str,
        dimension: int,
        indexes: Optional[dict[str, str]] = None,
    ) -> bool: ...

    def collection_info(self, collection: str) -> dict: ...

    # -- Write operations --

    def upsert(
        self,
        collection: str,
        id: str,
        vector: list[float],
        fields: dict,
        *,
        timeout: Optional[float] = None,
    ) -> None: ...

    def set_payload_batch(
        self,
        collection: str,
        updates: list[tuple[list[str], dict]],
    ) -> None: ...

    def delete_by_filter(self, collection: str, filter: Filter) -> None: ...

    def delete_points(self, collection: str, ids: list[str]) -> None: ...

    # -- Read operations --

    def scroll(
        self,
        collection: str,
        filter: Optional[Filter] = None,
        *,
        limit: int = 256,
        offset: Any = None,
        with_vectors: bool = False,
        order_by: Optional[tuple[str, str]] = None,
        payload_fields: Optional[list[str]] = None,
    ) -> tuple[list[dict], Any]: ...

    def query_by_filter(
        self,
        collection: str,
        filter: Optional[Filter] = None,
        limit: Optional[int] = None,
        want_vectors: bool = False,
        payload_fields: Optional[list[str]] = None,
    ) -> list[dict]: ...

    def search(
        self,
        collection: str,
        vector: list[float],
        limit: int,
        filter: Optional[Filter] = None,
    ) -> list[dict]: ...

    def retrieve(self, collection: str, ids: list[str]) -> list[dict]: ...

    def count_by_filter(self, collection: str, filter: Optional[Filter] = None) -> int: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    The same provider instance must be used for both indexing and
    querying to ensure consistent vectors.
    """

    @property
    def dimension(self) -> int:
        """The dimensionality of the embedding vectors."""
        ...

    def embed(self, text: str) -> list[float]:
        """Generate an embedding vector for the given text."""
        ...
