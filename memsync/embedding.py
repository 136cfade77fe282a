"""
Embedding providers.

Providers are registered by name so the config file can select one:

    [embedding]
    name = "ollama"
    model = "nomic-embed-text"
    dimension = 768
"""

import hashlib
import logging
import math
import re

import requests

from .protocol import EmbeddingProvider

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class HashEmbedding:
    """
    Feature-hashing bag-of-words embedding.

    Deterministic and offline: each lowercase token is hashed into one
    of ``dimension`` buckets with a signed weight, and the result is
    L2-normalized. Texts sharing words land near each other, which is
    enough for keyword-flavored similarity without a model.
    """

    def __init__(self, dimension: int = 384):
        if dimension < 1:
            raise ValueError(f"dimension must be >= 1: {dimension}")
        self._dimension = int(dimension)

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> list[float]:
        vector = [0.0] * self._dimension
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self._dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            # Qdrant cosine distance rejects zero vectors
            vector[0] = 1.0
            return vector
        return [v / norm for v in vector]


class OllamaEmbedding:
    """Embeddings from a local Ollama server (/api/embeddings)."""

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: str = "http://localhost:11434",
        dimension: int = 768,
        timeout: float = 30.0,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._dimension = int(dimension)
        self._timeout = timeout

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> list[float]:
        try:
            resp = requests.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.model, "prompt": text},
                timeout=self._timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise RuntimeError(
                f"Cannot get embedding from Ollama at {self.base_url}: {e}"
            ) from e
        vector = resp.json().get("embedding")
        if not vector:
            raise RuntimeError(f"Ollama returned no embedding for model {self.model}")
        if len(vector) != self._dimension:
            raise RuntimeError(
                f"Ollama model {self.model} returned {len(vector)} dimensions, "
                f"config says {self._dimension}"
            )
        return [float(v) for v in vector]


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------

_EMBEDDING_PROVIDERS: dict[str, type] = {
    "hash": HashEmbedding,
    "ollama": OllamaEmbedding,
}


def register_embedding(name: str, provider_class: type) -> None:
    """Register an embedding provider class."""
    _EMBEDDING_PROVIDERS[name] = provider_class


def list_embedding_providers() -> list[str]:
    return list(_EMBEDDING_PROVIDERS.keys())


def create_embedding(name: str, params: dict | None = None) -> EmbeddingProvider:
    """Create an embedding provider instance from config."""
    if name not in _EMBEDDING_PROVIDERS:
        available = ", ".join(_EMBEDDING_PROVIDERS.keys()) or "none"
        raise ValueError(
            f"Unknown embedding provider: '{name}'. "
            f"Available providers: {available}."
        )
    try:
        return _EMBEDDING_PROVIDERS[name](**(params or {}))
    except TypeError as e:
        raise ValueError(f"Invalid parameters for embedding provider '{name}': {e}") from e
