"""
Configuration management for memsync.

The configuration is stored as a TOML file in the config directory.
It specifies the store endpoint, embedding provider, sync limits and
tagging behavior. Environment variables override file values.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# tomli_w for writing TOML (tomllib is read-only)
try:
    import tomli_w
except ImportError:
    tomli_w = None  # type: ignore

from .types import MODE_AUTOMATIC, validate_mode


CONFIG_FILENAME = "memsync.toml"
CONFIG_VERSION = 1

DEFAULT_STORE_URL = "http://localhost:6333"
DEFAULT_COLLECTION = "conversation_memory"
DEFAULT_EMBEDDING_SIZE = 384
DEFAULT_HTTP_PORT = 10010


def get_config_dir() -> Path:
    """Resolve the config directory, respecting MEMSYNC_CONFIG_DIR."""
    env_dir = os.environ.get("MEMSYNC_CONFIG_DIR")
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    return Path.home() / ".config" / "memsync"


@dataclass
class ProviderConfig:
    """Configuration for a single provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class MemsyncConfig:
    """Complete memsync configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # [store]
    store_url: str = DEFAULT_STORE_URL
    collection: str = DEFAULT_COLLECTION
    store_timeout: float = 10.0
    api_key: str = ""

    # [embedding]
    embedding: ProviderConfig = field(
        default_factory=lambda: ProviderConfig("hash", {"dimension": DEFAULT_EMBEDDING_SIZE})
    )

    # [sync]
    max_file_size: int = 1024 * 1024
    max_attempts: int = 3
    retry_backoff: float = 0.5
    file_timeout: float = 10.0
    extra_ignored_extensions: list[str] = field(default_factory=list)

    # [tagging]
    tagging_mode: str = MODE_AUTOMATIC
    tagging_threshold: int = 5
    min_score: int = 2
    workers: int = 1
    dedupe_messages: bool = False
    categories: dict[str, list[str]] = field(default_factory=dict)

    # [http]
    http_host: str = "127.0.0.1"
    http_port: int = DEFAULT_HTTP_PORT

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def project_collection(self) -> str:
        """Collection holding project files."""
        return f"{self.collection}_project"

    @property
    def embedding_dimension(self) -> int:
        return int(self.embedding.params.get("dimension", DEFAULT_EMBEDDING_SIZE))

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()

    def validate(self) -> None:
        """Raise ValueError for values the rest of the system cannot use."""
        validate_mode(self.tagging_mode)
        if self.tagging_threshold < 1:
            raise ValueError(f"tagging threshold must be >= 1: {self.tagging_threshold}")
        if self.min_score < 0:
            raise ValueError(f"min_score must be >= 0: {self.min_score}")
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1: {self.workers}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1: {self.max_attempts}")
        if self.max_file_size < 1:
            raise ValueError(f"max_file_size must be >= 1: {self.max_file_size}")
        if self.embedding_dimension < 1:
            raise ValueError(f"embedding dimension must be >= 1: {self.embedding_dimension}")
        for name, keywords in self.categories.items():
            if not isinstance(keywords, list) or not all(isinstance(k, str) for k in keywords):
                raise ValueError(f"Category {name!r} must be a list of keyword strings")


def _apply_env_overrides(config: MemsyncConfig) -> MemsyncConfig:
    """Apply MEMSYNC_* environment variables on top of file values."""
    url = os.environ.get("MEMSYNC_QDRANT_URL")
    if url:
        config.store_url = url
    collection = os.environ.get("MEMSYNC_COLLECTION")
    if collection:
        config.collection = collection
    size = os.environ.get("MEMSYNC_EMBEDDING_SIZE")
    if size:
        try:
            config.embedding.params["dimension"] = int(size)
        except ValueError:
            raise ValueError(f"MEMSYNC_EMBEDDING_SIZE must be an integer: {size!r}")
    api_key = os.environ.get("MEMSYNC_API_KEY")
    if api_key:
        config.api_key = api_key
    return config


def load_config(config_dir: Path) -> MemsyncConfig:
    """
    Load configuration from a config directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = config_dir / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    # Validate version
    version = data.get("memsync", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    store = data.get("store", {})
    embedding = data.get("embedding", {"name": "hash"})
    sync = data.get("sync", {})
    tagging = dict(data.get("tagging", {}))
    categories = tagging.pop("categories", {})
    http = data.get("http", {})

    config = MemsyncConfig(
        path=config_dir,
        version=version,
        created=data.get("memsync", {}).get("created", ""),
        store_url=store.get("url", DEFAULT_STORE_URL),
        collection=store.get("collection", DEFAULT_COLLECTION),
        store_timeout=float(store.get("timeout", 10.0)),
        api_key=store.get("api_key", ""),
        embedding=ProviderConfig(
            name=embedding.get("name", "hash"),
            params={k: v for k, v in embedding.items() if k != "name"},
        ),
        max_file_size=int(sync.get("max_file_size", 1024 * 1024)),
        max_attempts=int(sync.get("max_attempts", 3)),
        retry_backoff=float(sync.get("retry_backoff", 0.5)),
        file_timeout=float(sync.get("file_timeout", 10.0)),
        extra_ignored_extensions=list(sync.get("extra_ignored_extensions", [])),
        tagging_mode=tagging.get("mode", MODE_AUTOMATIC),
        tagging_threshold=int(tagging.get("threshold", 5)),
        min_score=int(tagging.get("min_score", 2)),
        workers=int(tagging.get("workers", 1)),
        dedupe_messages=bool(tagging.get("dedupe_messages", False)),
        categories={k: list(v) for k, v in categories.items()},
        http_host=http.get("host", "127.0.0.1"),
        http_port=int(http.get("port", DEFAULT_HTTP_PORT)),
    )
    config.embedding.params.setdefault("dimension", DEFAULT_EMBEDDING_SIZE)
    _apply_env_overrides(config)
    config.validate()
    return config


def save_config(config: MemsyncConfig) -> None:
    """
    Save configuration to the config directory.

    Creates the directory if it doesn't exist.
    """
    if tomli_w is None:
        raise RuntimeError("tomli_w is required to save config. Install with: pip install tomli-w")

    config.path.mkdir(parents=True, exist_ok=True)

    embedding = {"name": config.embedding.name}
    embedding.update(config.embedding.params)

    tagging: dict[str, Any] = {
        "mode": config.tagging_mode,
        "threshold": config.tagging_threshold,
        "min_score": config.min_score,
        "workers": config.workers,
        "dedupe_messages": config.dedupe_messages,
    }
    if config.categories:
        tagging["categories"] = config.categories

    data = {
        "memsync": {
            "version": config.version,
            "created": config.created,
        },
        "store": {
            "url": config.store_url,
            "collection": config.collection,
            "timeout": config.store_timeout,
            "api_key": config.api_key,
        },
        "embedding": embedding,
        "sync": {
            "max_file_size": config.max_file_size,
            "max_attempts": config.max_attempts,
            "retry_backoff": config.retry_backoff,
            "file_timeout": config.file_timeout,
            "extra_ignored_extensions": config.extra_ignored_extensions,
        },
        "tagging": tagging,
        "http": {
            "host": config.http_host,
            "port": config.http_port,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(config_dir: Path | None = None) -> MemsyncConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_dir = config_dir or get_config_dir()
    config_path = config_dir / CONFIG_FILENAME

    if config_path.exists():
        return load_config(config_dir)
    config = MemsyncConfig(path=config_dir)
    save_config(config)
    _apply_env_overrides(config)
    config.validate()
    return config
