"""
memsync: conversation memory and project file mirroring over a vector store.

Quick start:
    from memsync import MemoryService, load_or_create_config

    with MemoryService.from_config(load_or_create_config()) as service:
        service.add_message("user", "how do I fix this bug?")
        run = service.client.index_project("~/src/myproject")
"""

__version__ = "0.1.0"

from .api import MemoryClient, MemoryService
from .config import MemsyncConfig, load_or_create_config
from .store import QdrantStore, StoreError, TransientStoreError
from .types import FileError, IndexedFile, Message, SyncRun

__all__ = [
    "MemoryClient",
    "MemoryService",
    "MemsyncConfig",
    "load_or_create_config",
    "QdrantStore",
    "StoreError",
    "TransientStoreError",
    "FileError",
    "IndexedFile",
    "Message",
    "SyncRun",
]
