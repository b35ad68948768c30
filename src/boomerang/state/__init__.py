from boomerang.state.context_store import ContextEntry, ContextStore
from boomerang.state.storage import LocalFileStorage, MemoryStorage, StorageBackend, build_storage

__all__ = [
    "ContextEntry",
    "ContextStore",
    "LocalFileStorage",
    "MemoryStorage",
    "StorageBackend",
    "build_storage",
]
