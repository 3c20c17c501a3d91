"""Persistence of engine state in a namespaced key/value store."""

from storyvoice.storage.state_store import (
    JsonFileStore,
    KeyValueStore,
    MemoryStore,
    StateRepository,
    StorageError,
)

__all__ = [
    "JsonFileStore",
    "KeyValueStore",
    "MemoryStore",
    "StateRepository",
    "StorageError",
]
