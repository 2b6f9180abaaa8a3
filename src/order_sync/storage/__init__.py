"""Local persistence: the key-value port and the local replica store."""

from .kv import JsonFileStore, KeyValueStore, MemoryStore
from .local import LocalReplicaStore

__all__ = [
    "JsonFileStore",
    "KeyValueStore",
    "LocalReplicaStore",
    "MemoryStore",
]
