"""Persistence for the anchor identity cache."""

from todosync.storage.cache_repository import (
    CacheCorruptionError,
    CacheRepository,
    InMemoryCacheRepository,
    JsonFileCacheRepository,
)
from todosync.storage.identity_store import IdentityStore

__all__ = [
    "CacheCorruptionError",
    "CacheRepository",
    "IdentityStore",
    "InMemoryCacheRepository",
    "JsonFileCacheRepository",
]
