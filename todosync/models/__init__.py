"""Data models for the vault/To Do synchronizer."""

from todosync.models.config import (
    AppConfig,
    CacheConfig,
    GraphConfig,
    LoggingConfig,
    SyncConfig,
    VaultConfig,
)
from todosync.models.task import (
    ListCursor,
    Priority,
    RemoteRef,
    RemoteTask,
    Subtask,
    SyncCache,
    TodoList,
    TrackedTask,
    semantic_hash,
)

__all__ = [
    "AppConfig",
    "CacheConfig",
    "GraphConfig",
    "ListCursor",
    "LoggingConfig",
    "Priority",
    "RemoteRef",
    "RemoteTask",
    "Subtask",
    "SyncCache",
    "SyncConfig",
    "TodoList",
    "TrackedTask",
    "VaultConfig",
    "semantic_hash",
]
