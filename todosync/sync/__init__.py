"""Synchronization engine: reconciliation, delta fetching, orchestration, scheduling."""

from todosync.sync.delta_fetcher import DeltaFetcher, DeltaResult
from todosync.sync.models import (
    ListSyncReport,
    SyncAbortedError,
    SyncAction,
    SyncState,
    VaultSyncSummary,
)
from todosync.sync.orchestrator import SyncOrchestrator
from todosync.sync.reconciliation import ReconciliationEngine
from todosync.sync.scheduler import Cooldown, Debouncer, MinInterval, SyncScheduler

__all__ = [
    "Cooldown",
    "Debouncer",
    "DeltaFetcher",
    "DeltaResult",
    "ListSyncReport",
    "MinInterval",
    "ReconciliationEngine",
    "SyncAbortedError",
    "SyncAction",
    "SyncOrchestrator",
    "SyncScheduler",
    "SyncState",
    "VaultSyncSummary",
]
