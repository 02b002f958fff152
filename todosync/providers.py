"""Centralized provider module for building the sync stack from configuration.

These factory functions are the one place where concrete adapters are chosen.
Swap an implementation here (e.g. a different cache backend) without touching
the engine.

Default implementations:
- Remote: GraphTodoClient (Microsoft To Do over Microsoft Graph)
- Vault: FileSystemDocumentStore (polling watcher)
- Cache: JsonFileCacheRepository (single JSON file)
"""

from pathlib import Path
from typing import Callable

import structlog

from todosync.models.config import AppConfig, CacheConfig, GraphConfig, SyncConfig, VaultConfig
from todosync.remote.graph_client import GraphTodoClient
from todosync.remote.interface import RemoteTodoApi
from todosync.scanning.task_scanner import ChangeScanner
from todosync.storage.cache_repository import CacheRepository, JsonFileCacheRepository
from todosync.storage.identity_store import IdentityStore
from todosync.sync.orchestrator import SyncOrchestrator
from todosync.sync.scheduler import SyncScheduler
from todosync.vault.document_store import DocumentStore, FileSystemDocumentStore

log = structlog.stdlib.get_logger()


def get_remote_api(graph: GraphConfig, sync: SyncConfig) -> RemoteTodoApi:
    """Get the configured remote To Do implementation.

    Args:
        graph: Graph connection settings
        sync: Sync settings (anchor prefix written to linked resources, retry policy)

    Returns:
        RemoteTodoApi instance

    Raises:
        ValueError: If no access token is configured
    """
    if not graph.access_token or not graph.access_token.strip():
        error_msg = "graph.access_token cannot be empty"
        log.error("get_remote_api_failed", error=error_msg)
        raise ValueError(error_msg)

    log.info("initializing_remote_api", provider="MicrosoftGraph", base_url=str(graph.base_url))
    return GraphTodoClient(
        token=graph.access_token,
        base_url=str(graph.base_url),
        application_name=graph.application_name,
        anchor_prefix=sync.anchor_prefix,
        timeout_seconds=graph.timeout_seconds,
        max_retries=sync.max_retries,
        retry_base_delay=sync.retry_base_delay,
        retry_max_delay=sync.retry_max_delay,
    )


def get_document_store(vault: VaultConfig) -> DocumentStore:
    """Get the configured vault implementation.

    Raises:
        RuntimeError: If the vault root cannot be opened
    """
    try:
        return FileSystemDocumentStore(vault.root, poll_interval=vault.poll_interval_seconds)
    except (FileNotFoundError, OSError) as e:
        log.error("get_document_store_failed", root=vault.root, error=str(e))
        raise RuntimeError(f"Failed to open vault at '{vault.root}': {e}") from e


def get_cache_repository(cache: CacheConfig, vault: VaultConfig) -> CacheRepository:
    """Get the configured cache backend.

    A relative cache path is resolved against the vault root.
    """
    path = Path(cache.path).expanduser()
    if not path.is_absolute():
        path = Path(vault.root).expanduser() / path
    return JsonFileCacheRepository(path)


def build_orchestrator(
    config: AppConfig,
    remote: RemoteTodoApi | None = None,
    documents: DocumentStore | None = None,
    repository: CacheRepository | None = None,
) -> SyncOrchestrator:
    """
    Wire a SyncOrchestrator from configuration.

    Any collaborator passed in is used instead of the configured default.
    """
    remote = remote or get_remote_api(config.graph, config.sync)
    documents = documents or get_document_store(config.vault)
    repository = repository or get_cache_repository(config.cache, config.vault)

    identity_store = IdentityStore(repository)
    if identity_store.recovered_from_corruption:
        log.warning("cache_recovered_full_resync")

    return SyncOrchestrator(
        remote=remote,
        documents=documents,
        identity_store=identity_store,
        config=config.sync,
        scanner=ChangeScanner(config.sync.anchor_prefix),
        inbox_path=config.vault.inbox_path,
        vault_name=config.vault.vault_name,
    )


def build_scheduler(
    config: AppConfig,
    orchestrator: SyncOrchestrator,
    documents: DocumentStore,
    notify: Callable[[str], None] | None = None,
) -> SyncScheduler:
    """Wire a SyncScheduler around an orchestrator."""
    return SyncScheduler(
        orchestrator=orchestrator,
        documents=documents,
        config=config.sync,
        scanner=ChangeScanner(config.sync.anchor_prefix),
        notify=notify,
    )
