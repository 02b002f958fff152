"""Shared fixtures: an orchestrator wired to in-memory fakes."""

import pytest
from fakes import FakeTodoApi

from todosync.models.config import SyncConfig
from todosync.storage.cache_repository import InMemoryCacheRepository
from todosync.storage.identity_store import IdentityStore
from todosync.sync.orchestrator import SyncOrchestrator
from todosync.vault.document_store import InMemoryDocumentStore


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture()
def remote() -> FakeTodoApi:
    return FakeTodoApi(lists=("L1",))


@pytest.fixture()
def documents() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture()
def repository() -> InMemoryCacheRepository:
    return InMemoryCacheRepository()


@pytest.fixture()
def identity_store(repository: InMemoryCacheRepository) -> IdentityStore:
    return IdentityStore(repository)


@pytest.fixture()
def sync_config() -> SyncConfig:
    """Single list, no delays, fast retries."""
    return SyncConfig(
        default_list_id="L1",
        list_ids=["L1"],
        inter_list_delay_seconds=0,
        max_retries=2,
        retry_base_delay=0,
        retry_max_delay=0,
    )


@pytest.fixture()
def orchestrator(
    remote: FakeTodoApi,
    documents: InMemoryDocumentStore,
    identity_store: IdentityStore,
    sync_config: SyncConfig,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        remote=remote,
        documents=documents,
        identity_store=identity_store,
        config=sync_config,
        inbox_path="Inbox.md",
        sleep=no_sleep,
    )
