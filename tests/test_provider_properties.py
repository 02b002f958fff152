"""Tests for the provider module and an end-to-end run on a real vault directory."""

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests
import structlog
from fakes import FakeTodoApi
from hypothesis import given, settings
from hypothesis import strategies as st

from todosync.models.config import AppConfig, CacheConfig, GraphConfig, SyncConfig, VaultConfig
from todosync.providers import (
    build_orchestrator,
    build_scheduler,
    get_cache_repository,
    get_document_store,
    get_remote_api,
)
from todosync.remote.errors import TransientNetworkError
from todosync.remote.graph_client import GraphTodoClient
from todosync.storage.cache_repository import JsonFileCacheRepository
from todosync.sync.scheduler import SyncScheduler
from todosync.vault.document_store import FileSystemDocumentStore

log = structlog.stdlib.get_logger()


def app_config(vault_root: Path, **sync) -> AppConfig:
    sync_values = dict(
        default_list_id="L1",
        list_ids=["L1"],
        inter_list_delay_seconds=0,
        retry_base_delay=0,
        retry_max_delay=0,
    )
    sync_values.update(sync)
    return AppConfig(
        graph=GraphConfig(access_token="token"),
        vault=VaultConfig(root=str(vault_root), vault_name="Vault", inbox_path="Inbox.md"),
        sync=SyncConfig(**sync_values),
    )


@given(st.text().filter(lambda x: not x.strip()))
@settings(max_examples=10)
def test_property_remote_api_requires_a_token(empty_token: str):
    """Property: a blank access token is rejected before any client is built."""
    log.info("test_property_remote_api_requires_a_token", token_length=len(empty_token))
    with pytest.raises(ValueError, match="access_token"):
        get_remote_api(GraphConfig(access_token=empty_token), SyncConfig())


def test_remote_api_is_graph_client():
    client = get_remote_api(GraphConfig(access_token="token"), SyncConfig(anchor_prefix="TODO"))
    assert isinstance(client, GraphTodoClient)


@pytest.mark.asyncio
async def test_remote_api_uses_sync_retry_settings(monkeypatch):
    request = MagicMock(side_effect=requests.ConnectionError("network down"))
    monkeypatch.setattr(requests.Session, "request", request)
    client = get_remote_api(
        GraphConfig(access_token="token"),
        SyncConfig(max_retries=1, retry_base_delay=0, retry_max_delay=0),
    )

    with pytest.raises(TransientNetworkError):
        await client.get_task("L1", "T1")
    assert request.call_count == 2


def test_document_store_requires_existing_root(tmp_path: Path):
    assert isinstance(get_document_store(VaultConfig(root=str(tmp_path))), FileSystemDocumentStore)
    with pytest.raises(RuntimeError, match="Failed to open vault"):
        get_document_store(VaultConfig(root=str(tmp_path / "absent")))


def test_relative_cache_path_lives_in_the_vault(tmp_path: Path):
    vault = VaultConfig(root=str(tmp_path))

    relative = get_cache_repository(CacheConfig(), vault)
    absolute = get_cache_repository(CacheConfig(path=str(tmp_path / "elsewhere.json")), vault)

    assert isinstance(relative, JsonFileCacheRepository)
    assert relative.path == tmp_path / ".todosync" / "cache.json"
    assert absolute.path == tmp_path / "elsewhere.json"


def test_build_scheduler_uses_sync_timing(tmp_path: Path):
    config = app_config(tmp_path, debounce_seconds=7, cooldown_seconds=11)
    orchestrator = build_orchestrator(config, remote=FakeTodoApi())

    scheduler = build_scheduler(config, orchestrator, get_document_store(config.vault))

    assert isinstance(scheduler, SyncScheduler)
    assert scheduler.debouncer.window == 7
    assert scheduler.cooldown.duration == 11


@pytest.mark.asyncio
async def test_end_to_end_sync_survives_restart(tmp_path: Path):
    """A full run on disk, then a fresh process that finds nothing to do."""
    (tmp_path / "Daily.md").write_text("# Today\n- [ ] Buy milk ^MSTDabc123\n", encoding="utf-8")
    remote = FakeTodoApi()
    remote.add_remote_task("L1", "Call mom")
    config = app_config(tmp_path)

    first = await build_orchestrator(config, remote=remote).sync_vault()

    assert (first.pushed, first.pulled) == (1, 1)
    inbox = (tmp_path / "Inbox.md").read_text(encoding="utf-8")
    assert inbox.startswith("- [ ] Call mom ^MSTD")
    cache = json.loads((tmp_path / ".todosync" / "cache.json").read_text(encoding="utf-8"))
    assert cache["refs"]["abc123"]["task_id"] == "T2"
    assert set(cache["cursors"]) == {"L1"}
    assert remote.web_urls["LR1"] == "obsidian://open?vault=Vault&file=Daily.md#^MSTDabc123"
    assert remote.web_urls["LR2"].startswith("obsidian://open?vault=Vault&file=Inbox.md#^MSTD")

    second = await build_orchestrator(config, remote=remote).sync_vault()

    assert (second.pushed, second.pulled, second.errored) == (0, 0, 0)
    assert remote.count("create_task") == 1
