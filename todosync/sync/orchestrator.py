"""Sync orchestration between the Markdown vault and the remote To Do service."""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable
from urllib.parse import quote

import structlog

from todosync.models.config import SyncConfig
from todosync.models.task import RemoteRef, RemoteTask, TrackedTask
from todosync.remote.errors import RemoteApiError, TransientNetworkError, UnauthorizedError
from todosync.remote.interface import RemoteTodoApi
from todosync.scanning.formatter import new_anchor_id, render_task_block, to_tracked_task
from todosync.scanning.task_scanner import ChangeScanner
from todosync.storage.identity_store import IdentityStore
from todosync.sync.delta_fetcher import DeltaFetcher, DeltaResult
from todosync.sync.models import (
    ListSyncReport,
    SyncAbortedError,
    SyncAction,
    SyncState,
    VaultSyncSummary,
)
from todosync.sync.reconciliation import ReconciliationEngine
from todosync.utils.logging_config import bind_sync_run, clear_sync_run
from todosync.vault.document_store import DocumentStore

log = structlog.stdlib.get_logger()


class _Plan:
    """Actions decided for one list, grouped so pushes run before pulls."""

    def __init__(self) -> None:
        self.pushes: list[tuple[TrackedTask, RemoteRef | None, RemoteTask | None]] = []
        self.pulls: list[tuple[TrackedTask, RemoteTask, RemoteRef | None]] = []
        self.new_pulls: list[RemoteTask] = []
        self.repoints: list[tuple[TrackedTask, RemoteTask]] = []


class SyncOrchestrator:
    """Drives list and vault synchronization.

    The orchestrator is the only component that mutates the identity store.
    At most one run is in flight; overlapping requests return immediately with
    a skipped result.
    """

    def __init__(
        self,
        remote: RemoteTodoApi,
        documents: DocumentStore,
        identity_store: IdentityStore,
        config: SyncConfig,
        scanner: ChangeScanner | None = None,
        fetcher: DeltaFetcher | None = None,
        engine: ReconciliationEngine | None = None,
        inbox_path: str = "Microsoft To Do.md",
        vault_name: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the orchestrator.

        Args:
            remote: Remote To Do API
            documents: Vault document store
            identity_store: Anchor to remote identity cache
            config: Sync policy
            scanner: Task scanner (built from the anchor prefix if None)
            fetcher: Delta fetcher (built from the retry settings if None)
            engine: Reconciliation engine
            inbox_path: File that new remote tasks are appended to
            vault_name: Vault name for obsidian:// links on linked resources
            sleep: Awaitable delay used between lists
        """
        self._remote = remote
        self._documents = documents
        self._store = identity_store
        self._config = config
        self._scanner = scanner or ChangeScanner(config.anchor_prefix)
        self._fetcher = fetcher or DeltaFetcher(
            remote,
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )
        self._engine = engine or ReconciliationEngine()
        self._inbox_path = inbox_path
        self._vault_name = vault_name
        self._sleep = sleep

        self._state = SyncState.IDLE
        self._running = False
        self._scan_complete = True

        log.info(
            "sync_orchestrator_initialized",
            default_list_id=config.default_list_id,
            list_ids=config.list_ids,
        )

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def running(self) -> bool:
        return self._running

    async def sync_vault(self, reason: str = "manual") -> VaultSyncSummary:
        """
        Synchronize every configured list against one shared vault scan.

        Lists run sequentially with a pause between them. A cleanup pass then
        drops cache entries whose anchors no longer exist.

        Args:
            reason: What triggered the run, recorded in logs and the summary

        Returns:
            VaultSyncSummary with aggregated counts, flagged ``skipped`` if
            another run was already in flight

        Raises:
            SyncAbortedError: On authorization failure or lost connectivity
        """
        if self._running:
            log.info("sync_already_running_skipped", reason=reason)
            return VaultSyncSummary(reason=reason, skipped=True)

        self._running = True
        run_id = bind_sync_run(reason)
        summary = VaultSyncSummary(reason=reason, start_time=datetime.now(timezone.utc))
        log.info("sync_vault_started", run_id=run_id)

        try:
            self._state = SyncState.SCANNING
            list_ids = await self._resolve_list_ids()
            local_tasks = self._scan_vault()

            for index, list_id in enumerate(list_ids):
                if index and self._config.inter_list_delay_seconds > 0:
                    await self._sleep(self._config.inter_list_delay_seconds)
                report = ListSyncReport(list_id=list_id)
                summary.lists.append(report)
                await self._sync_list(list_id, local_tasks, report)

            self._state = SyncState.PERSISTING
            if self._scan_complete:
                summary.cleaned = len(self._store.remove_stale(local_tasks))
            else:
                log.warning("cleanup_skipped_incomplete_scan")
            self._store.flush()

            summary.end_time = datetime.now(timezone.utc)
            self._state = SyncState.IDLE
            log.info(
                "sync_vault_completed",
                lists=len(summary.lists),
                pushed=summary.pushed,
                pulled=summary.pulled,
                conflicts=summary.conflicts,
                skipped=summary.skipped_items,
                removed=summary.removed,
                errored=summary.errored,
                duration_seconds=summary.duration_seconds,
            )
            return summary

        except UnauthorizedError as e:
            raise self._abort(summary, e, reauth_required=True) from e
        except TransientNetworkError as e:
            raise self._abort(summary, e) from e
        finally:
            if self._state not in (SyncState.IDLE, SyncState.ABORTED):
                self._state = SyncState.ABORTED
            self._running = False
            clear_sync_run()

    async def sync_list(self, list_id: str, reason: str = "manual") -> ListSyncReport:
        """
        Synchronize a single list.

        Args:
            list_id: Remote list identifier
            reason: What triggered the run

        Returns:
            ListSyncReport, flagged ``run_skipped`` if another run was in flight

        Raises:
            SyncAbortedError: On authorization failure or lost connectivity
        """
        if self._running:
            log.info("sync_already_running_skipped", reason=reason, list_id=list_id)
            return ListSyncReport(list_id=list_id, run_skipped=True)

        self._running = True
        bind_sync_run(reason)
        report = ListSyncReport(list_id=list_id)
        summary = VaultSyncSummary(
            reason=reason, lists=[report], start_time=datetime.now(timezone.utc)
        )

        try:
            self._state = SyncState.SCANNING
            local_tasks = self._scan_vault()
            await self._sync_list(list_id, local_tasks, report)

            self._state = SyncState.PERSISTING
            self._store.flush()
            self._state = SyncState.IDLE
            return report

        except UnauthorizedError as e:
            raise self._abort(summary, e, reauth_required=True) from e
        except TransientNetworkError as e:
            raise self._abort(summary, e) from e
        finally:
            if self._state not in (SyncState.IDLE, SyncState.ABORTED):
                self._state = SyncState.ABORTED
            self._running = False
            clear_sync_run()

    def cleanup(self) -> list[str]:
        """
        Drop cache entries whose anchors are no longer in the vault.

        Remote tasks are never touched.

        Returns:
            Anchor ids removed from the cache
        """
        if self._running:
            log.info("cleanup_skipped_sync_running")
            return []

        local_tasks = self._scan_vault()
        if not self._scan_complete:
            log.warning("cleanup_skipped_incomplete_scan")
            return []
        removed = self._store.remove_stale(local_tasks)
        self._store.flush()
        return removed

    def reset_cache(self) -> bool:
        """
        Forget every ref and cursor so the next run fully resynchronizes.

        Returns:
            False if a run is in flight and nothing was reset
        """
        if self._running:
            log.warning("reset_cache_refused_sync_running")
            return False
        self._store.reset_all()
        return True

    def _abort(
        self, summary: VaultSyncSummary, error: Exception, reauth_required: bool = False
    ) -> SyncAbortedError:
        self._state = SyncState.ABORTED
        summary.aborted = True
        summary.reauth_required = reauth_required
        summary.end_time = datetime.now(timezone.utc)
        summary.errors.append(str(error))
        self._store.flush()

        log.error(
            "sync_aborted",
            error=str(error),
            error_type=type(error).__name__,
            reauth_required=reauth_required,
            lists_attempted=len(summary.lists),
        )
        return SyncAbortedError(summary, error, reauth_required=reauth_required)

    async def _resolve_list_ids(self) -> list[str]:
        list_ids = list(self._config.list_ids)
        if not list_ids:
            list_ids = [todo_list.list_id for todo_list in await self._remote.list_lists()]

        # Unbound anchors go to the default list; syncing it last lets the
        # other lists relink their anchors first
        default = self._config.default_list_id
        if default in list_ids:
            list_ids = [list_id for list_id in list_ids if list_id != default] + [default]
        return list_ids

    def _scan_vault(self) -> dict[str, TrackedTask]:
        """Scan every Markdown file once; the first occurrence of an anchor wins."""
        tasks: dict[str, TrackedTask] = {}
        self._scan_complete = True

        for path in self._documents.list_files(".md"):
            try:
                text = self._documents.read_text(path)
            except (OSError, UnicodeDecodeError) as e:
                self._scan_complete = False
                log.warning("vault_file_unreadable", file_path=path, error=str(e))
                continue

            if not self._scanner.contains_anchor(text):
                continue

            for task in self._scanner.scan(text, path):
                first = tasks.get(task.anchor_id)
                if first is not None:
                    log.warning(
                        "duplicate_anchor_ignored",
                        anchor_id=task.anchor_id,
                        file_path=path,
                        line_number=task.line_start + 1,
                        kept_file_path=first.file_path,
                    )
                    continue
                tasks[task.anchor_id] = task

        log.info("vault_scanned", task_count=len(tasks), complete=self._scan_complete)
        return tasks

    async def _sync_list(
        self, list_id: str, local_tasks: dict[str, TrackedTask], report: ListSyncReport
    ) -> None:
        log.info("sync_list_started", list_id=list_id)

        cursor_entry = self._store.get_cursor(list_id)
        cursor = cursor_entry.cursor if cursor_entry else None

        try:
            delta = await self._fetcher.fetch_delta(list_id, cursor)
        except TransientNetworkError:
            self._store.clear_cursor(list_id)
            raise
        except UnauthorizedError:
            raise
        except RemoteApiError as e:
            report.errored += 1
            report.errors.append(f"Failed to fetch list {list_id}: {str(e)}")
            log.error("list_fetch_failed", list_id=list_id, error=str(e))
            return

        report.full_fetch = delta.full_fetch
        fetched_at = datetime.now(timezone.utc)

        self._state = SyncState.RECONCILING
        plan = self._reconcile(list_id, local_tasks, delta, report)

        self._state = SyncState.APPLYING
        for local, cached, remote in plan.pushes:
            await self._apply_push(list_id, local, cached, remote, report)
        for local, remote in plan.repoints:
            await self._repoint(local, remote)

        pull_failed = False
        for local, remote, cached in plan.pulls:
            if not await self._apply_pull(local, remote, cached, report):
                pull_failed = True
        for remote in plan.new_pulls:
            if not await self._apply_new_pull(list_id, remote, local_tasks, report):
                pull_failed = True

        self._state = SyncState.PERSISTING
        if pull_failed:
            log.warning("cursor_held_after_pull_failure", list_id=list_id)
        else:
            report.cursor_advanced = self._store.set_cursor(list_id, delta.new_cursor, fetched_at)

        log.info(
            "sync_list_completed",
            list_id=list_id,
            pushed=report.pushed,
            pulled=report.pulled,
            conflicts=report.conflicts,
            skipped=report.skipped,
            removed=report.removed,
            errored=report.errored,
            full_fetch=report.full_fetch,
            cursor_advanced=report.cursor_advanced,
        )

    def _reconcile(
        self,
        list_id: str,
        local_tasks: dict[str, TrackedTask],
        delta: DeltaResult,
        report: ListSyncReport,
    ) -> _Plan:
        plan = _Plan()

        # Local tasks bound to this list
        candidates: set[str] = set(self._store.refs_for_list(list_id))
        if list_id == self._config.default_list_id:
            candidates.update(a for a in local_tasks if self._store.get(a) is None)

        # Remote deletions unlink the anchor; a surviving local task is pushed again
        removed_ids = set(delta.removed_task_ids)
        if delta.full_fetch:
            present = {task.task_id for task in delta.tasks}
            removed_ids.update(
                ref.task_id
                for ref in self._store.refs_for_list(list_id).values()
                if ref.task_id not in present
            )
        for task_id in removed_ids:
            anchor_id = self._store.find_by_remote(list_id, task_id)
            if anchor_id is None:
                continue
            self._store.remove(anchor_id)
            report.removed += 1
            log.info("remote_task_deleted_unlinked", list_id=list_id, task_id=task_id, anchor_id=anchor_id)
            local = local_tasks.get(anchor_id)
            if local is not None:
                plan.pushes.append((local, None, None))
            candidates.discard(anchor_id)

        # Match remote tasks to anchors: cached pair first, then the linked anchor
        remote_by_anchor: dict[str, RemoteTask] = {}
        for remote in delta.tasks:
            anchor_id = self._store.find_by_remote(list_id, remote.task_id)
            if anchor_id is None and remote.linked_anchor_id in local_tasks:
                if self._store.get(remote.linked_anchor_id) is None:
                    self._relink(list_id, local_tasks[remote.linked_anchor_id], remote, plan)
                    candidates.discard(remote.linked_anchor_id)
                    continue
            if anchor_id is None:
                self._plan_unmatched(remote, plan, report)
                continue
            remote_by_anchor[anchor_id] = remote
            if anchor_id in local_tasks:
                self._plan_repoint(local_tasks[anchor_id], remote, plan)
            candidates.add(anchor_id)

        for anchor_id in sorted(candidates):
            local = local_tasks.get(anchor_id)
            remote = remote_by_anchor.get(anchor_id)
            cached = self._store.get(anchor_id)
            action = self._engine.decide(local, remote, cached)

            if action in (SyncAction.PULL_REMOTE, SyncAction.CONFLICT) and not remote.title.strip():
                # Keep the local block; a later local edit pushes its title back
                report.skipped += 1
                log.info("remote_task_skipped_blank_title", anchor_id=anchor_id, task_id=remote.task_id)
            elif action == SyncAction.PUSH_LOCAL:
                plan.pushes.append((local, cached, None))
            elif action == SyncAction.PULL_REMOTE:
                plan.pulls.append((local, remote, cached))
            elif action == SyncAction.CONFLICT:
                report.conflicts += 1
                plan.pulls.append((local, remote, cached))
            elif action == SyncAction.DROP_REF:
                self._store.remove(anchor_id)
                report.removed += 1
                log.info("anchor_removed_ref_dropped", anchor_id=anchor_id, list_id=list_id)
            elif local is not None and cached is not None:
                self._refresh_ref(anchor_id, local, remote, cached)

        log.info(
            "list_reconciled",
            list_id=list_id,
            pushes=len(plan.pushes),
            pulls=len(plan.pulls),
            new_pulls=len(plan.new_pulls),
        )
        return plan

    def _relink(self, list_id: str, local: TrackedTask, remote: RemoteTask, plan: _Plan) -> None:
        """Rebind an uncached anchor to the remote task whose linked resource names it."""
        log.info(
            "anchor_relinked",
            anchor_id=local.anchor_id,
            list_id=list_id,
            task_id=remote.task_id,
        )
        if local.semantic_hash == remote.semantic_hash:
            self._store.put(
                local.anchor_id,
                RemoteRef(
                    list_id=list_id,
                    task_id=remote.task_id,
                    linked_resource_id=remote.linked_resource_id,
                    hash=local.semantic_hash,
                    remote_modified_at=remote.modified_at,
                ),
            )
        else:
            plan.pushes.append((local, None, remote))
        self._plan_repoint(local, remote, plan)

    def _plan_repoint(self, local: TrackedTask, remote: RemoteTask, plan: _Plan) -> None:
        """Queue a linked resource update when it no longer opens the anchor's file."""
        if remote.linked_resource_id is None or remote.linked_anchor_id != local.anchor_id:
            return
        expected = self._web_url(local.anchor_id, local.file_path)
        if expected is not None and remote.linked_web_url != expected:
            plan.repoints.append((local, remote))

    def _plan_unmatched(self, remote: RemoteTask, plan: _Plan, report: ListSyncReport) -> None:
        action = self._engine.decide(None, remote, None)
        if action != SyncAction.PULL_REMOTE:
            return
        if not remote.title.strip():
            report.skipped += 1
            log.info("remote_task_skipped_blank_title", task_id=remote.task_id)
            return
        if remote.completed and not self._config.pull_completed:
            report.skipped += 1
            log.debug("remote_task_skipped_completed", task_id=remote.task_id)
            return
        plan.new_pulls.append(remote)

    def _refresh_ref(
        self,
        anchor_id: str,
        local: TrackedTask,
        remote: RemoteTask | None,
        cached: RemoteRef,
    ) -> None:
        """Record a newer marker or converged content without any API call."""
        if remote is None or remote.semantic_hash != local.semantic_hash:
            return
        updates = {}
        if cached.hash != local.semantic_hash:
            updates["hash"] = local.semantic_hash
        if remote.modified_at is not None and remote.modified_at != cached.remote_modified_at:
            updates["remote_modified_at"] = remote.modified_at
        if updates:
            self._store.put(anchor_id, cached.model_copy(update=updates))

    async def _apply_push(
        self,
        list_id: str,
        local: TrackedTask,
        cached: RemoteRef | None,
        relinked: RemoteTask | None,
        report: ListSyncReport,
    ) -> None:
        anchor_id = local.anchor_id
        try:
            if cached is not None:
                stored = await self._remote.update_task(cached.list_id, cached.task_id, local)
                ref = cached.model_copy(
                    update={"hash": local.semantic_hash, "remote_modified_at": stored.modified_at}
                )
                self._store.put(anchor_id, ref)
            elif relinked is not None:
                stored = await self._remote.update_task(list_id, relinked.task_id, local)
                ref = RemoteRef(
                    list_id=list_id,
                    task_id=relinked.task_id,
                    linked_resource_id=relinked.linked_resource_id,
                    hash=local.semantic_hash,
                    remote_modified_at=stored.modified_at,
                )
                self._store.put(anchor_id, ref)
            else:
                stored = await self._remote.create_task(list_id, local)
                ref = RemoteRef(
                    list_id=list_id,
                    task_id=stored.task_id,
                    hash=local.semantic_hash,
                    remote_modified_at=stored.modified_at,
                )
                self._store.put(anchor_id, ref)

            if ref.linked_resource_id is None:
                await self._link(anchor_id, ref, local.file_path)

            report.pushed += 1
            log.info(
                "task_pushed",
                anchor_id=anchor_id,
                list_id=ref.list_id,
                task_id=ref.task_id,
                created=cached is None and relinked is None,
            )
        except UnauthorizedError:
            raise
        except Exception as e:
            report.errored += 1
            report.errors.append(f"Failed to push task {anchor_id} ({local.title}): {str(e)}")
            log.error("failed_to_push_task", anchor_id=anchor_id, list_id=list_id, error=str(e))

    async def _apply_pull(
        self,
        local: TrackedTask,
        remote: RemoteTask,
        cached: RemoteRef | None,
        report: ListSyncReport,
    ) -> bool:
        """Rewrite an existing anchor's block from the remote task."""
        anchor_id = local.anchor_id
        path = local.file_path
        try:
            # Re-read: earlier writes in this run may have shifted the block
            text = self._documents.read_text(path)
            current = next(
                (t for t in self._scanner.scan(text, path) if t.anchor_id == anchor_id), None
            )
            if current is None:
                raise LookupError(f"anchor {anchor_id} is no longer in {path}")

            updated = to_tracked_task(
                remote, anchor_id, indent=current.indent, notes=current.notes, file_path=path
            )
            lines = text.splitlines()
            lines[current.line_start : current.line_end] = render_task_block(
                updated, self._config.anchor_prefix
            )
            self._documents.write_text(path, self._join_lines(lines, text))

            self._store.put(
                anchor_id,
                RemoteRef(
                    list_id=remote.list_id,
                    task_id=remote.task_id,
                    linked_resource_id=(
                        cached.linked_resource_id if cached else remote.linked_resource_id
                    ),
                    hash=updated.semantic_hash,
                    remote_modified_at=remote.modified_at,
                ),
            )
            report.pulled += 1
            report.written_paths.append(path)
            log.info("task_pulled", anchor_id=anchor_id, task_id=remote.task_id, file_path=path)
            return True
        except UnauthorizedError:
            raise
        except Exception as e:
            report.errored += 1
            report.errors.append(f"Failed to pull task {remote.task_id} into {anchor_id}: {str(e)}")
            log.error(
                "failed_to_pull_task",
                anchor_id=anchor_id,
                task_id=remote.task_id,
                file_path=path,
                error=str(e),
            )
            return False

    async def _apply_new_pull(
        self,
        list_id: str,
        remote: RemoteTask,
        local_tasks: dict[str, TrackedTask],
        report: ListSyncReport,
    ) -> bool:
        """Append a previously unseen remote task to the inbox file under a fresh anchor."""
        path = self._inbox_path
        try:
            anchor_id = new_anchor_id()
            task = to_tracked_task(remote, anchor_id, file_path=path)

            text = self._documents.read_text(path) if self._documents.exists(path) else ""
            if text and not text.endswith("\n"):
                text += "\n"
            block = render_task_block(task, self._config.anchor_prefix, indent="")
            self._documents.write_text(path, text + "\n".join(block) + "\n")
            local_tasks[anchor_id] = task

            ref = RemoteRef(
                list_id=list_id,
                task_id=remote.task_id,
                hash=task.semantic_hash,
                remote_modified_at=remote.modified_at,
            )
            self._store.put(anchor_id, ref)
            await self._link(anchor_id, ref, path)

            report.pulled += 1
            report.written_paths.append(path)
            log.info("remote_task_pulled_new", anchor_id=anchor_id, task_id=remote.task_id, file_path=path)
            return True
        except UnauthorizedError:
            raise
        except Exception as e:
            report.errored += 1
            report.errors.append(f"Failed to pull new task {remote.task_id}: {str(e)}")
            log.error("failed_to_pull_new_task", task_id=remote.task_id, error=str(e))
            return False

    async def _link(self, anchor_id: str, ref: RemoteRef, file_path: str | None) -> None:
        """Attach a linked resource pointing at the anchor; a failure is retried on the next push."""
        try:
            linked_resource_id = await self._remote.create_linked_resource(
                ref.list_id, ref.task_id, anchor_id, self._web_url(anchor_id, file_path)
            )
        except UnauthorizedError:
            raise
        except RemoteApiError as e:
            log.warning(
                "linked_resource_failed",
                anchor_id=anchor_id,
                task_id=ref.task_id,
                error=str(e),
            )
            return
        self._store.put(anchor_id, ref.model_copy(update={"linked_resource_id": linked_resource_id}))

    async def _repoint(self, local: TrackedTask, remote: RemoteTask) -> None:
        web_url = self._web_url(local.anchor_id, local.file_path)
        try:
            await self._remote.update_linked_resource(
                remote.list_id,
                remote.task_id,
                remote.linked_resource_id,
                local.anchor_id,
                web_url,
            )
        except UnauthorizedError:
            raise
        except RemoteApiError as e:
            log.warning(
                "linked_resource_repoint_failed",
                anchor_id=local.anchor_id,
                task_id=remote.task_id,
                error=str(e),
            )
            return
        log.info(
            "linked_resource_repointed",
            anchor_id=local.anchor_id,
            task_id=remote.task_id,
            file_path=local.file_path,
        )

    def _web_url(self, anchor_id: str, file_path: str | None) -> str | None:
        if not self._vault_name or not file_path:
            return None
        block = quote(f"{self._config.anchor_prefix}{anchor_id}", safe="")
        return (
            f"obsidian://open?vault={quote(self._vault_name, safe='')}"
            f"&file={quote(file_path, safe='')}#^{block}"
        )

    @staticmethod
    def _join_lines(lines: list[str], original: str) -> str:
        text = "\n".join(lines)
        if original.endswith("\n"):
            text += "\n"
        return text
