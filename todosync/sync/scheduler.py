"""Timing policy for automatic syncs: debounce, cooldown, minimum interval."""

import asyncio
import time
from typing import Callable

import structlog

from todosync.models.config import SyncConfig
from todosync.scanning.task_scanner import ChangeScanner
from todosync.sync.models import SyncAbortedError, VaultSyncSummary
from todosync.sync.orchestrator import SyncOrchestrator
from todosync.vault.document_store import DocumentStore, Subscription

log = structlog.stdlib.get_logger()


class Debouncer:
    """Per-key coalescing: the callback fires ``window`` seconds after the last trigger."""

    def __init__(self, window: float):
        self.window = window
        self._handles: dict[str, asyncio.TimerHandle] = {}

    def trigger(self, key: str, callback: Callable[[], None]) -> None:
        """Schedule ``callback``, replacing any pending call for the same key."""
        pending = self._handles.pop(key, None)
        if pending is not None:
            pending.cancel()

        loop = asyncio.get_running_loop()
        self._handles[key] = loop.call_later(self.window, self._fire, key, callback)

    def pending(self, key: str) -> bool:
        return key in self._handles

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def _fire(self, key: str, callback: Callable[[], None]) -> None:
        self._handles.pop(key, None)
        callback()


class Cooldown:
    """Suppresses a key for ``duration`` seconds after ``start``."""

    def __init__(self, duration: float):
        self.duration = duration
        self._handles: dict[str, asyncio.TimerHandle] = {}

    def start(self, key: str) -> None:
        pending = self._handles.pop(key, None)
        if pending is not None:
            pending.cancel()
        if self.duration <= 0:
            return

        loop = asyncio.get_running_loop()
        self._handles[key] = loop.call_later(self.duration, self._handles.pop, key, None)

    def is_active(self, key: str) -> bool:
        return key in self._handles

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()


class MinInterval:
    """Global guard: a request within ``duration`` of the last accepted one is skipped."""

    def __init__(self, duration: float, clock: Callable[[], float] = time.monotonic):
        self.duration = duration
        self._clock = clock
        self._last: float | None = None

    def remaining(self) -> float:
        """Seconds until the next request would be accepted."""
        if self._last is None:
            return 0.0
        return max(0.0, self.duration - (self._clock() - self._last))

    def try_acquire(self, reason: str = "manual") -> bool:
        """
        Accept a request if the interval has elapsed.

        Returns:
            True if the caller may proceed; the interval restarts from now
        """
        remaining = self.remaining()
        if remaining > 0:
            log.info(
                "sync_skipped_min_interval",
                reason=reason,
                remaining_seconds=round(remaining, 1),
            )
            return False
        self._last = self._clock()
        return True


class SyncScheduler:
    """Turns startup, periodic and file-save events into orchestrator runs.

    All timers are owned here and cancelled together by ``shutdown()``. A sync
    already in flight is left to finish; shutdown does not interrupt remote
    calls.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        documents: DocumentStore,
        config: SyncConfig,
        scanner: ChangeScanner | None = None,
        notify: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the scheduler.

        Args:
            orchestrator: Runs the actual syncs
            documents: Vault whose modifications trigger syncs
            config: Timing policy
            scanner: Used to check saved files for anchors
            notify: Receives one user-facing notice per completed run
            clock: Monotonic clock for the minimum-interval guard
        """
        self._orchestrator = orchestrator
        self._documents = documents
        self._config = config
        self._scanner = scanner or ChangeScanner(config.anchor_prefix)
        self._notify = notify

        self.debouncer = Debouncer(config.debounce_seconds)
        self.cooldown = Cooldown(config.cooldown_seconds)
        self.min_interval = MinInterval(config.min_interval_seconds, clock=clock)

        self._timers: set[asyncio.TimerHandle] = set()
        self._tasks: set[asyncio.Task] = set()
        self._subscription: Subscription | None = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        """Arm the startup sync, the auto-sync interval and the file watcher."""
        if self._started:
            return
        self._started = True

        self._call_later(self._config.startup_delay_seconds, self._spawn, "startup")
        if self._config.auto_sync_minutes > 0:
            self._call_later(self._config.auto_sync_minutes * 60, self._auto_sync_tick)
        self._subscription = self._documents.subscribe(self.handle_file_modified)

        log.info(
            "sync_scheduler_started",
            startup_delay_seconds=self._config.startup_delay_seconds,
            auto_sync_minutes=self._config.auto_sync_minutes,
        )

    def handle_file_modified(self, path: str) -> None:
        """Entry point for document-store modification events."""
        if not self._started or not path.endswith(".md"):
            return
        self.debouncer.trigger(path, lambda: self._on_file_settled(path))

    async def request_sync(
        self, reason: str, source: str | None = None, force: bool = False
    ) -> VaultSyncSummary | None:
        """
        Run a vault sync subject to the minimum interval.

        Args:
            reason: Trigger name for logs and the summary
            source: File that caused the request, put in cooldown afterwards
            force: Bypass the minimum interval

        Returns:
            The run's summary, or None if the request was rate limited
        """
        if not force and not self.min_interval.try_acquire(reason):
            return None

        try:
            summary = await self._orchestrator.sync_vault(reason)
        except SyncAbortedError as e:
            log.error(
                "scheduled_sync_aborted",
                reason=reason,
                reauth_required=e.reauth_required,
                error=str(e.cause),
            )
            self._emit(e.summary.notice())
            return e.summary

        if summary.skipped:
            return summary

        cooled = ([source] if source else []) + summary.written_paths
        for path in cooled:
            self.cooldown.start(path)

        self._emit(summary.notice())
        return summary

    def shutdown(self) -> None:
        """Cancel every pending timer and release the file watcher."""
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        self.debouncer.cancel_all()
        self.cooldown.cancel_all()

        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

        self._started = False
        log.info("sync_scheduler_stopped", in_flight=len(self._tasks))

    async def wait_idle(self) -> None:
        """Wait for syncs already started by the scheduler to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_file_settled(self, path: str) -> None:
        if self.cooldown.is_active(path):
            log.debug("file_save_in_cooldown", file_path=path)
            return
        try:
            text = self._documents.read_text(path)
        except (OSError, UnicodeDecodeError) as e:
            log.debug("saved_file_unreadable", file_path=path, error=str(e))
            return
        if not self._scanner.contains_anchor(text):
            return
        self._spawn("file-save", path)

    def _auto_sync_tick(self) -> None:
        self._spawn("auto-sync")
        self._call_later(self._config.auto_sync_minutes * 60, self._auto_sync_tick)

    def _spawn(self, reason: str, source: str | None = None) -> None:
        task = asyncio.get_running_loop().create_task(self._run(reason, source))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, reason: str, source: str | None) -> None:
        try:
            await self.request_sync(reason, source)
        except Exception as e:
            log.exception("scheduled_sync_failed", reason=reason, error=str(e))

    def _call_later(self, delay: float, callback: Callable, *args) -> None:
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def fire() -> None:
            self._timers.discard(handle)
            callback(*args)

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)

    def _emit(self, message: str) -> None:
        log.info("sync_notice", message=message)
        if self._notify is not None:
            self._notify(message)
