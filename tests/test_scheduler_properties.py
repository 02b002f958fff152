"""Tests for sync triggering: debounce, cooldown, minimum interval and the scheduler."""

import asyncio

import pytest
from conftest import no_sleep
from hypothesis import given, settings
from hypothesis import strategies as st

from todosync.models.config import SyncConfig
from todosync.remote.errors import UnauthorizedError
from todosync.sync.orchestrator import SyncOrchestrator
from todosync.sync.scheduler import Cooldown, Debouncer, MinInterval, SyncScheduler

MILK = "- [ ] Buy milk ^MSTDabc123\n"


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def timing(**overrides) -> SyncConfig:
    """Short timings so scheduler tests finish in well under a second."""
    values = dict(
        default_list_id="L1",
        list_ids=["L1"],
        inter_list_delay_seconds=0,
        retry_base_delay=0,
        retry_max_delay=0,
        min_interval_seconds=0,
        debounce_seconds=0.05,
        cooldown_seconds=0.5,
        startup_delay_seconds=60,
        auto_sync_minutes=0,
    )
    values.update(overrides)
    return SyncConfig(**values)


@pytest.fixture()
def notices() -> list[str]:
    return []


def make_scheduler(remote, documents, identity_store, config, notices) -> SyncScheduler:
    orchestrator = SyncOrchestrator(
        remote, documents, identity_store, config, inbox_path="Inbox.md", sleep=no_sleep
    )
    return SyncScheduler(orchestrator, documents, config, notify=notices.append)


async def settle(scheduler: SyncScheduler, seconds: float = 0.15) -> None:
    await asyncio.sleep(seconds)
    await scheduler.wait_idle()


class TestMinInterval:
    def test_second_request_inside_interval_is_refused(self):
        clock = FakeClock()
        guard = MinInterval(60, clock=clock)

        assert guard.try_acquire("startup") is True
        clock.now += 30
        assert guard.try_acquire("file-save") is False
        assert guard.remaining() == pytest.approx(30)

        clock.now += 30
        assert guard.try_acquire("file-save") is True

    def test_refused_request_does_not_restart_interval(self):
        clock = FakeClock()
        guard = MinInterval(10, clock=clock)
        guard.try_acquire()
        clock.now += 9
        guard.try_acquire()
        clock.now += 1
        assert guard.try_acquire() is True

    @given(st.floats(min_value=0, max_value=600), st.floats(min_value=0, max_value=600))
    @settings(max_examples=50, deadline=None)
    def test_property_acceptance_matches_elapsed_time(self, duration: float, elapsed: float):
        """Property: a request is accepted exactly when the interval has elapsed."""
        clock = FakeClock(0.0)
        guard = MinInterval(duration, clock=clock)
        guard.try_acquire()
        clock.now = elapsed

        assert guard.try_acquire() is (duration - elapsed <= 0)


class TestDebouncer:
    @pytest.mark.asyncio
    async def test_burst_of_triggers_fires_once(self):
        fired: list[str] = []
        debouncer = Debouncer(0.05)

        for _ in range(5):
            debouncer.trigger("Daily.md", lambda: fired.append("Daily.md"))
            await asyncio.sleep(0.01)
        assert fired == []
        assert debouncer.pending("Daily.md")

        await asyncio.sleep(0.1)
        assert fired == ["Daily.md"]
        assert not debouncer.pending("Daily.md")

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        fired: list[str] = []
        debouncer = Debouncer(0.02)
        debouncer.trigger("a.md", lambda: fired.append("a.md"))
        debouncer.trigger("b.md", lambda: fired.append("b.md"))

        await asyncio.sleep(0.08)
        assert sorted(fired) == ["a.md", "b.md"]

    @pytest.mark.asyncio
    async def test_cancel_all_drops_pending_calls(self):
        fired: list[str] = []
        debouncer = Debouncer(0.02)
        debouncer.trigger("a.md", lambda: fired.append("a.md"))
        debouncer.cancel_all()

        await asyncio.sleep(0.05)
        assert fired == []


class TestCooldown:
    @pytest.mark.asyncio
    async def test_key_is_suppressed_until_expiry(self):
        cooldown = Cooldown(0.05)
        cooldown.start("Daily.md")

        assert cooldown.is_active("Daily.md")
        assert not cooldown.is_active("Other.md")
        await asyncio.sleep(0.1)
        assert not cooldown.is_active("Daily.md")

    @pytest.mark.asyncio
    async def test_zero_duration_never_suppresses(self):
        cooldown = Cooldown(0)
        cooldown.start("Daily.md")
        assert not cooldown.is_active("Daily.md")


class TestSyncScheduler:
    @pytest.mark.asyncio
    async def test_saving_an_anchored_file_syncs_once(self, remote, documents, identity_store, notices):
        scheduler = make_scheduler(remote, documents, identity_store, timing(), notices)
        scheduler.start()

        documents.files["Daily.md"] = MILK
        for _ in range(3):
            documents.touch("Daily.md")
        await settle(scheduler)

        assert notices == ["Sync finished: 1 pushed, 0 pulled."]
        assert remote.count("create_task") == 1
        scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_file_in_cooldown_is_ignored(self, remote, documents, identity_store, notices):
        scheduler = make_scheduler(remote, documents, identity_store, timing(), notices)
        scheduler.start()
        documents.files["Daily.md"] = MILK
        documents.touch("Daily.md")
        await settle(scheduler)

        documents.files["Daily.md"] = "- [x] Buy milk ^MSTDabc123\n"
        documents.touch("Daily.md")
        await settle(scheduler)

        assert len(notices) == 1
        assert remote.count("update_task") == 0
        scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_files_without_anchors_do_not_sync(self, remote, documents, identity_store, notices):
        scheduler = make_scheduler(remote, documents, identity_store, timing(), notices)
        scheduler.start()

        documents.files["Notes.md"] = "- [ ] untracked task\n"
        documents.files["image.png"] = "^MSTDabc123"
        documents.touch("Notes.md")
        documents.touch("image.png")
        await settle(scheduler)

        assert notices == []
        assert remote.calls == []
        scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_pulled_file_does_not_retrigger(self, remote, documents, identity_store, notices):
        remote.add_remote_task("L1", "Call mom")
        scheduler = make_scheduler(
            remote, documents, identity_store, timing(startup_delay_seconds=0.01), notices
        )
        scheduler.start()
        await settle(scheduler, 0.3)

        assert notices == ["Sync finished: 0 pushed, 1 pulled."]
        assert "^MSTD" in documents.files["Inbox.md"]
        assert remote.count("get_delta_page") == 1
        scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_min_interval_rate_limits_requests(self, remote, documents, identity_store, notices):
        scheduler = make_scheduler(
            remote, documents, identity_store, timing(min_interval_seconds=60), notices
        )

        first = await scheduler.request_sync("manual")
        second = await scheduler.request_sync("manual")
        forced = await scheduler.request_sync("manual", force=True)

        assert first is not None
        assert second is None
        assert forced is not None
        assert len(notices) == 2

    @pytest.mark.asyncio
    async def test_aborted_sync_reports_notice(self, remote, documents, identity_store, notices):
        scheduler = make_scheduler(remote, documents, identity_store, timing(), notices)
        remote.fail_next("get_delta_page", UnauthorizedError("expired", status_code=401))

        summary = await scheduler.request_sync("manual")

        assert summary.aborted is True
        assert summary.reauth_required is True
        assert notices == ["Sync stopped: Microsoft To Do rejected the credentials. Sign in again."]

    @pytest.mark.asyncio
    async def test_auto_sync_repeats(self, remote, documents, identity_store, notices):
        scheduler = make_scheduler(
            remote, documents, identity_store, timing(auto_sync_minutes=0.001), notices
        )
        scheduler.start()
        await settle(scheduler, 0.2)
        scheduler.shutdown()
        await scheduler.wait_idle()

        assert len(notices) >= 2
        assert all(n == "Sync finished: 0 pushed, 0 pulled." for n in notices)

    @pytest.mark.asyncio
    async def test_shutdown_cancels_timers_and_unsubscribes(self, remote, documents, identity_store, notices):
        scheduler = make_scheduler(
            remote, documents, identity_store, timing(startup_delay_seconds=0.02), notices
        )
        scheduler.start()
        assert documents.subscriber_count == 1
        documents.files["Daily.md"] = MILK
        documents.touch("Daily.md")

        scheduler.shutdown()
        await settle(scheduler, 0.1)

        assert scheduler.started is False
        assert documents.subscriber_count == 0
        assert notices == []
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, remote, documents, identity_store, notices):
        scheduler = make_scheduler(remote, documents, identity_store, timing(), notices)
        scheduler.start()
        scheduler.start()

        assert documents.subscriber_count == 1
        scheduler.shutdown()
