"""
Unit Tests for the Refresh Coordinator
"""
import asyncio
from collections import defaultdict
from types import SimpleNamespace

import pytest

from directory_sync.config import DirectorySettings
from directory_sync.refresh.coordinator import GLOBAL_SCOPE, RefreshCoordinator, ScopeState


class FakeBuilder:
    """Records builds; optionally slow, failing or hanging"""

    def __init__(self, delay: float = 0.0, fail_times: int = 0, hang_times: int = 0):
        self.delay = delay
        self.fail_times = fail_times
        self.hang_times = hang_times
        self.calls = []
        self.active = defaultdict(int)
        self.max_active = defaultdict(int)

    async def build(self, scope: str):
        self.calls.append(scope)
        self.active[scope] += 1
        self.max_active[scope] = max(self.max_active[scope], self.active[scope])
        try:
            if self.hang_times > 0:
                self.hang_times -= 1
                await asyncio.sleep(30)
            await asyncio.sleep(self.delay)
            if self.fail_times > 0:
                self.fail_times -= 1
                raise RuntimeError("store unavailable")
            return SimpleNamespace(version=len(self.calls))
        finally:
            self.active[scope] -= 1


def make_coordinator(builder, **overrides) -> RefreshCoordinator:
    values = dict(
        debounce_seconds=0.05,
        build_timeout_seconds=2.0,
        backoff_base_seconds=0.05,
        backoff_max_seconds=0.2,
        max_concurrent_builds=4,
    )
    values.update(overrides)
    return RefreshCoordinator(builder, settings=DirectorySettings(**values))


class TestDebounce:
    """Trigger coalescing"""

    async def test_burst_of_triggers_builds_once(self):
        """Ten triggers inside one window cause exactly one build"""
        builder = FakeBuilder()
        coordinator = make_coordinator(builder)

        for _ in range(10):
            coordinator.trigger(GLOBAL_SCOPE)

        assert coordinator.state_of(GLOBAL_SCOPE) == ScopeState.PENDING_DEBOUNCE
        await coordinator.wait_until_idle(GLOBAL_SCOPE, timeout=2)
        assert builder.calls == [GLOBAL_SCOPE]

    async def test_trigger_resets_the_window(self):
        """A later trigger pushes the build out by a full debounce window"""
        builder = FakeBuilder()
        coordinator = make_coordinator(builder, debounce_seconds=0.3)

        coordinator.trigger(GLOBAL_SCOPE)
        await asyncio.sleep(0.2)
        coordinator.trigger(GLOBAL_SCOPE)
        await asyncio.sleep(0.2)

        assert builder.calls == []
        await coordinator.wait_until_idle(GLOBAL_SCOPE, timeout=2)
        assert builder.calls == [GLOBAL_SCOPE]

    async def test_no_trigger_no_build(self):
        builder = FakeBuilder()
        coordinator = make_coordinator(builder)

        await asyncio.sleep(0.1)

        assert builder.calls == []
        assert coordinator.state_of(GLOBAL_SCOPE) == ScopeState.IDLE

    async def test_scopes_are_independent(self):
        """Each scope has its own window and build"""
        builder = FakeBuilder()
        coordinator = make_coordinator(builder)

        coordinator.trigger(GLOBAL_SCOPE)
        coordinator.trigger("t1")
        coordinator.trigger("t1")

        await coordinator.wait_until_idle(GLOBAL_SCOPE, timeout=2)
        await coordinator.wait_until_idle("t1", timeout=2)
        assert sorted(builder.calls) == [GLOBAL_SCOPE, "t1"]


class TestBuildingState:
    """Triggers and forced refreshes while a build runs"""

    async def test_trigger_during_build_schedules_one_followup(self):
        """Changes that arrive mid-build are picked up by one more build"""
        builder = FakeBuilder(delay=0.2)
        coordinator = make_coordinator(builder)

        assert coordinator.force_refresh(GLOBAL_SCOPE) is True
        await asyncio.sleep(0.05)
        assert coordinator.state_of(GLOBAL_SCOPE) == ScopeState.BUILDING

        for _ in range(5):
            coordinator.trigger(GLOBAL_SCOPE)

        await coordinator.wait_until_idle(GLOBAL_SCOPE, timeout=3)
        assert builder.calls == [GLOBAL_SCOPE, GLOBAL_SCOPE]

    async def test_builds_never_overlap_for_a_scope(self):
        builder = FakeBuilder(delay=0.1)
        coordinator = make_coordinator(builder, debounce_seconds=0.0)

        coordinator.force_refresh(GLOBAL_SCOPE)
        for _ in range(3):
            await asyncio.sleep(0.03)
            coordinator.trigger(GLOBAL_SCOPE)
            coordinator.force_refresh(GLOBAL_SCOPE)

        await coordinator.wait_until_idle(GLOBAL_SCOPE, timeout=3)
        assert builder.max_active[GLOBAL_SCOPE] == 1

    async def test_force_during_build_queues_followup(self):
        """A forced refresh never preempts, it runs right after"""
        builder = FakeBuilder(delay=0.2)
        coordinator = make_coordinator(builder, debounce_seconds=10)

        coordinator.force_refresh(GLOBAL_SCOPE)
        await asyncio.sleep(0.05)

        assert coordinator.force_refresh(GLOBAL_SCOPE) is False
        await coordinator.wait_until_idle(GLOBAL_SCOPE, timeout=2)
        assert builder.calls == [GLOBAL_SCOPE, GLOBAL_SCOPE]

    async def test_force_skips_debounce(self):
        builder = FakeBuilder()
        coordinator = make_coordinator(builder, debounce_seconds=10)

        coordinator.trigger(GLOBAL_SCOPE)
        assert coordinator.force_refresh(GLOBAL_SCOPE) is True

        await coordinator.wait_until_idle(GLOBAL_SCOPE, timeout=1)
        assert builder.calls == [GLOBAL_SCOPE]


class TestFailures:
    """Failed and timed-out builds"""

    async def test_failed_build_retries_with_backoff(self):
        builder = FakeBuilder(fail_times=2)
        coordinator = make_coordinator(builder)

        coordinator.force_refresh(GLOBAL_SCOPE)
        await coordinator.wait_until_idle(GLOBAL_SCOPE, timeout=3)

        assert builder.calls == [GLOBAL_SCOPE] * 3
        status = coordinator.status()[0]
        assert status.failed_cycles == 2
        assert status.completed_cycles == 1
        assert status.consecutive_failures == 0
        assert status.last_error is None

    async def test_failure_is_recorded_while_backing_off(self):
        builder = FakeBuilder(fail_times=1)
        coordinator = make_coordinator(builder, backoff_base_seconds=0.5, backoff_max_seconds=1.0)

        coordinator.force_refresh(GLOBAL_SCOPE)
        await asyncio.sleep(0.1)

        status = coordinator.status()[0]
        assert status.state == ScopeState.PENDING_DEBOUNCE
        assert status.consecutive_failures == 1
        assert "store unavailable" in status.last_error
        assert status.next_run_in_seconds is not None

        await coordinator.stop()

    async def test_trigger_does_not_shorten_backoff(self):
        """Fresh triggers wait out the backoff instead of hammering a failing store"""
        builder = FakeBuilder(fail_times=1)
        coordinator = make_coordinator(
            builder, debounce_seconds=0.01, backoff_base_seconds=0.4, backoff_max_seconds=1.0
        )

        coordinator.force_refresh(GLOBAL_SCOPE)
        await asyncio.sleep(0.05)
        coordinator.trigger(GLOBAL_SCOPE)
        await asyncio.sleep(0.1)

        assert builder.calls == [GLOBAL_SCOPE]
        await coordinator.wait_until_idle(GLOBAL_SCOPE, timeout=2)
        assert builder.calls == [GLOBAL_SCOPE, GLOBAL_SCOPE]

    async def test_timed_out_build_counts_as_failure(self):
        builder = FakeBuilder(hang_times=1)
        coordinator = make_coordinator(builder, build_timeout_seconds=0.1)

        coordinator.force_refresh(GLOBAL_SCOPE)
        await coordinator.wait_until_idle(GLOBAL_SCOPE, timeout=3)

        status = coordinator.status()[0]
        assert status.failed_cycles == 1
        assert status.completed_cycles == 1
        assert len(builder.calls) == 2

    def test_backoff_is_exponential_and_capped(self):
        coordinator = make_coordinator(FakeBuilder(), backoff_base_seconds=1, backoff_max_seconds=60)

        delays = [coordinator.backoff_delay(n) for n in range(1, 9)]

        assert delays == [1, 2, 4, 8, 16, 32, 60, 60]

    def test_staleness_bound(self):
        coordinator = make_coordinator(FakeBuilder(), debounce_seconds=2.0, build_timeout_seconds=60)
        assert coordinator.max_staleness_seconds == 62.0


class TestLifecycle:
    """start / stop"""

    async def test_start_forces_each_known_scope_once(self):
        builder = FakeBuilder()
        coordinator = make_coordinator(builder, debounce_seconds=10)

        await coordinator.start([GLOBAL_SCOPE, "t1", GLOBAL_SCOPE])
        await coordinator.wait_until_idle(GLOBAL_SCOPE, timeout=1)
        await coordinator.wait_until_idle("t1", timeout=1)

        assert sorted(builder.calls) == [GLOBAL_SCOPE, "t1"]

    async def test_stop_cancels_pending_and_ignores_new_triggers(self):
        builder = FakeBuilder()
        coordinator = make_coordinator(builder, debounce_seconds=0.1)

        coordinator.trigger(GLOBAL_SCOPE)
        await coordinator.stop()
        coordinator.trigger(GLOBAL_SCOPE)
        await asyncio.sleep(0.2)

        assert builder.calls == []
        assert coordinator.state_of(GLOBAL_SCOPE) == ScopeState.IDLE

    async def test_stop_waits_for_inflight_build(self):
        builder = FakeBuilder(delay=0.1)
        coordinator = make_coordinator(builder)

        coordinator.force_refresh(GLOBAL_SCOPE)
        coordinator.trigger(GLOBAL_SCOPE)
        await asyncio.sleep(0.02)
        await coordinator.stop()

        assert builder.calls == [GLOBAL_SCOPE]
        assert coordinator.status()[0].completed_cycles == 1
        assert coordinator.state_of(GLOBAL_SCOPE) == ScopeState.IDLE

    async def test_status_serializes(self):
        coordinator = make_coordinator(FakeBuilder(), debounce_seconds=10)
        coordinator.trigger("t9")

        data = coordinator.status()[0].to_dict()

        assert data["scope"] == "t9"
        assert data["state"] == "pending_debounce"
        assert data["next_run_in_seconds"] == pytest.approx(10, abs=0.5)
        await coordinator.stop()
