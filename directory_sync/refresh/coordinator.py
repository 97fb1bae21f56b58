"""
Refresh Coordinator

Decides when each scope's read models rebuild. One state machine per
scope:

    IDLE -> PENDING_DEBOUNCE -> BUILDING -> IDLE

- trigger(): arms (or re-arms) the debounce timer; while BUILDING the
  trigger is remembered and the scope goes straight back to
  PENDING_DEBOUNCE when the build ends, so bursts coalesce into one
  follow-up build and no change is lost.
- force_refresh(): skips the debounce window. An in-flight build is not
  preempted; a follow-up build starts the moment it finishes.
- A failed or timed-out build keeps the previous view version, is logged,
  and re-arms PENDING_DEBOUNCE with exponential backoff. Nothing is ever
  raised back into the write path.

Staleness is bounded by debounce_seconds + build_timeout_seconds
(``max_staleness_seconds``) for a scope whose builds succeed.
"""

import asyncio
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol

import structlog
from prometheus_client import Counter, Gauge, Histogram

from directory_sync.config import DirectorySettings, get_settings

logger = structlog.get_logger(__name__)

GLOBAL_SCOPE = "global"


# =============================================================================
# METRICS
# =============================================================================

REFRESH_TRIGGERS = Counter(
    "directory_refresh_triggers_total",
    "Refresh triggers received",
    ["kind"],
)

BUILD_CYCLES = Counter(
    "directory_build_cycles_total",
    "Read-model build cycles by outcome",
    ["outcome"],
)

BUILD_DURATION = Histogram(
    "directory_build_duration_seconds",
    "Wall time of one read-model build cycle",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120),
)

SCOPES_BY_STATE = Gauge(
    "directory_refresh_scopes",
    "Scopes currently in each coordinator state",
    ["state"],
)


class ScopeState(str, Enum):
    """Coordinator state of one scope"""
    IDLE = "idle"
    PENDING_DEBOUNCE = "pending_debounce"
    BUILDING = "building"


class ReadModelBuilderProtocol(Protocol):
    async def build(self, scope: str) -> Any:
        ...


@dataclass
class ScopeStatus:
    """Snapshot of a scope's coordinator state"""
    scope: str
    state: ScopeState
    dirty: bool
    forced_followup: bool
    consecutive_failures: int
    completed_cycles: int
    failed_cycles: int
    last_trigger_at: Optional[datetime]
    last_build_started_at: Optional[datetime]
    last_success_at: Optional[datetime]
    last_error: Optional[str]
    next_run_in_seconds: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class _ScopeRuntime:
    """Mutable per-scope state. Only touched from the event loop thread."""

    def __init__(self, scope: str):
        self.scope = scope
        self.state = ScopeState.IDLE
        self.timer: Optional[asyncio.TimerHandle] = None
        self.task: Optional[asyncio.Task] = None
        self.run_at: Optional[float] = None
        self.dirty = False
        self.forced = False
        self.consecutive_failures = 0
        self.backoff_until: Optional[float] = None
        self.completed_cycles = 0
        self.failed_cycles = 0
        self.last_trigger_at: Optional[datetime] = None
        self.last_build_started_at: Optional[datetime] = None
        self.last_success_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.idle = asyncio.Event()
        self.idle.set()


class RefreshCoordinator:
    """
    Debounced, per-scope serialized scheduler for read-model builds.

    Example:
        coordinator = RefreshCoordinator(ReadModelBuilder())
        await coordinator.start([GLOBAL_SCOPE])
        coordinator.trigger(GLOBAL_SCOPE)
        ...
        await coordinator.stop()
    """

    def __init__(
        self,
        builder: ReadModelBuilderProtocol,
        settings: Optional[DirectorySettings] = None,
    ):
        settings = settings or get_settings().directory
        self.builder = builder
        self.debounce_seconds = settings.debounce_seconds
        self.build_timeout_seconds = settings.build_timeout_seconds
        self.backoff_base_seconds = settings.backoff_base_seconds
        self.backoff_max_seconds = settings.backoff_max_seconds
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_builds)
        self._scopes: Dict[str, _ScopeRuntime] = {}
        self._closed = False

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def max_staleness_seconds(self) -> float:
        """Upper bound on how long a committed mutation can stay invisible."""
        return self.debounce_seconds + self.build_timeout_seconds

    def backoff_delay(self, consecutive_failures: int) -> float:
        """Retry delay after the n-th consecutive failure (n >= 1)."""
        exponent = max(consecutive_failures - 1, 0)
        return min(self.backoff_base_seconds * (2 ** exponent), self.backoff_max_seconds)

    def trigger(self, scope: str) -> None:
        """
        Record that a scope's source data changed.

        Must be called from the event loop; returns immediately.
        """
        if self._closed:
            logger.warning("Refresh trigger ignored, coordinator stopped", scope=scope)
            return

        rt = self._runtime(scope)
        rt.last_trigger_at = datetime.utcnow()

        if rt.state == ScopeState.BUILDING:
            rt.dirty = True
            REFRESH_TRIGGERS.labels(kind="during_build").inc()
            return

        REFRESH_TRIGGERS.labels(
            kind="coalesced" if rt.state == ScopeState.PENDING_DEBOUNCE else "armed"
        ).inc()
        self._arm(rt, self._debounce_delay(rt))

    def force_refresh(self, scope: str) -> bool:
        """
        Build a scope now, skipping the debounce window.

        Returns:
            True if a build started, False if one is in flight and a
            follow-up build was queued behind it
        """
        if self._closed:
            logger.warning("Forced refresh ignored, coordinator stopped", scope=scope)
            return False

        rt = self._runtime(scope)
        REFRESH_TRIGGERS.labels(kind="forced").inc()

        if rt.state == ScopeState.BUILDING:
            rt.forced = True
            logger.info("Forced refresh queued behind in-flight build", scope=scope)
            return False

        self._start_build(rt)
        return True

    async def start(self, scopes: Iterable[str]) -> None:
        """
        Start coordinating. Every known scope gets one forced refresh, since
        pending triggers held in memory by a previous process are lost.
        """
        self._closed = False
        started = []
        for scope in dict.fromkeys(scopes):
            self.force_refresh(scope)
            started.append(scope)
        logger.info(
            "Refresh coordinator started",
            scopes=started,
            debounce_seconds=self.debounce_seconds,
            build_timeout_seconds=self.build_timeout_seconds,
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Cancel pending timers and wait for in-flight builds to finish."""
        self._closed = True

        for rt in self._scopes.values():
            self._cancel_timer(rt)

        tasks = [rt.task for rt in self._scopes.values() if rt.task and not rt.task.done()]
        if tasks:
            logger.info("Waiting for in-flight builds", count=len(tasks))
            _, still_running = await asyncio.wait(
                tasks, timeout=timeout if timeout is not None else self.build_timeout_seconds
            )
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        for rt in self._scopes.values():
            self._set_idle(rt)
        self._update_state_gauge()
        logger.info("Refresh coordinator stopped")

    async def wait_until_idle(self, scope: str, timeout: Optional[float] = None) -> None:
        """Wait until a scope has no pending or running build."""
        rt = self._runtime(scope)
        await asyncio.wait_for(rt.idle.wait(), timeout=timeout)

    def state_of(self, scope: str) -> ScopeState:
        rt = self._scopes.get(scope)
        return rt.state if rt else ScopeState.IDLE

    def status(self) -> List[ScopeStatus]:
        loop_time = self._loop_time()
        statuses = []
        for rt in self._scopes.values():
            next_run = None
            if rt.state == ScopeState.PENDING_DEBOUNCE and rt.run_at is not None and loop_time is not None:
                next_run = round(max(rt.run_at - loop_time, 0.0), 3)
            statuses.append(
                ScopeStatus(
                    scope=rt.scope,
                    state=rt.state,
                    dirty=rt.dirty,
                    forced_followup=rt.forced,
                    consecutive_failures=rt.consecutive_failures,
                    completed_cycles=rt.completed_cycles,
                    failed_cycles=rt.failed_cycles,
                    last_trigger_at=rt.last_trigger_at,
                    last_build_started_at=rt.last_build_started_at,
                    last_success_at=rt.last_success_at,
                    last_error=rt.last_error,
                    next_run_in_seconds=next_run,
                )
            )
        return statuses

    # -------------------------------------------------------------------------
    # State machine internals
    # -------------------------------------------------------------------------

    def _runtime(self, scope: str) -> _ScopeRuntime:
        rt = self._scopes.get(scope)
        if rt is None:
            rt = _ScopeRuntime(scope)
            self._scopes[scope] = rt
        return rt

    @staticmethod
    def _loop_time() -> Optional[float]:
        try:
            return asyncio.get_running_loop().time()
        except RuntimeError:
            return None

    def _debounce_delay(self, rt: _ScopeRuntime) -> float:
        delay = self.debounce_seconds
        if rt.backoff_until is not None:
            # A trigger never shortens a failure backoff
            delay = max(delay, rt.backoff_until - asyncio.get_running_loop().time())
        return delay

    def _cancel_timer(self, rt: _ScopeRuntime) -> None:
        if rt.timer is not None:
            rt.timer.cancel()
            rt.timer = None
        rt.run_at = None

    def _set_idle(self, rt: _ScopeRuntime) -> None:
        rt.state = ScopeState.IDLE
        rt.idle.set()

    def _arm(self, rt: _ScopeRuntime, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._cancel_timer(rt)
        rt.state = ScopeState.PENDING_DEBOUNCE
        rt.idle.clear()
        rt.run_at = loop.time() + delay
        rt.timer = loop.call_later(delay, self._start_build, rt)
        self._update_state_gauge()

    def _start_build(self, rt: _ScopeRuntime) -> None:
        self._cancel_timer(rt)
        rt.state = ScopeState.BUILDING
        rt.dirty = False
        rt.forced = False
        rt.idle.clear()
        rt.last_build_started_at = datetime.utcnow()
        rt.task = asyncio.get_running_loop().create_task(
            self._run_build(rt), name=f"read-model-build:{rt.scope}"
        )
        self._update_state_gauge()

    async def _run_build(self, rt: _ScopeRuntime) -> None:
        loop = asyncio.get_running_loop()
        log = logger.bind(scope=rt.scope)
        async with self._semaphore:
            started = loop.time()
            log.info("Read-model build started")
            try:
                result = await asyncio.wait_for(
                    self.builder.build(rt.scope), timeout=self.build_timeout_seconds
                )
            except asyncio.CancelledError:
                log.warning("Read-model build cancelled")
                raise
            except asyncio.TimeoutError:
                self._on_failure(rt, f"build exceeded {self.build_timeout_seconds}s timeout", loop.time() - started)
            except Exception as e:
                self._on_failure(rt, f"{type(e).__name__}: {e}", loop.time() - started)
            else:
                self._on_success(rt, result, loop.time() - started)

    def _on_success(self, rt: _ScopeRuntime, result: Any, elapsed: float) -> None:
        BUILD_CYCLES.labels(outcome="completed").inc()
        BUILD_DURATION.observe(elapsed)
        rt.completed_cycles += 1
        rt.consecutive_failures = 0
        rt.backoff_until = None
        rt.last_success_at = datetime.utcnow()
        rt.last_error = None
        rt.task = None

        logger.info(
            "Read-model build completed",
            scope=rt.scope,
            version=getattr(result, "version", None),
            duration_ms=round(elapsed * 1000, 2),
            followup="forced" if rt.forced else ("debounce" if rt.dirty else None),
        )
        self._next_after_build(rt, delay=self.debounce_seconds)

    def _on_failure(self, rt: _ScopeRuntime, error: str, elapsed: float) -> None:
        BUILD_CYCLES.labels(outcome="failed").inc()
        BUILD_DURATION.observe(elapsed)
        rt.failed_cycles += 1
        rt.consecutive_failures += 1
        rt.last_error = error
        rt.task = None

        delay = self.backoff_delay(rt.consecutive_failures)
        rt.backoff_until = asyncio.get_running_loop().time() + delay
        logger.error(
            "Read-model build failed, previous version retained",
            scope=rt.scope,
            error=error,
            consecutive_failures=rt.consecutive_failures,
            retry_in_seconds=delay,
        )
        # The retry covers any trigger recorded during the failed build
        rt.dirty = True
        self._next_after_build(rt, delay=delay)

    def _next_after_build(self, rt: _ScopeRuntime, delay: float) -> None:
        if self._closed:
            self._set_idle(rt)
        elif rt.forced:
            self._start_build(rt)
        elif rt.dirty:
            self._arm(rt, delay)
        else:
            self._set_idle(rt)
        self._update_state_gauge()

    def _update_state_gauge(self) -> None:
        counts = {state: 0 for state in ScopeState}
        for rt in self._scopes.values():
            counts[rt.state] += 1
        for state, count in counts.items():
            SCOPES_BY_STATE.labels(state=state.value).set(count)
