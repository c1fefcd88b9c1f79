"""Plan scheduler -- scans active plans and executes the due ones.

Per-plan state machine:
  IDLE -> DUE        when now >= last_run + interval (never-run plans are due at once)
  DUE -> EXECUTING   under the plan's exclusive lock; an executing plan is skipped
  EXECUTING -> IDLE  on a completed or partial tick, last_run advances to now
  EXECUTING -> IDLE  on a failed tick, last_run is kept so the plan stays due
  STOPPED            terminal, never due again

Each due plan runs in its own task so a slow plan never delays the others.
A semaphore bounds how many plans execute at once.
"""

import asyncio
import time
from collections.abc import Callable
from enum import Enum

from dca.config import SchedulerSettings
from dca.data.store import PlanStore
from dca.exceptions import PlanNotFound
from dca.logging import get_logger
from dca.models import Plan, PlanStatus, TickOutcome
from dca.pipeline import ExecutionPipeline, TickResult

logger = get_logger(__name__)


class PlanState(str, Enum):
    IDLE = "idle"
    DUE = "due"
    EXECUTING = "executing"
    STOPPED = "stopped"


class PlanRunner:
    """Fixed-interval driver that executes due plans.

    Args:
        store: Plan persistence.
        pipeline: Execution pipeline for one plan tick.
        settings: Tick interval and concurrency bound.
        clock: Time source returning Unix seconds.
    """

    def __init__(
        self,
        store: PlanStore,
        pipeline: ExecutionPipeline,
        settings: SchedulerSettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._pipeline = pipeline
        self._settings = settings
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_plans)
        self._in_flight: set[asyncio.Task] = set()  # type: ignore[type-arg]
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]
        self._last_tick_at: float | None = None
        self._outcomes: dict[TickOutcome, int] = {outcome: 0 for outcome in TickOutcome}
        self._skipped = 0

    def lock_for(self, plan_id: str) -> asyncio.Lock:
        """Exclusive execution lock of a plan (shared with manual operations)."""
        lock = self._locks.get(plan_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[plan_id] = lock
        return lock

    def state_of(self, plan: Plan, now: float | None = None) -> PlanState:
        if plan.status is PlanStatus.STOPPED:
            return PlanState.STOPPED
        if self.lock_for(plan.id).locked():
            return PlanState.EXECUTING
        if plan.is_due(self._clock() if now is None else now):
            return PlanState.DUE
        return PlanState.IDLE

    async def tick(self, now: float | None = None) -> list[asyncio.Task]:  # type: ignore[type-arg]
        """Scan active plans and start a task for each due one.

        Returns the started tasks; the scheduler loop does not await them.
        """
        current = self._clock() if now is None else now
        self._last_tick_at = current
        plans = await self._store.list_active_plans()

        started: list[asyncio.Task] = []  # type: ignore[type-arg]
        for plan in plans:
            if not plan.is_due(current):
                continue
            if self.lock_for(plan.id).locked():
                self._skipped += 1
                logger.warning("plan_tick_skipped_executing", plan_id=plan.id)
                continue
            logger.info("plan_due", plan_id=plan.id, due_at=plan.due_at)
            task = asyncio.create_task(self.run_plan(plan.id, current))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            started.append(task)

        logger.debug("scheduler_tick", active=len(plans), started=len(started))
        return started

    async def run_plan(self, plan_id: str, now: float | None = None) -> TickResult | None:
        """Execute one tick of a plan if it is still due and not already executing.

        Returns None when the plan was skipped.
        """
        lock = self.lock_for(plan_id)
        if lock.locked():
            self._skipped += 1
            logger.warning("plan_tick_skipped_executing", plan_id=plan_id)
            return None

        async with lock:
            try:
                plan = await self._store.get_plan(plan_id)
            except PlanNotFound:
                logger.warning("plan_vanished", plan_id=plan_id)
                return None

            current = self._clock() if now is None else now
            # Covers plans stopped or already advanced since the scan
            if not plan.is_due(current):
                return None

            async with self._semaphore:
                result = await self._execute(plan)

            self._outcomes[result.outcome] += 1
            if result.outcome in (TickOutcome.COMPLETED, TickOutcome.PARTIAL):
                await self._store.update_last_run(plan.id, current)
                logger.info(
                    "plan_tick_finished",
                    plan_id=plan.id,
                    outcome=result.outcome.value,
                    last_run_at=current,
                )
            else:
                logger.error(
                    "plan_tick_failed",
                    plan_id=plan.id,
                    error=result.error,
                    note="Plan stays due and is retried next tick",
                )
            return result

    async def _execute(self, plan: Plan) -> TickResult:
        try:
            return await self._pipeline.execute(plan, plan.due_at)
        except Exception as e:
            logger.error(
                "plan_execution_error",
                plan_id=plan.id,
                error=str(e) or type(e).__name__,
                exc_info=True,
            )
            return TickResult(
                plan_id=plan.id,
                tick_key="",
                outcome=TickOutcome.FAILED,
                error=str(e) or type(e).__name__,
            )

    async def start(self) -> None:
        """Start the scheduler loop as a background task."""
        if self._running:
            logger.warning("plan_runner_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "plan_runner_started",
            tick_interval=self._settings.tick_interval_seconds,
            max_concurrent=self._settings.max_concurrent_plans,
        )

    async def stop(self) -> None:
        """Stop scanning and wait for in-flight plan executions to finish."""
        logger.info("plan_runner_stopping", in_flight=len(self._in_flight))
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.info("plan_runner_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(self._settings.tick_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("scheduler_tick_error", error=str(e), exc_info=True)
                await asyncio.sleep(self._settings.tick_interval_seconds)

    @property
    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> dict:
        """Return scheduler status.

        Returns:
            Dict with: running, last_tick_at, in_flight, executing_plans,
            outcomes (count per tick outcome), skipped.
        """
        return {
            "running": self._running,
            "last_tick_at": self._last_tick_at,
            "in_flight": len(self._in_flight),
            "executing_plans": sorted(pid for pid, lock in self._locks.items() if lock.locked()),
            "outcomes": {outcome.value: count for outcome, count in self._outcomes.items()},
            "skipped": self._skipped,
        }
