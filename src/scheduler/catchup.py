"""CatchUpOrchestrator — find scheduled tasks that missed a run and re-run them."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from src.scheduler.decision import DEFAULT_MAX_CATCH_UP_AGE_SECONDS, decide_catch_up
from src.scheduler.errors import RunHistoryError
from src.scheduler.guard import RunAtLoadGuard
from src.scheduler.models import (
    CATCHUP,
    COMPLETED,
    FAILED,
    RUNNING,
    SCHEDULED,
    SKIPPED,
    CatchUpCandidate,
    RunOutcome,
    RunRecord,
    utc_now,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence
    from datetime import datetime, tzinfo

    from src.scheduler.executor import TaskExecutor
    from src.scheduler.history import RunHistoryStore
    from src.scheduler.models import RunStatus, ScheduledEntry, ScheduledTask, TriggeredBy
    from src.scheduler.port import SchedulerPort

logger = logging.getLogger(__name__)


class CatchUpOrchestrator:
    """Finds scheduled tasks that missed a run and drives their re-execution.

    Args:
        scheduler: SchedulerPort listing the registered tasks.
        history: RunHistoryStore read for last runs and written for outcomes.
        executor: TaskExecutor that performs the actual run.
        default_max_age: Catch-up window for tasks without their own.
        tz: Zone cron expressions are evaluated in (None: the zone of "now").
        clock: Returns the current time (injectable for tests).
    """

    def __init__(
        self,
        scheduler: SchedulerPort,
        history: RunHistoryStore,
        executor: TaskExecutor,
        *,
        default_max_age: int = DEFAULT_MAX_CATCH_UP_AGE_SECONDS,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._scheduler = scheduler
        self._history = history
        self._executor = executor
        self._default_max_age = default_max_age
        self._tz = tz
        self._clock = clock
        self._guard = RunAtLoadGuard(history, default_max_age=default_max_age, tz=tz, clock=clock)

    @property
    def guard(self) -> RunAtLoadGuard:
        return self._guard

    # -- Detection -------------------------------------------------------------

    async def get_candidates(self, now: datetime | None = None) -> list[CatchUpCandidate]:
        """Return enabled catch-up tasks whose most recent slot was missed.

        A task that fails to evaluate is logged and left out. A history read
        failure propagates, since the listing would otherwise be wrong.
        """
        now = now or self._clock()
        entries = await self._scheduler.list_scheduled()
        eligible = [e for e in entries if e.enabled and e.catch_up_on_startup]
        if not eligible:
            return []

        last_runs = self._history.last_runs()
        candidates: list[CatchUpCandidate] = []
        for entry in eligible:
            try:
                decision = decide_catch_up(
                    entry,
                    last_runs.get(entry.name),
                    now,
                    default_max_age=self._default_max_age,
                    tz=self._tz,
                )
            except Exception:
                logger.warning("Catch-up evaluation failed for %s", entry.name, exc_info=True)
                continue

            if decision.should_run:
                logger.info(
                    "Missed run detected: %s (scheduled at %s)",
                    entry.name,
                    decision.scheduled_at.isoformat() if decision.scheduled_at else "?",
                )
                candidates.append(CatchUpCandidate(task=entry, decision=decision))
            else:
                logger.debug("No catch-up for %s: %s", entry.name, decision.reason)

        if candidates:
            logger.info("Found %d task(s) needing catch-up", len(candidates))
        return candidates

    # -- Execution -------------------------------------------------------------

    def _record_start(self, task_name: str, started_at: datetime, triggered_by: TriggeredBy) -> None:
        try:
            self._history.append(
                RunRecord(
                    task_name=task_name,
                    started_at=started_at,
                    status=RUNNING,
                    triggered_by=triggered_by,
                )
            )
        except RunHistoryError as exc:
            logger.warning("Could not record start of %s: %s", task_name, exc)

    def _record_finish(
        self, task_name: str, status: RunStatus, completed_at: datetime, error: str | None
    ) -> None:
        try:
            self._history.update_latest(
                task_name, status=status, completed_at=completed_at, error=error
            )
        except RunHistoryError as exc:
            logger.warning("Could not record %s result of %s: %s", status, task_name, exc)

    async def run_task(
        self, task: ScheduledTask, triggered_by: TriggeredBy, *, record: bool = True
    ) -> RunOutcome:
        """Execute one task and book its start and outcome in the run history.

        History failures never stop the run. Executor failures are captured
        in the returned outcome rather than raised.
        """
        started_at = self._clock()
        if record:
            self._record_start(task.name, started_at, triggered_by)

        logger.info("Running task '%s' (%s) via %s", task.name, triggered_by, task.executor_id)
        status: RunStatus = COMPLETED
        error: str | None = None
        try:
            await self._executor.execute(task, triggered_by)
        except Exception as exc:
            logger.exception("Task failed: '%s' (%s)", task.name, triggered_by)
            status = FAILED
            error = str(exc) or type(exc).__name__
        else:
            logger.info("Task completed: '%s' (%s)", task.name, triggered_by)

        completed_at = self._clock()
        self._record_finish(task.name, status, completed_at, error)
        return RunOutcome(
            task_name=task.name,
            status=status,
            started_at=started_at,
            completed_at=completed_at,
            error=error,
        )

    async def run_catch_up_for(
        self, tasks: Sequence[ScheduledTask], *, records_pre_created: bool = False
    ) -> list[RunOutcome]:
        """Run every task concurrently as a catch-up; one failure never aborts the batch.

        Pass *records_pre_created* when the caller already appended the
        ``running`` records (e.g. before handing off to a background task).
        """
        if not tasks:
            return []
        outcomes = await asyncio.gather(
            *(self.run_task(t, CATCHUP, record=not records_pre_created) for t in tasks)
        )
        failed = sum(1 for o in outcomes if not o.ok)
        logger.info(
            "Catch-up finished: %d succeeded, %d failed", len(outcomes) - failed, failed
        )
        return list(outcomes)

    async def reconcile(self, now: datetime | None = None) -> list[RunOutcome]:
        """Find every candidate and catch all of them up."""
        candidates = await self.get_candidates(now)
        return await self.run_catch_up_for([c.task for c in candidates])

    def skip(self, candidates: Iterable[CatchUpCandidate], now: datetime | None = None) -> int:
        """Record declined catch-ups so the same missed slot is not offered again."""
        now = now or self._clock()
        recorded = 0
        for candidate in candidates:
            try:
                self._history.append(
                    RunRecord(
                        task_name=candidate.task.name,
                        started_at=now,
                        completed_at=now,
                        status=SKIPPED,
                        triggered_by=CATCHUP,
                    )
                )
            except RunHistoryError as exc:
                logger.warning("Could not record skipped catch-up of %s: %s", candidate.task.name, exc)
                continue
            recorded += 1
        return recorded

    async def run_scheduled(
        self, entry: ScheduledEntry, now: datetime | None = None
    ) -> RunOutcome | None:
        """Handle an OS-scheduler invocation, filtered through the RunAtLoad guard.

        Returns None when the invocation was not a genuine due run; nothing
        is executed or recorded in that case.
        """
        if not entry.enabled:
            logger.info("Skipping scheduler-initiated run of disabled task %s", entry.name)
            return None
        decision = self._guard.check(entry, now)
        if not decision.should_run:
            return None
        return await self.run_task(entry, SCHEDULED)
