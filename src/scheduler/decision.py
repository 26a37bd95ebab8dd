"""Catch-up decision — pure check of whether a task missed its latest slot."""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.scheduler.cron import last_occurrence_before
from src.scheduler.errors import InvalidScheduleError
from src.scheduler.models import CatchUpDecision, ensure_utc

if TYPE_CHECKING:
    from datetime import datetime, tzinfo

    from src.scheduler.models import ScheduledTask

DEFAULT_MAX_CATCH_UP_AGE_SECONDS = 60 * 60 * 24

REASON_DISABLED = "disabled"
REASON_NO_SCHEDULE = "no-schedule"
REASON_NO_MISSED_RUN = "no-missed-run"
REASON_EXCEEDED_MAX_AGE = "exceeded-max-age"
REASON_MISSED_RUN = "missed-run-detected"


def decide_catch_up(
    task: ScheduledTask,
    last_run: datetime | None,
    now: datetime,
    *,
    default_max_age: int = DEFAULT_MAX_CATCH_UP_AGE_SECONDS,
    tz: tzinfo | None = None,
) -> CatchUpDecision:
    """Decide whether *task* missed its most recent slot and should run now.

    Pure: no I/O and no clock reads. The schedule is evaluated in *tz*
    (default: the zone of *now*); naive datetimes are taken as UTC.
    A missing ``max_catch_up_age_seconds`` means *default_max_age*, never
    unbounded.
    """
    if not task.catch_up_on_startup:
        return CatchUpDecision(should_run=False, reason=REASON_DISABLED)
    if not task.schedule:
        return CatchUpDecision(should_run=False, reason=REASON_NO_SCHEDULE)

    try:
        missed = last_occurrence_before(task.schedule, now, tz)
    except InvalidScheduleError:
        return CatchUpDecision(should_run=False, reason=REASON_NO_SCHEDULE)
    if missed is None:
        return CatchUpDecision(should_run=False, reason=REASON_NO_MISSED_RUN)

    # Also covers clock skew: a last run later than now is later than missed.
    if last_run is not None and ensure_utc(last_run) >= missed:
        return CatchUpDecision(should_run=False, reason=REASON_NO_MISSED_RUN)

    max_age = task.max_catch_up_age_seconds or default_max_age
    age = (ensure_utc(now) - missed).total_seconds()
    if age > max_age:
        return CatchUpDecision(
            should_run=False, reason=REASON_EXCEEDED_MAX_AGE, scheduled_at=missed
        )

    return CatchUpDecision(should_run=True, reason=REASON_MISSED_RUN, scheduled_at=missed)
