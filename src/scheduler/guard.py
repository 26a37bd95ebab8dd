"""RunAtLoad guard — tell genuine scheduled runs from launchd load-time triggers.

launchd fires a job with ``RunAtLoad`` whenever its plist is (re)loaded,
including the moment scheduling is first set up.  Every scheduler-initiated
invocation therefore re-runs the catch-up decision (with catch-up forced on)
and proceeds only when a slot was actually missed since the task last ran or
was registered.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.scheduler.decision import DEFAULT_MAX_CATCH_UP_AGE_SECONDS, decide_catch_up
from src.scheduler.errors import RunHistoryError
from src.scheduler.models import utc_now

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime, tzinfo

    from src.scheduler.history import RunHistoryStore
    from src.scheduler.models import CatchUpDecision, ScheduledEntry

logger = logging.getLogger(__name__)


class RunAtLoadGuard:
    """Filters scheduler-initiated invocations through the catch-up decision."""

    def __init__(
        self,
        history: RunHistoryStore,
        *,
        default_max_age: int = DEFAULT_MAX_CATCH_UP_AGE_SECONDS,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._history = history
        self._default_max_age = default_max_age
        self._tz = tz
        self._clock = clock

    def effective_last_run(self, entry: ScheduledEntry) -> datetime:
        """Later of the last recorded run and the registration time.

        A task never catches up slots from before it was scheduled.  An
        unreadable history falls back to the registration time alone.
        """
        try:
            last_run = self._history.last_run_at(entry.name)
        except RunHistoryError as exc:
            logger.warning("Run history unavailable for %s, using registration time: %s", entry.name, exc)
            last_run = None
        if last_run is None or last_run < entry.scheduled_at:
            return entry.scheduled_at
        return last_run

    def check(self, entry: ScheduledEntry, now: datetime | None = None) -> CatchUpDecision:
        now = now or self._clock()
        forced = entry.model_copy(update={"catch_up_on_startup": True})
        decision = decide_catch_up(
            forced,
            self.effective_last_run(entry),
            now,
            default_max_age=self._default_max_age,
            tz=self._tz,
        )
        if decision.should_run:
            logger.info(
                "Scheduled invocation of %s accepted (slot %s)",
                entry.name,
                decision.scheduled_at.isoformat() if decision.scheduled_at else "?",
            )
        else:
            logger.info(
                "Skipping scheduler-initiated run of %s: %s", entry.name, decision.reason
            )
        return decision
