"""Tests for the RunAtLoad guard."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

from src.scheduler.errors import RunHistoryError
from src.scheduler.guard import RunAtLoadGuard
from src.scheduler.history import RunHistoryStore
from src.scheduler.models import RunRecord, ScheduledEntry

NOW = datetime(2025, 6, 2, 10, 30, tzinfo=UTC)


def _make_entry(scheduled_at: datetime, **kwargs) -> ScheduledEntry:
    return ScheduledEntry(
        name="hourly", schedule="0 * * * *", scheduled_at=scheduled_at, **kwargs
    )


def test_brand_new_task_is_not_triggered(history):
    guard = RunAtLoadGuard(history, tz=UTC)
    decision = guard.check(_make_entry(NOW - timedelta(seconds=5)), NOW)
    assert decision.should_run is False
    assert decision.reason == "no-missed-run"


def test_missed_slot_after_registration_is_triggered(history):
    guard = RunAtLoadGuard(history, tz=UTC)
    decision = guard.check(_make_entry(NOW - timedelta(hours=2)), NOW)
    assert decision.should_run is True
    assert decision.scheduled_at == datetime(2025, 6, 2, 10, 0, tzinfo=UTC)


def test_catch_up_flag_is_not_required(history):
    guard = RunAtLoadGuard(history, tz=UTC)
    entry = _make_entry(NOW - timedelta(hours=2), catch_up_on_startup=False)
    assert guard.check(entry, NOW).should_run is True


def test_effective_last_run_prefers_later_history(history):
    registered = NOW - timedelta(days=1)
    ran = NOW - timedelta(minutes=20)
    history.append(RunRecord(task_name="hourly", started_at=ran, completed_at=ran, status="completed"))

    guard = RunAtLoadGuard(history, tz=UTC)
    assert guard.effective_last_run(_make_entry(registered)) == ran
    assert guard.check(_make_entry(registered), NOW).should_run is False


def test_effective_last_run_ignores_runs_before_registration(history):
    ran = NOW - timedelta(days=3)
    registered = NOW - timedelta(days=1)
    history.append(RunRecord(task_name="hourly", started_at=ran, completed_at=ran, status="completed"))

    guard = RunAtLoadGuard(history, tz=UTC)
    assert guard.effective_last_run(_make_entry(registered)) == registered


def test_unreadable_history_falls_back_to_registration_time():
    history = MagicMock(spec=RunHistoryStore)
    history.last_run_at.side_effect = RunHistoryError("corrupt")
    registered = NOW - timedelta(hours=2)

    guard = RunAtLoadGuard(history, tz=UTC, clock=lambda: NOW)
    assert guard.effective_last_run(_make_entry(registered)) == registered
    assert guard.check(_make_entry(registered)).should_run is True


def test_brand_new_task_with_stale_last_slot_is_not_triggered(history):
    # Daily 09:00 task registered at 10:30; its last slot is past the window anyway.
    entry = ScheduledEntry(
        name="daily", schedule="0 9 * * *", scheduled_at=NOW, max_catch_up_age_seconds=600
    )
    guard = RunAtLoadGuard(history, tz=UTC)
    assert guard.check(entry, NOW).should_run is False
