"""Tests for RunHistoryStore — JSON file persistence and locking."""

from __future__ import annotations

import json
import os
import time
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from src.scheduler.errors import RunHistoryError
from src.scheduler.history import RunHistoryStore
from src.scheduler.models import RunRecord

if TYPE_CHECKING:
    from pathlib import Path

T = datetime(2025, 6, 2, 10, 0, tzinfo=UTC)


def _record(
    task_name: str = "daily-report",
    started_at: datetime = T,
    status: str = "running",
    **kwargs,
) -> RunRecord:
    if status != "running":
        kwargs.setdefault("completed_at", started_at + timedelta(seconds=30))
    return RunRecord(task_name=task_name, started_at=started_at, status=status, **kwargs)


# -- load / append -------------------------------------------------------------


def test_missing_file_is_empty(history: RunHistoryStore) -> None:
    assert history.load_all() == []
    assert history.recent() == []
    assert history.last_run_at("daily-report") is None


def test_append_and_load(history: RunHistoryStore) -> None:
    history.append(_record(triggered_by="catchup"))

    records = history.load_all()
    assert len(records) == 1
    assert records[0].task_name == "daily-report"
    assert records[0].status == "running"
    assert records[0].triggered_by == "catchup"
    assert records[0].started_at == T


def test_file_uses_camel_case_keys(history: RunHistoryStore) -> None:
    history.append(_record(status="completed"))

    data = json.loads(history.path.read_text())
    assert isinstance(data, list)
    assert set(data[0]) == {"taskName", "startedAt", "completedAt", "status", "triggeredBy"}


def test_append_trims_oldest(tmp_path: Path) -> None:
    store = RunHistoryStore(tmp_path / "h.json", max_records=3, lock_retry_delay=0)
    for i in range(5):
        store.append(_record(f"task-{i}", T + timedelta(minutes=i)))

    names = [r.task_name for r in store.load_all()]
    assert names == ["task-2", "task-3", "task-4"]


def test_no_lock_or_temp_files_left_behind(history: RunHistoryStore) -> None:
    history.append(_record())
    leftovers = [p.name for p in history.path.parent.iterdir() if p != history.path]
    assert leftovers == []


# -- update_latest -------------------------------------------------------------


def test_round_trip_running_to_completed(history: RunHistoryStore) -> None:
    history.append(_record())
    done = T + timedelta(minutes=2)
    assert history.update_latest("daily-report", status="completed", completed_at=done)

    (record,) = history.load_all()
    assert record.status == "completed"
    assert record.completed_at == done
    assert record.error is None


def test_update_latest_finishes_newest_running_record(history: RunHistoryStore) -> None:
    history.append(_record(started_at=T))
    history.append(_record(started_at=T + timedelta(hours=1)))
    history.append(_record("other", started_at=T + timedelta(hours=2)))

    done = T + timedelta(hours=1, minutes=5)
    assert history.update_latest("daily-report", status="failed", completed_at=done, error="boom")

    first, second, other = history.load_all()
    assert first.status == "running"
    assert second.status == "failed"
    assert second.completed_at == done
    assert second.error == "boom"
    assert other.status == "running"


def test_update_latest_skips_finished_records(history: RunHistoryStore) -> None:
    history.append(_record(started_at=T))
    history.append(_record(started_at=T + timedelta(hours=1), status="skipped"))

    assert history.update_latest("daily-report", status="completed", completed_at=T)
    first, second = history.load_all()
    assert first.status == "completed"
    assert second.status == "skipped"


def test_update_latest_without_running_record_is_noop(history: RunHistoryStore) -> None:
    history.append(_record(status="completed"))
    before = history.path.read_text()

    assert history.update_latest("daily-report", status="failed") is False
    assert history.update_latest("unknown", status="failed") is False
    assert history.path.read_text() == before


def test_update_latest_on_empty_history_creates_nothing(history: RunHistoryStore) -> None:
    assert history.update_latest("daily-report", status="completed") is False
    assert not history.path.exists()


# -- Corruption ----------------------------------------------------------------


def test_corrupt_file_raises_and_is_not_overwritten(history: RunHistoryStore) -> None:
    history.path.write_text("{not json")

    with pytest.raises(RunHistoryError, match="not valid JSON"):
        history.load_all()
    with pytest.raises(RunHistoryError):
        history.append(_record())
    assert history.path.read_text() == "{not json"


def test_non_array_file_raises(history: RunHistoryStore) -> None:
    history.path.write_text('{"taskName": "x"}')
    with pytest.raises(RunHistoryError, match="JSON array"):
        history.load_all()


def test_empty_file_is_empty_history(history: RunHistoryStore) -> None:
    history.path.write_text("  \n")
    assert history.load_all() == []


def test_malformed_records_are_skipped(history: RunHistoryStore) -> None:
    valid = _record(status="completed").to_json_dict()
    history.path.write_text(json.dumps([{"taskName": "broken"}, valid, "junk"]))

    records = history.load_all()
    assert [r.task_name for r in records] == ["daily-report"]


# -- Queries -------------------------------------------------------------------


def test_recent_is_newest_first(history: RunHistoryStore) -> None:
    history.append(_record("a", T))
    history.append(_record("b", T + timedelta(hours=2)))
    history.append(_record("a", T + timedelta(hours=1)))

    assert [r.started_at for r in history.recent()] == [
        T + timedelta(hours=2),
        T + timedelta(hours=1),
        T,
    ]
    assert len(history.recent(2)) == 2


def test_recent_filters_by_task(history: RunHistoryStore) -> None:
    history.append(_record("a", T))
    history.append(_record("b", T + timedelta(hours=1)))

    assert [r.task_name for r in history.recent(task_name="a")] == ["a"]
    assert history.recent(task_name="missing") == []


def test_last_runs(history: RunHistoryStore) -> None:
    history.append(_record("a", T + timedelta(hours=1), status="completed"))
    history.append(_record("a", T))
    history.append(_record("b", T + timedelta(hours=3), status="skipped"))

    assert history.last_runs() == {"a": T + timedelta(hours=1), "b": T + timedelta(hours=3)}
    assert history.last_run_at("a") == T + timedelta(hours=1)


# -- Locking -------------------------------------------------------------------


def _lock_path(store: RunHistoryStore) -> Path:
    return store.path.with_name(store.path.name + ".lock")


def test_stale_lock_is_broken(tmp_path: Path) -> None:
    store = RunHistoryStore(tmp_path / "h.json", lock_stale_seconds=30, lock_retry_delay=0)
    lock = _lock_path(store)
    lock.write_text("12345")
    old = time.time() - 120
    os.utime(lock, (old, old))

    store.append(_record())

    assert len(store.load_all()) == 1
    assert not lock.exists()


def test_held_lock_times_out(tmp_path: Path) -> None:
    store = RunHistoryStore(tmp_path / "h.json", lock_retries=2, lock_retry_delay=0)
    lock = _lock_path(store)
    lock.write_text("12345")

    with pytest.raises(RunHistoryError, match="lock"):
        store.append(_record())
    assert lock.exists()
    assert not store.path.exists()


# -- Singleton -----------------------------------------------------------------


def test_get_returns_shared_instance() -> None:
    RunHistoryStore._reset()
    try:
        assert RunHistoryStore.get() is RunHistoryStore.get()
    finally:
        RunHistoryStore._reset()
