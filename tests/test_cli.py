"""Tests for the catchup command-line interface."""

from __future__ import annotations

import shlex
import sys
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.cli.main import format_missed_time, main
from src.scheduler.history import RunHistoryStore
from src.scheduler.models import RunRecord, ScheduledEntry
from src.scheduler.shell import CommandResult


@pytest.fixture
def cli_config(config):
    config.executor_command = f"{shlex.quote(sys.executable)} -c pass"
    return config


def _register(config, name: str = "hourly", **kwargs) -> ScheduledEntry:
    """Write schedule metadata directly, as a backend would."""
    defaults = {
        "schedule": "0 * * * *",
        "catch_up_on_startup": True,
        "scheduled_at": datetime.now(UTC) - timedelta(days=2),
    }
    defaults.update(kwargs)
    entry = ScheduledEntry(name=name, **defaults)
    config.schedules_dir.mkdir(parents=True, exist_ok=True)
    (config.schedules_dir / f"{name}.json").write_text(entry.model_dump_json(by_alias=True))
    return entry


def _history(config) -> RunHistoryStore:
    return RunHistoryStore(config.history_path)


# -- format_missed_time --------------------------------------------------------


class TestFormatMissedTime:
    NOW = datetime(2025, 6, 2, 15, 0, tzinfo=UTC)

    def test_today(self):
        slot = datetime(2025, 6, 2, 9, 0, tzinfo=UTC)
        assert format_missed_time(slot, self.NOW, UTC) == "missed 9:00 AM today"

    def test_yesterday(self):
        slot = datetime(2025, 6, 1, 21, 30, tzinfo=UTC)
        assert format_missed_time(slot, self.NOW, UTC) == "missed 9:30 PM yesterday"

    def test_older(self):
        slot = datetime(2025, 5, 28, 0, 15, tzinfo=UTC)
        assert format_missed_time(slot, self.NOW, UTC) == "missed 2025-05-28 12:15 AM"

    def test_unknown(self):
        assert format_missed_time(None, self.NOW, UTC) == "unknown time"


# -- Commands ------------------------------------------------------------------


def test_unsupported_platform_exit_code(config, capsys):
    config.scheduler_backend = "unsupported"
    assert main(["scheduled"], config=config) == 2
    assert "not supported" in capsys.readouterr().err


def test_schedule_and_list(config, capsys):
    mock_run = AsyncMock(return_value=CommandResult(0, "", ""))
    with patch("src.scheduler.crontab.run_command", mock_run):
        code = main(
            ["schedule", "daily-report", "--cron", "0 9 * * *", "--catch-up"], config=config
        )
    assert code == 0
    assert (config.schedules_dir / "daily-report.json").exists()

    assert main(["scheduled"], config=config) == 0
    out = capsys.readouterr().out
    assert "daily-report (every day at 9:00 AM)" in out
    assert "Total: 1 scheduled task(s)" in out


def test_schedule_rejects_invalid_cron(config, capsys):
    mock_run = AsyncMock(return_value=CommandResult(0, "", ""))
    with patch("src.scheduler.crontab.run_command", mock_run):
        assert main(["schedule", "bad", "--cron", "0 9 * *"], config=config) == 1
    assert "expected 5 fields" in capsys.readouterr().err


def test_schedule_rejects_invalid_name(config):
    assert main(["schedule", "bad name", "--cron", "0 9 * * *"], config=config) == 1


def test_history_empty(config, capsys):
    assert main(["history"], config=config) == 0
    assert "No run history found." in capsys.readouterr().out


def test_history_lists_runs(config, capsys):
    started = datetime(2025, 6, 2, 9, 0, tzinfo=UTC)
    store = _history(config)
    store.append(
        RunRecord(
            task_name="daily-report",
            started_at=started,
            completed_at=started + timedelta(seconds=42),
            status="failed",
            triggered_by="catchup",
            error="exit 1",
        )
    )
    assert main(["history", "daily-report"], config=config) == 0
    out = capsys.readouterr().out
    assert "daily-report (catchup) - failed (42s)" in out
    assert "Error: exit 1" in out


def test_corrupt_history_exit_code(config, capsys):
    config.history_path.parent.mkdir(parents=True)
    config.history_path.write_text("not json")
    assert main(["history"], config=config) == 1
    assert "Run history error" in capsys.readouterr().err


def test_candidates_and_catchup_all(cli_config, capsys):
    _register(cli_config)

    assert main(["candidates"], config=cli_config) == 0
    assert "1. hourly (every hour)" in capsys.readouterr().out

    assert main(["catchup", "--all"], config=cli_config) == 0
    out = capsys.readouterr().out
    assert "✓ hourly" in out
    (record,) = _history(cli_config).load_all()
    assert record.status == "completed"
    assert record.triggered_by == "catchup"

    assert main(["candidates"], config=cli_config) == 0
    assert "No tasks need catch-up" in capsys.readouterr().out


def test_catchup_named_task(cli_config, capsys):
    _register(cli_config, "a")
    _register(cli_config, "b")

    assert main(["catchup", "b", "missing"], config=cli_config) == 0
    out = capsys.readouterr().out
    assert "Not a catch-up candidate: missing" in out
    assert [r.task_name for r in _history(cli_config).load_all()] == ["b"]


def test_catchup_failure_exit_code(cli_config):
    cli_config.executor_command = f"{shlex.quote(sys.executable)} -c 'raise SystemExit(1)'"
    _register(cli_config)
    assert main(["catchup", "--all"], config=cli_config) == 1
    (record,) = _history(cli_config).load_all()
    assert record.status == "failed"


def test_catchup_declined_records_skip(cli_config, monkeypatch, capsys):
    _register(cli_config)
    monkeypatch.setattr("sys.stdin", MagicMock(isatty=lambda: True))
    monkeypatch.setattr("builtins.input", lambda prompt="": "n")

    assert main(["catchup"], config=cli_config) == 0
    assert "Skipped" in capsys.readouterr().out
    (record,) = _history(cli_config).load_all()
    assert record.status == "skipped"


def test_catchup_non_interactive_without_flags_runs_nothing(cli_config, monkeypatch):
    _register(cli_config)
    monkeypatch.setattr("sys.stdin", MagicMock(isatty=lambda: False))
    assert main(["catchup"], config=cli_config) == 0
    assert _history(cli_config).load_all() == []


def test_run_manual(cli_config, capsys):
    _register(cli_config, catch_up_on_startup=False)
    assert main(["run", "hourly"], config=cli_config) == 0
    (record,) = _history(cli_config).load_all()
    assert record.triggered_by == "manual"


def test_run_scheduled_ignores_load_time_trigger(cli_config):
    _register(cli_config, scheduled_at=datetime.now(UTC))
    assert main(["run", "hourly", "--scheduled"], config=cli_config) == 0
    assert _history(cli_config).load_all() == []


def test_run_unknown_task(config, capsys):
    assert main(["run", "missing"], config=config) == 1
    assert "not scheduled" in capsys.readouterr().err
