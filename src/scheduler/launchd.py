"""launchd backend — one LaunchAgent plist per scheduled task (macOS)."""

from __future__ import annotations

import contextlib
import logging
import plistlib
from pathlib import Path
from typing import TYPE_CHECKING

from src.scheduler.errors import InvalidScheduleError, SchedulerCommandError
from src.scheduler.port import SchedulerKind, SchedulerPort, check_task_name
from src.scheduler.shell import run_command

if TYPE_CHECKING:
    from src.scheduler.models import ScheduledEntry, ScheduledTask

logger = logging.getLogger(__name__)

LABEL_PREFIX = "com.catchup.task."

# (launchd key, cron field name) in cron field order.
_CALENDAR_FIELDS = [
    ("Minute", "minute"),
    ("Hour", "hour"),
    ("Day", "day-of-month"),
    ("Month", "month"),
    ("Weekday", "day-of-week"),
]


def _parse_field(value: str, field_name: str) -> int | None:
    """Return the integer for a cron field, or None for ``*``.

    launchd's StartCalendarInterval only takes plain integers, so steps,
    ranges and lists are rejected.
    """
    if value == "*":
        return None
    if "/" in value or "-" in value or "," in value:
        msg = (
            f"Unsupported cron expression {value!r} in {field_name} field: launchd "
            f"only accepts a plain integer or '*'"
        )
        raise InvalidScheduleError(msg)
    if not value.isdigit():
        msg = f"Invalid cron value {value!r} in {field_name} field: expected an integer or '*'"
        raise InvalidScheduleError(msg)
    return int(value)


def cron_to_calendar_interval(schedule: str) -> list[dict[str, int]]:
    """Convert a 5-field cron expression to launchd StartCalendarInterval dicts."""
    parts = schedule.split()
    if len(parts) != 5:
        msg = f"Invalid cron expression {schedule!r}: expected 5 fields"
        raise InvalidScheduleError(msg)
    interval: dict[str, int] = {}
    for value, (key, field_name) in zip(parts, _CALENDAR_FIELDS, strict=True):
        parsed = _parse_field(value, field_name)
        if parsed is not None:
            # cron and launchd both number weekdays from 0 = Sunday.
            interval[key] = parsed
    return [interval]


def build_plist(
    entry: ScheduledEntry,
    program_arguments: list[str],
    stdout_path: Path,
    stderr_path: Path,
) -> bytes:
    return plistlib.dumps(
        {
            "Label": f"{LABEL_PREFIX}{entry.name}",
            "ProgramArguments": program_arguments,
            "StartCalendarInterval": cron_to_calendar_interval(entry.schedule),
            "StandardOutPath": str(stdout_path),
            "StandardErrorPath": str(stderr_path),
            "RunAtLoad": entry.run_at_load,
        }
    )


class LaunchdScheduler(SchedulerPort):
    """Schedules tasks as per-user LaunchAgents.

    Args:
        launch_agents_dir: Directory holding the plists (``~/Library/LaunchAgents``).
        **kwargs: Passed to SchedulerPort.
    """

    def __init__(self, *, launch_agents_dir: Path | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self._launch_agents_dir = launch_agents_dir or Path.home() / "Library" / "LaunchAgents"

    def scheduler_type(self) -> SchedulerKind:
        return SchedulerKind.LAUNCHD

    def plist_path(self, name: str) -> Path:
        return self._launch_agents_dir / f"{LABEL_PREFIX}{check_task_name(name)}.plist"

    async def _unload(self, plist_path: Path) -> None:
        # Not loaded (or no plist yet) is the normal case here.
        with contextlib.suppress(SchedulerCommandError):
            await run_command(["launchctl", "unload", str(plist_path)], check=False)

    async def schedule(self, task: ScheduledTask, *, run_at_load: bool = False) -> ScheduledEntry:
        entry = self._prepare(task, run_at_load)
        plist = build_plist(
            entry,
            self.task_command(entry.name),
            self.log_path(entry.name),
            self.error_log_path(entry.name),
        )
        plist_path = self.plist_path(entry.name)

        self._launch_agents_dir.mkdir(parents=True, exist_ok=True)
        await self._unload(plist_path)
        plist_path.write_bytes(plist)
        self._write_metadata(entry)
        await run_command(["launchctl", "load", str(plist_path)])

        logger.info(
            "Scheduled %s with launchd (%s, run_at_load=%s)", entry.name, entry.schedule, run_at_load
        )
        return entry

    async def unschedule(self, name: str) -> None:
        plist_path = self.plist_path(name)
        await self._unload(plist_path)
        plist_path.unlink(missing_ok=True)
        self._remove_metadata(name)
        logger.info("Unscheduled %s from launchd", name)
