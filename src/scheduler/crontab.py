"""cron backend — one marked line pair per scheduled task in the user crontab (Linux)."""

from __future__ import annotations

import logging
import shlex
from typing import TYPE_CHECKING

from src.scheduler.port import SchedulerKind, SchedulerPort, check_task_name
from src.scheduler.shell import run_command

if TYPE_CHECKING:
    from pathlib import Path

    from src.scheduler.models import ScheduledEntry, ScheduledTask

logger = logging.getLogger(__name__)

CRON_MARKER = "# catchup task:"


def build_crontab_entry(entry: ScheduledEntry, command: list[str], log_path: Path) -> str:
    """Return the marker comment and schedule line for *entry*."""
    quoted = " ".join(shlex.quote(token) for token in command)
    # cron turns an unescaped % in the command into a newline.
    quoted = quoted.replace("%", r"\%")
    log = shlex.quote(str(log_path)).replace("%", r"\%")
    return f"{CRON_MARKER} {entry.name}\n{entry.schedule} {quoted} >> {log} 2>&1"


def remove_crontab_entry(crontab: str, name: str) -> str:
    """Drop the marker line for *name* and the schedule line after it."""
    marker = f"{CRON_MARKER} {name}"
    kept: list[str] = []
    skip_next = False
    for line in crontab.splitlines():
        if skip_next:
            skip_next = False
            continue
        if line.strip() == marker:
            skip_next = True
            continue
        kept.append(line)
    return "\n".join(kept)


class CronScheduler(SchedulerPort):
    """Schedules tasks in the invoking user's crontab."""

    def scheduler_type(self) -> SchedulerKind:
        return SchedulerKind.CRON

    async def read_crontab(self) -> str:
        # `crontab -l` exits non-zero when the user has no crontab yet.
        result = await run_command(["crontab", "-l"], check=False)
        return result.stdout if result.returncode == 0 else ""

    async def write_crontab(self, content: str) -> None:
        content = content.rstrip("\n")
        await run_command(["crontab", "-"], stdin=f"{content}\n" if content else "")

    async def schedule(self, task: ScheduledTask, *, run_at_load: bool = False) -> ScheduledEntry:
        # RunAtLoad has no cron equivalent; it is stored for consistency only.
        entry = self._prepare(task, run_at_load)
        line = build_crontab_entry(entry, self.task_command(entry.name), self.log_path(entry.name))

        current = await self.read_crontab()
        updated = remove_crontab_entry(current, entry.name).rstrip("\n")
        updated = f"{updated}\n{line}" if updated else line
        await self.write_crontab(updated)
        self._write_metadata(entry)

        logger.info("Scheduled %s with cron (%s)", entry.name, entry.schedule)
        return entry

    async def unschedule(self, name: str) -> None:
        check_task_name(name)
        current = await self.read_crontab()
        updated = remove_crontab_entry(current, name)
        if updated.rstrip("\n") != current.rstrip("\n"):
            await self.write_crontab(updated)
        self._remove_metadata(name)
        logger.info("Unscheduled %s from cron", name)
