"""SchedulerPort — common interface over OS-level schedulers (launchd, cron)."""

from __future__ import annotations

import contextlib
import logging
import re
import sys
from abc import ABC, abstractmethod
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import ValidationError

from src.config import Settings, settings
from src.scheduler.cron import validate_schedule
from src.scheduler.errors import UnsupportedPlatformError
from src.scheduler.models import TASK_NAME_PATTERN, ScheduledEntry

if TYPE_CHECKING:
    from pathlib import Path

    from src.scheduler.models import ScheduledTask

logger = logging.getLogger(__name__)

_TASK_NAME_RE = re.compile(TASK_NAME_PATTERN)


class SchedulerKind(StrEnum):
    LAUNCHD = "launchd"
    CRON = "cron"
    UNSUPPORTED = "unsupported"


def detect_scheduler_kind(platform: str | None = None, override: str = "auto") -> SchedulerKind:
    """Pick the backend for *platform* (default ``sys.platform``).

    An *override* other than ``"auto"`` forces a kind and must name one.
    """
    if override and override != "auto":
        try:
            return SchedulerKind(override)
        except ValueError:
            kinds = ", ".join(k.value for k in SchedulerKind)
            msg = f"Unknown scheduler backend {override!r} (expected auto, {kinds})"
            raise ValueError(msg) from None

    platform = platform or sys.platform
    if platform == "darwin":
        return SchedulerKind.LAUNCHD
    if platform.startswith("linux"):
        return SchedulerKind.CRON
    return SchedulerKind.UNSUPPORTED


def check_task_name(name: str) -> str:
    if not _TASK_NAME_RE.match(name):
        msg = f"Invalid task name {name!r}: use letters, digits, '.', '_' or '-'"
        raise ValueError(msg)
    return name


class SchedulerPort(ABC):
    """Registers tasks with an OS scheduler and tracks them in metadata files.

    Each registered task has ``<schedules_dir>/<name>.json`` holding its
    ScheduledEntry; listing and lookups read only these files.

    Args:
        schedules_dir: Where metadata files live (default from settings).
        logs_dir: Where scheduled runs write their output (default from settings).
        invocation: argv prefix the OS scheduler uses to call back into the CLI.
    """

    def __init__(
        self,
        *,
        schedules_dir: Path | None = None,
        logs_dir: Path | None = None,
        invocation: list[str] | None = None,
    ) -> None:
        self._schedules_dir = schedules_dir or settings.schedules_dir
        self._logs_dir = logs_dir or settings.logs_dir
        self._invocation = invocation or settings.get_scheduler_invocation()

    @abstractmethod
    def scheduler_type(self) -> SchedulerKind: ...

    @abstractmethod
    async def schedule(self, task: ScheduledTask, *, run_at_load: bool = False) -> ScheduledEntry:
        """Register (or re-register) *task* with the OS scheduler."""

    @abstractmethod
    async def unschedule(self, name: str) -> None:
        """Remove *name* from the OS scheduler. Unknown names are ignored."""

    # -- Metadata --------------------------------------------------------------

    def _metadata_path(self, name: str) -> Path:
        return self._schedules_dir / f"{check_task_name(name)}.json"

    def _write_metadata(self, entry: ScheduledEntry) -> None:
        self._schedules_dir.mkdir(parents=True, exist_ok=True)
        self._metadata_path(entry.name).write_text(
            entry.model_dump_json(by_alias=True, indent=2), encoding="utf-8"
        )

    def _remove_metadata(self, name: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            self._metadata_path(name).unlink()

    def _read_metadata(self, path: Path) -> ScheduledEntry | None:
        try:
            return ScheduledEntry.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as exc:
            logger.warning("Ignoring invalid schedule metadata %s: %s", path, exc)
            return None

    async def is_scheduled(self, name: str) -> bool:
        return self._metadata_path(name).exists()

    async def get_scheduled(self, name: str) -> ScheduledEntry | None:
        return self._read_metadata(self._metadata_path(name))

    async def list_scheduled(self) -> list[ScheduledEntry]:
        if not self._schedules_dir.is_dir():
            return []
        entries = []
        for path in sorted(self._schedules_dir.glob("*.json")):
            entry = self._read_metadata(path)
            if entry is not None:
                entries.append(entry)
        return entries

    # -- Helpers for backends --------------------------------------------------

    def _prepare(self, task: ScheduledTask, run_at_load: bool) -> ScheduledEntry:
        """Validate *task* and build its entry. Raises InvalidScheduleError."""
        check_task_name(task.name)
        validate_schedule(task.schedule)
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        return ScheduledEntry.from_task(task, run_at_load=run_at_load)

    def task_command(self, name: str) -> list[str]:
        """argv the OS scheduler runs for *name*."""
        return [*self._invocation, "run", name, "--scheduled"]

    def log_path(self, name: str) -> Path:
        return self._logs_dir / f"{name}.log"

    def error_log_path(self, name: str) -> Path:
        return self._logs_dir / f"{name}.error.log"


class UnsupportedScheduler(SchedulerPort):
    """Placeholder backend for platforms without launchd or cron."""

    _MESSAGE = "Scheduling is not supported on this platform. Supported: macOS (launchd), Linux (cron)."

    def scheduler_type(self) -> SchedulerKind:
        return SchedulerKind.UNSUPPORTED

    async def schedule(self, task: ScheduledTask, *, run_at_load: bool = False) -> ScheduledEntry:
        raise UnsupportedPlatformError(self._MESSAGE)

    async def unschedule(self, name: str) -> None:
        raise UnsupportedPlatformError(self._MESSAGE)

    async def is_scheduled(self, name: str) -> bool:
        return False

    async def get_scheduled(self, name: str) -> ScheduledEntry | None:
        return None

    async def list_scheduled(self) -> list[ScheduledEntry]:
        return []


def create_scheduler(kind: SchedulerKind, config: Settings | None = None) -> SchedulerPort:
    """Build the backend for *kind*, configured from *config*."""
    config = config or settings
    common = {
        "schedules_dir": config.schedules_dir,
        "logs_dir": config.logs_dir,
        "invocation": config.get_scheduler_invocation(),
    }
    if kind is SchedulerKind.LAUNCHD:
        from src.scheduler.launchd import LaunchdScheduler

        return LaunchdScheduler(launch_agents_dir=config.launch_agents_dir, **common)
    if kind is SchedulerKind.CRON:
        from src.scheduler.crontab import CronScheduler

        return CronScheduler(**common)
    return UnsupportedScheduler(**common)
