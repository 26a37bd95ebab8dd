"""Task executors — what actually runs when a scheduled task fires."""

from __future__ import annotations

import logging
import shlex
from typing import TYPE_CHECKING, Protocol

from src.config import settings
from src.scheduler.errors import SchedulerCommandError, TaskExecutionError
from src.scheduler.shell import run_command

if TYPE_CHECKING:
    from src.scheduler.models import ScheduledTask, TriggeredBy

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 500


class TaskExecutor(Protocol):
    """Runs a task's payload. Raises on failure; the return value is ignored."""

    async def execute(self, task: ScheduledTask, triggered_by: TriggeredBy) -> None: ...


class CommandExecutor:
    """Executes tasks by spawning a configured command.

    The template is split with ``shlex`` first and each argument is then
    formatted, so substituted values never change the argument count.
    Placeholders: ``{executor_id}``, ``{task}``, ``{triggered_by}``.

    Args:
        command_template: Command line template (default from settings).
        timeout: Seconds before the process is killed (default from settings).
    """

    def __init__(
        self,
        command_template: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._template = command_template or settings.executor_command
        self._timeout = timeout or settings.executor_timeout_seconds

    def build_command(self, task: ScheduledTask, triggered_by: TriggeredBy) -> list[str]:
        values = {
            "executor_id": task.executor_id,
            "task": task.name,
            "triggered_by": triggered_by,
        }
        try:
            argv = [part.format(**values) for part in shlex.split(self._template)]
        except (KeyError, IndexError, ValueError) as exc:
            msg = f"Invalid executor command template {self._template!r}: {exc}"
            raise TaskExecutionError(msg) from exc
        if not argv:
            msg = "Executor command template is empty"
            raise TaskExecutionError(msg)
        return argv

    async def execute(self, task: ScheduledTask, triggered_by: TriggeredBy) -> None:
        argv = self.build_command(task, triggered_by)
        logger.info(
            "Executing task '%s' with executor %s (%s)", task.name, task.executor_id, triggered_by
        )
        try:
            result = await run_command(argv, timeout=self._timeout)
        except TimeoutError as exc:
            msg = f"Task '{task.name}' timed out after {self._timeout:g}s"
            raise TaskExecutionError(msg) from exc
        except SchedulerCommandError as exc:
            tail = exc.stderr.strip()[-_STDERR_TAIL_CHARS:]
            msg = f"Task '{task.name}' exited with status {exc.returncode}"
            if tail:
                msg = f"{msg}: {tail}"
            raise TaskExecutionError(msg) from exc
        logger.info(
            "Task '%s' finished (%d chars of output)", task.name, len(result.stdout)
        )
