"""Exception hierarchy for scheduling, history and execution failures."""


class SchedulerError(Exception):
    """Base class for every error raised by the scheduler package."""


class InvalidScheduleError(SchedulerError, ValueError):
    """A cron expression is malformed or cannot be expressed by a backend."""


class RunHistoryError(SchedulerError):
    """The run history file could not be read, parsed, locked or written."""


class UnsupportedPlatformError(SchedulerError):
    """No OS scheduler backend exists for the current platform."""


class SchedulerCommandError(SchedulerError):
    """A platform command (``launchctl``, ``crontab``) exited unsuccessfully."""

    def __init__(self, command: list[str], returncode: int, stderr: str = "") -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(f"{command[0]} exited with status {returncode}{detail}")


class TaskExecutionError(SchedulerError):
    """The external task executor reported a failure."""
