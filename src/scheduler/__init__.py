"""Scheduled task system — run history, catch-up decisions, and OS scheduler backends."""

from src.scheduler.catchup import CatchUpOrchestrator
from src.scheduler.decision import DEFAULT_MAX_CATCH_UP_AGE_SECONDS, decide_catch_up
from src.scheduler.executor import CommandExecutor, TaskExecutor
from src.scheduler.guard import RunAtLoadGuard
from src.scheduler.history import RunHistoryStore
from src.scheduler.models import (
    CatchUpCandidate,
    CatchUpDecision,
    RunOutcome,
    RunRecord,
    ScheduledEntry,
    ScheduledTask,
)
from src.scheduler.port import SchedulerKind, SchedulerPort, create_scheduler, detect_scheduler_kind

__all__ = [
    "DEFAULT_MAX_CATCH_UP_AGE_SECONDS",
    "CatchUpCandidate",
    "CatchUpDecision",
    "CatchUpOrchestrator",
    "CommandExecutor",
    "RunAtLoadGuard",
    "RunHistoryStore",
    "RunOutcome",
    "RunRecord",
    "ScheduledEntry",
    "ScheduledTask",
    "SchedulerKind",
    "SchedulerPort",
    "TaskExecutor",
    "create_scheduler",
    "decide_catch_up",
    "detect_scheduler_kind",
]
