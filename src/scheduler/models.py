"""Scheduled task, run record and catch-up data models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

RunStatus = Literal["running", "completed", "failed", "skipped"]
TriggeredBy = Literal["manual", "scheduled", "catchup"]

RUNNING: RunStatus = "running"
COMPLETED: RunStatus = "completed"
FAILED: RunStatus = "failed"
SKIPPED: RunStatus = "skipped"

MANUAL: TriggeredBy = "manual"
SCHEDULED: TriggeredBy = "scheduled"
CATCHUP: TriggeredBy = "catchup"

# Task names end up in file names, launchd labels and crontab markers.
TASK_NAME_PATTERN = r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$"


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class _CamelModel(BaseModel):
    """Base for models persisted as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ScheduledTask(_CamelModel):
    """A task that runs on a cron schedule.

    Attributes:
        name: Unique identifier; safe for file names and scheduler labels.
        schedule: 5-field cron expression.
        executor_id: Identifier of the entity the executor invokes.
        catch_up_on_startup: Opt-in to catch-up reconciliation.
        max_catch_up_age_seconds: How stale a missed run may be and still be
            caught up (None means the configured default).
        enabled: Whether the task is active.
    """

    name: str = Field(pattern=TASK_NAME_PATTERN, max_length=128)
    schedule: str = ""
    executor_id: str = "default"
    catch_up_on_startup: bool = False
    max_catch_up_age_seconds: int | None = Field(default=None, gt=0)
    enabled: bool = True

    @field_validator("schedule")
    @classmethod
    def _strip_schedule(cls, value: str) -> str:
        return " ".join(value.split())

    @model_validator(mode="after")
    def _catch_up_requires_schedule(self) -> ScheduledTask:
        if self.catch_up_on_startup and not self.schedule:
            msg = f"Task {self.name!r} enables catch-up but has no schedule"
            raise ValueError(msg)
        return self


class ScheduledEntry(ScheduledTask):
    """A ScheduledTask as registered with an OS scheduler backend."""

    run_at_load: bool = False
    scheduled_at: datetime = Field(default_factory=utc_now)

    @field_validator("scheduled_at")
    @classmethod
    def _scheduled_at_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @classmethod
    def from_task(
        cls,
        task: ScheduledTask,
        *,
        run_at_load: bool = False,
        scheduled_at: datetime | None = None,
    ) -> ScheduledEntry:
        data = task.model_dump(include=set(ScheduledTask.model_fields))
        data["run_at_load"] = run_at_load
        if scheduled_at is not None:
            data["scheduled_at"] = scheduled_at
        return cls(**data)


class RunRecord(_CamelModel):
    """One execution attempt of a task, as stored in the run history file."""

    task_name: str
    started_at: datetime
    completed_at: datetime | None = None
    status: RunStatus = RUNNING
    triggered_by: TriggeredBy = MANUAL
    error: str | None = None

    @field_validator("started_at", "completed_at")
    @classmethod
    def _timestamps_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _completed_iff_finished(self) -> RunRecord:
        finished = self.status != RUNNING
        if finished and self.completed_at is None:
            msg = f"A {self.status} run record needs completedAt"
            raise ValueError(msg)
        if not finished and self.completed_at is not None:
            msg = "A running run record must not have completedAt"
            raise ValueError(msg)
        return self

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class CatchUpDecision:
    """Whether a task should be caught up now, and why."""

    should_run: bool
    reason: str
    scheduled_at: datetime | None = None


@dataclass(frozen=True)
class CatchUpCandidate:
    task: ScheduledEntry
    decision: CatchUpDecision


@dataclass(frozen=True)
class RunOutcome:
    """Result of one task execution driven by the orchestrator."""

    task_name: str
    status: RunStatus
    started_at: datetime
    completed_at: datetime
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == COMPLETED
