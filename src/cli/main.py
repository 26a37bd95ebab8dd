"""catchup command-line entry point.

Usage examples:
    # Register a task with the OS scheduler (launchd on macOS, cron on Linux)
    catchup schedule daily-report --cron "0 9 * * *" --executor reporter --catch-up

    # What is scheduled, and what missed a run while the machine slept
    catchup scheduled
    catchup candidates

    # Catch up everything that missed a run, or pick interactively
    catchup catchup --all
    catchup catchup

    # Recent runs of one task
    catchup history daily-report --limit 10
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from typing import TYPE_CHECKING

from pydantic import ValidationError

from src.config import Settings, settings
from src.scheduler.catchup import CatchUpOrchestrator
from src.scheduler.cron import describe_schedule, next_occurrence_after, resolve_timezone
from src.scheduler.errors import (
    InvalidScheduleError,
    RunHistoryError,
    SchedulerError,
    UnsupportedPlatformError,
)
from src.scheduler.executor import CommandExecutor
from src.scheduler.history import RunHistoryStore
from src.scheduler.models import MANUAL, ScheduledTask, utc_now
from src.scheduler.port import SchedulerKind, create_scheduler, detect_scheduler_kind

if TYPE_CHECKING:
    from datetime import datetime, tzinfo

    from src.scheduler.models import CatchUpCandidate, RunRecord
    from src.scheduler.port import SchedulerPort

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_UNSUPPORTED = 2

_STATUS_ICONS = {"completed": "✓", "failed": "✗", "skipped": "–", "running": "…"}


class Services:
    """Components wired once per invocation from the resolved settings."""

    def __init__(self, config: Settings) -> None:
        self.tz: tzinfo = resolve_timezone(config.scheduler_timezone)
        self.kind = detect_scheduler_kind(sys.platform, config.scheduler_backend)
        self.scheduler: SchedulerPort = create_scheduler(self.kind, config)
        self.history = RunHistoryStore(
            config.history_path,
            max_records=config.max_history_records,
            lock_retries=config.history_lock_retries,
            lock_retry_delay=config.history_lock_retry_delay,
            lock_stale_seconds=config.history_lock_stale_seconds,
        )
        self.orchestrator = CatchUpOrchestrator(
            self.scheduler,
            self.history,
            CommandExecutor(config.executor_command, config.executor_timeout_seconds),
            default_max_age=config.default_max_catch_up_age_seconds,
            tz=self.tz,
        )


# -- Formatting ----------------------------------------------------------------


def schedule_label(schedule: str) -> str:
    return describe_schedule(schedule) or schedule


def format_missed_time(scheduled_at: datetime | None, now: datetime, tz: tzinfo) -> str:
    if scheduled_at is None:
        return "unknown time"
    local = scheduled_at.astimezone(tz)
    today = now.astimezone(tz).date()
    time_str = local.strftime("%I:%M %p").lstrip("0")
    if local.date() == today:
        return f"missed {time_str} today"
    if local.date() == today - timedelta(days=1):
        return f"missed {time_str} yesterday"
    return f"missed {local.date().isoformat()} {time_str}"


def format_run(record: RunRecord) -> list[str]:
    icon = _STATUS_ICONS.get(record.status, "?")
    duration = record.duration_seconds
    elapsed = f"{round(duration)}s" if duration is not None else "in progress"
    trigger = f" ({record.triggered_by})" if record.triggered_by != MANUAL else ""
    lines = [
        f"  {icon} {record.task_name}{trigger} - {record.status} ({elapsed})",
        f"    Started: {record.started_at.isoformat()}",
    ]
    if record.error:
        lines.append(f"    Error: {record.error}")
    return lines


def _unsupported(services: Services) -> bool:
    if services.kind is SchedulerKind.UNSUPPORTED:
        print("Scheduling is not supported on this platform.", file=sys.stderr)
        print("Supported platforms: macOS (launchd), Linux (cron)", file=sys.stderr)
        return True
    return False


# -- Commands ------------------------------------------------------------------


async def cmd_scheduled(services: Services, args: argparse.Namespace) -> int:
    if _unsupported(services):
        return EXIT_UNSUPPORTED
    print(f"Scheduler: {services.kind.value}\n")

    entries = await services.scheduler.list_scheduled()
    if not entries:
        print("No tasks are currently scheduled.")
        print("To schedule a task: catchup schedule <name> --cron EXPR")
        return EXIT_OK

    now = utc_now()
    for entry in entries:
        status = "✓ enabled" if entry.enabled else "✗ disabled"
        upcoming = next_occurrence_after(entry.schedule, now, services.tz)
        next_str = upcoming.astimezone(services.tz).isoformat(timespec="minutes") if upcoming else "—"
        catch_up = " catch-up" if entry.catch_up_on_startup else ""
        print(
            f"  {entry.name} ({schedule_label(entry.schedule)}) executor: {entry.executor_id} "
            f"{status}{catch_up} next: {next_str}"
        )
    print(f"\nTotal: {len(entries)} scheduled task(s)")
    return EXIT_OK


async def cmd_schedule(services: Services, args: argparse.Namespace) -> int:
    if _unsupported(services):
        return EXIT_UNSUPPORTED
    try:
        task = ScheduledTask(
            name=args.name,
            schedule=args.cron,
            executor_id=args.executor,
            catch_up_on_startup=args.catch_up,
            max_catch_up_age_seconds=args.max_catch_up_age,
        )
    except ValidationError as exc:
        print(f"Invalid task definition:\n{exc}", file=sys.stderr)
        return EXIT_ERROR

    if await services.scheduler.is_scheduled(task.name):
        print(f"Task '{task.name}' is already scheduled. Updating...")

    try:
        entry = await services.scheduler.schedule(task, run_at_load=args.run_at_load)
    except InvalidScheduleError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    print(f"Task '{entry.name}' scheduled successfully!\n")
    print(f"  Schedule: {entry.schedule} ({schedule_label(entry.schedule)})")
    print(f"  Executor: {entry.executor_id}")
    print(f"  Scheduler: {services.kind.value}")
    print(f"  Catch-up on startup: {entry.catch_up_on_startup}")
    if entry.run_at_load and services.kind is SchedulerKind.LAUNCHD:
        print("  RunAtLoad: on (load-time triggers only run when a slot was missed)")
    print(f"\nTo unschedule: catchup unschedule {entry.name}")
    return EXIT_OK


async def cmd_unschedule(services: Services, args: argparse.Namespace) -> int:
    if _unsupported(services):
        return EXIT_UNSUPPORTED
    if not await services.scheduler.is_scheduled(args.name):
        print(f"Task '{args.name}' is not currently scheduled.")
        return EXIT_OK
    await services.scheduler.unschedule(args.name)
    print(f"Task '{args.name}' unscheduled successfully.")
    return EXIT_OK


def _print_candidates(services: Services, candidates: list[CatchUpCandidate]) -> None:
    now = utc_now()
    for index, c in enumerate(candidates, start=1):
        missed = format_missed_time(c.decision.scheduled_at, now, services.tz)
        print(f"  {index}. {c.task.name} ({schedule_label(c.task.schedule)}) - {missed}")


async def cmd_candidates(services: Services, args: argparse.Namespace) -> int:
    candidates = await services.orchestrator.get_candidates()
    if not candidates:
        print("No tasks need catch-up right now.")
        print(
            "Tasks must be scheduled, have catch-up enabled, and have missed their "
            "last run within the max catch-up window."
        )
        return EXIT_OK
    print("Tasks that missed a scheduled run:\n")
    _print_candidates(services, candidates)
    return EXIT_OK


def _prompt_selection(candidates: list[CatchUpCandidate]) -> list[CatchUpCandidate] | None:
    """Ask which candidates to run. None means the user declined them all."""
    answer = input("\nWould you like to catch them up? [y/N] ").strip().lower()
    if answer not in ("y", "yes"):
        return None
    raw = input("Numbers to run (comma separated, empty for all): ").strip()
    if not raw:
        return candidates
    selected: list[CatchUpCandidate] = []
    for token in raw.split(","):
        token = token.strip()
        if token.isdigit() and 1 <= int(token) <= len(candidates):
            candidate = candidates[int(token) - 1]
            if candidate not in selected:
                selected.append(candidate)
        elif token:
            print(f"Ignoring invalid selection: {token}")
    return selected


async def cmd_catchup(services: Services, args: argparse.Namespace) -> int:
    print(
        "Scheduled runs only fire when the machine is awake. Runs missed while it "
        "was asleep or off can be run now.\n"
    )
    candidates = await services.orchestrator.get_candidates()
    if not candidates:
        print("No tasks need catch-up right now.")
        return EXIT_OK

    print(f"{len(candidates)} task(s) need to catch up:\n")
    _print_candidates(services, candidates)

    if args.names:
        by_name = {c.task.name: c for c in candidates}
        for name in args.names:
            if name not in by_name:
                print(f"Not a catch-up candidate: {name}")
        selected = [by_name[n] for n in dict.fromkeys(args.names) if n in by_name]
    elif args.all:
        selected = candidates
    elif sys.stdin.isatty():
        chosen = _prompt_selection(candidates)
        if chosen is None:
            services.orchestrator.skip(candidates)
            print("Skipped. These missed runs will not be offered again.")
            return EXIT_OK
        selected = chosen
    else:
        print("\nRun with --all or task names to catch up non-interactively.")
        return EXIT_OK

    if not selected:
        print("No tasks selected.")
        return EXIT_OK

    print(f"\nRunning catch-up for {len(selected)} task(s)...\n")
    outcomes = await services.orchestrator.run_catch_up_for([c.task for c in selected])
    for outcome in outcomes:
        if outcome.ok:
            print(f"  ✓ {outcome.task_name}")
        else:
            print(f"  ✗ {outcome.task_name}: {outcome.error}")
    failed = sum(1 for o in outcomes if not o.ok)
    print(f"\nCatch-up finished: {len(outcomes) - failed} succeeded, {failed} failed.")
    return EXIT_ERROR if failed else EXIT_OK


async def cmd_run(services: Services, args: argparse.Namespace) -> int:
    entry = await services.scheduler.get_scheduled(args.name)
    if entry is None:
        print(f"Task '{args.name}' is not scheduled.", file=sys.stderr)
        return EXIT_ERROR

    if args.scheduled:
        outcome = await services.orchestrator.run_scheduled(entry)
        if outcome is None:
            return EXIT_OK
    else:
        outcome = await services.orchestrator.run_task(entry, MANUAL)

    if outcome.ok:
        print(f"Task completed: {outcome.task_name}")
        return EXIT_OK
    print(f"Task failed: {outcome.task_name}: {outcome.error}", file=sys.stderr)
    return EXIT_ERROR


async def cmd_history(services: Services, args: argparse.Namespace) -> int:
    runs = services.history.recent(args.limit, task_name=args.name)
    if not runs:
        print("No run history found.")
        print(f"History file: {services.history.path}")
        return EXIT_OK
    for run in runs:
        print("\n".join(format_run(run)))
        print()
    print(f"Showing {len(runs)} most recent run(s)")
    return EXIT_OK


# -- Entry point ---------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="catchup", description="Schedule recurring tasks and catch up missed runs"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("scheduled", help="List scheduled tasks")
    p.set_defaults(handler=cmd_scheduled)

    p = sub.add_parser("schedule", help="Enable scheduled execution for a task")
    p.add_argument("name")
    p.add_argument("--cron", required=True, help='5-field cron expression, e.g. "0 * * * *"')
    p.add_argument("--executor", default="default", help="Executor id to invoke")
    p.add_argument("--catch-up", action="store_true", help="Offer missed runs for catch-up")
    p.add_argument(
        "--max-catch-up-age", type=int, default=None, metavar="SECONDS",
        help="Oldest missed run still eligible for catch-up",
    )
    p.add_argument(
        "--run-at-load", action="store_true",
        help="launchd only: also fire on load/login (guarded against spurious runs)",
    )
    p.set_defaults(handler=cmd_schedule)

    p = sub.add_parser("unschedule", help="Disable scheduled execution for a task")
    p.add_argument("name")
    p.set_defaults(handler=cmd_unschedule)

    p = sub.add_parser("candidates", help="List tasks that missed a scheduled run")
    p.set_defaults(handler=cmd_candidates)

    p = sub.add_parser("catchup", help="Run missed tasks (all, named, or picked interactively)")
    p.add_argument("names", nargs="*", help="Candidate task names to run")
    p.add_argument("--all", action="store_true", help="Run every candidate without prompting")
    p.set_defaults(handler=cmd_catchup)

    p = sub.add_parser("run", help="Run a scheduled task now")
    p.add_argument("name")
    p.add_argument(
        "--scheduled", action="store_true",
        help="Invocation comes from the OS scheduler (applies the RunAtLoad guard)",
    )
    p.set_defaults(handler=cmd_run)

    p = sub.add_parser("history", help="Show recent run history")
    p.add_argument("name", nargs="?", default=None)
    p.add_argument("--limit", "-n", type=int, default=20, help="Max runs to show (default: 20)")
    p.set_defaults(handler=cmd_history)

    return parser


def main(argv: list[str] | None = None, config: Settings | None = None) -> int:
    """Parse *argv*, run the command, and return its exit code."""
    config = config or settings
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=logging.DEBUG if args.verbose else getattr(logging, config.log_level.upper(), logging.INFO),
    )

    try:
        services = Services(config)
        return asyncio.run(args.handler(services, args))
    except UnsupportedPlatformError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_UNSUPPORTED
    except RunHistoryError as exc:
        print(f"Run history error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    except (SchedulerError, ValueError, OSError) as exc:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
