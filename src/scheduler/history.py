"""RunHistoryStore — JSON file log of task run attempts."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import time
from typing import TYPE_CHECKING

from pydantic import ValidationError

from src.config import settings
from src.scheduler.errors import RunHistoryError
from src.scheduler.models import RUNNING, RunRecord, utc_now

if TYPE_CHECKING:
    from collections.abc import Iterator
    from datetime import datetime
    from pathlib import Path

    from src.scheduler.models import RunStatus

logger = logging.getLogger(__name__)


class RunHistoryStore:
    """Persists run records as a JSON array, oldest first.

    Singleton accessed via ``RunHistoryStore.get()``.  Pass an explicit
    *path* for test isolation (e.g. ``tmp_path / "run-history.json"``).

    Every mutation is a read-modify-write under an exclusive lock file,
    finished by an atomic ``os.replace`` of the whole file, so concurrent
    writers (a manual run racing a scheduled one) never interleave.
    All methods are synchronous; the file is small and capped.
    """

    _instance: RunHistoryStore | None = None

    def __init__(
        self,
        path: Path | None = None,
        *,
        max_records: int | None = None,
        lock_retries: int | None = None,
        lock_retry_delay: float | None = None,
        lock_stale_seconds: float | None = None,
    ) -> None:
        self._path = path or settings.history_path
        self._lock_path = self._path.with_name(self._path.name + ".lock")
        self._max_records = max_records or settings.max_history_records
        self._lock_retries = lock_retries or settings.history_lock_retries
        self._lock_retry_delay = (
            settings.history_lock_retry_delay if lock_retry_delay is None else lock_retry_delay
        )
        self._lock_stale_seconds = lock_stale_seconds or settings.history_lock_stale_seconds

    @classmethod
    def get(cls) -> RunHistoryStore:
        """Return the shared RunHistoryStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    @property
    def path(self) -> Path:
        return self._path

    # -- Locking ---------------------------------------------------------------

    def _lock_is_stale(self) -> bool:
        try:
            age = time.time() - self._lock_path.stat().st_mtime
        except FileNotFoundError:
            return True
        return age > self._lock_stale_seconds

    def _acquire_lock(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            msg = f"Cannot create run history directory {self._path.parent}: {exc}"
            raise RunHistoryError(msg) from exc

        for _ in range(self._lock_retries):
            try:
                fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._lock_is_stale():
                    logger.warning("Breaking stale run history lock: %s", self._lock_path)
                    with contextlib.suppress(FileNotFoundError):
                        self._lock_path.unlink()
                    continue
                time.sleep(self._lock_retry_delay)
                continue
            except OSError as exc:
                msg = f"Cannot create run history lock {self._lock_path}: {exc}"
                raise RunHistoryError(msg) from exc
            try:
                os.write(fd, str(os.getpid()).encode())
            finally:
                os.close(fd)
            return

        msg = f"Failed to acquire run history lock after {self._lock_retries} attempts"
        raise RunHistoryError(msg)

    def _release_lock(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            self._lock_path.unlink()

    @contextlib.contextmanager
    def _locked(self) -> Iterator[None]:
        self._acquire_lock()
        try:
            yield
        finally:
            self._release_lock()

    # -- File I/O --------------------------------------------------------------

    def _save(self, records: list[RunRecord]) -> None:
        payload = json.dumps([r.to_json_dict() for r in records], indent=2)
        tmp_name: str | None = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self._path.parent,
                prefix=".run-history-",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self._path)
        except OSError as exc:
            if tmp_name is not None:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp_name)
            msg = f"Cannot write run history {self._path}: {exc}"
            raise RunHistoryError(msg) from exc

    def load_all(self) -> list[RunRecord]:
        """Return every record, oldest first. A missing file is an empty history."""
        try:
            content = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            msg = f"Cannot read run history {self._path}: {exc}"
            raise RunHistoryError(msg) from exc

        if not content.strip():
            return []
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            msg = f"Run history {self._path} is not valid JSON: {exc}"
            raise RunHistoryError(msg) from exc
        if not isinstance(data, list):
            msg = f"Run history {self._path} must contain a JSON array"
            raise RunHistoryError(msg)

        records: list[RunRecord] = []
        for index, item in enumerate(data):
            try:
                records.append(RunRecord.model_validate(item))
            except ValidationError:
                logger.warning("Skipping malformed run record #%d in %s", index, self._path)
        return records

    # -- Mutations -------------------------------------------------------------

    def append(self, record: RunRecord) -> None:
        """Add a record, keeping only the newest ``max_records`` entries."""
        with self._locked():
            records = self.load_all()
            records.append(record)
            self._save(records[-self._max_records :])
        logger.debug(
            "Recorded %s run for %s (%s)", record.status, record.task_name, record.triggered_by
        )

    def update_latest(
        self,
        task_name: str,
        *,
        status: RunStatus,
        completed_at: datetime | None = None,
        error: str | None = None,
    ) -> bool:
        """Finish the most recent running record for *task_name*.

        Returns False (and changes nothing) when the task has no running record.
        """
        with self._locked():
            records = self.load_all()
            latest: int | None = None
            for index, record in enumerate(records):
                if record.task_name != task_name or record.status != RUNNING:
                    continue
                if latest is None or record.started_at >= records[latest].started_at:
                    latest = index
            if latest is None:
                logger.debug("No running record to update for %s", task_name)
                return False

            data = records[latest].model_dump()
            data.update(status=status, completed_at=completed_at or utc_now(), error=error)
            records[latest] = RunRecord(**data)
            self._save(records)
        return True

    # -- Queries ---------------------------------------------------------------

    def recent(self, n: int = 20, task_name: str | None = None) -> list[RunRecord]:
        """Return up to *n* records, newest first, optionally for one task."""
        records = self.load_all()
        if task_name is not None:
            records = [r for r in records if r.task_name == task_name]
        # Reversed first so that, among equal start times, later appends lead.
        ordered = sorted(reversed(records), key=lambda r: r.started_at, reverse=True)
        return ordered[:n]

    def last_runs(self) -> dict[str, datetime]:
        """Map each task name to the start time of its most recent record."""
        latest: dict[str, datetime] = {}
        for record in self.load_all():
            current = latest.get(record.task_name)
            if current is None or record.started_at > current:
                latest[record.task_name] = record.started_at
        return latest

    def last_run_at(self, task_name: str) -> datetime | None:
        return self.last_runs().get(task_name)
