"""Shared test fixtures."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.config import Settings
from src.scheduler.history import RunHistoryStore

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def history(tmp_path: Path) -> RunHistoryStore:
    """A RunHistoryStore backed by a temporary file."""
    RunHistoryStore._reset()
    store = RunHistoryStore(tmp_path / "run-history.json", lock_retry_delay=0)
    yield store
    RunHistoryStore._reset()


@pytest.fixture
def executor() -> MagicMock:
    """A TaskExecutor whose execute() succeeds unless told otherwise."""
    fake = MagicMock()
    fake.execute = AsyncMock(return_value=None)
    return fake


@pytest.fixture
def config(tmp_path: Path) -> Settings:
    """Settings isolated to a temporary data directory."""
    return Settings(
        data_dir=tmp_path / "data",
        scheduler_backend="cron",
        scheduler_timezone="UTC",
        scheduler_invocation="catchup",
        launch_agents_dir=tmp_path / "LaunchAgents",
    )
