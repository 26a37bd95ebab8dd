"""Application settings loaded from environment variables."""

import os
import shlex
import shutil
import sys
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """catchup configuration. All values come from ``CATCHUP_*`` environment variables."""

    # Storage
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".catchup")

    # Scheduler backend
    scheduler_backend: str = Field(default="auto")
    scheduler_timezone: str = Field(default="")
    scheduler_invocation: str = Field(default="")
    launch_agents_dir: Path = Field(
        default_factory=lambda: Path.home() / "Library" / "LaunchAgents"
    )

    # Catch-up
    default_max_catch_up_age_seconds: int = Field(default=60 * 60 * 24, gt=0)

    # Run history
    max_history_records: int = Field(default=100, gt=0)
    history_lock_retries: int = Field(default=10, ge=1)
    history_lock_retry_delay: float = Field(default=0.1, ge=0)
    history_lock_stale_seconds: float = Field(default=30.0, gt=0)

    # Executor
    executor_command: str = Field(default="agent run {executor_id} --task {task} --headless")
    executor_timeout_seconds: float = Field(default=3600.0, gt=0)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="CATCHUP_", env_file=_env_file(), env_file_encoding="utf-8"
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    @property
    def history_path(self) -> Path:
        return self.data_dir.expanduser() / "run-history.json"

    @property
    def schedules_dir(self) -> Path:
        return self.data_dir.expanduser() / "schedules"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir.expanduser() / "logs"

    def get_scheduler_invocation(self) -> list[str]:
        """Return the argv prefix OS schedulers use to call back into the CLI.

        An explicit ``CATCHUP_SCHEDULER_INVOCATION`` wins; otherwise the
        installed ``catchup`` script, falling back to ``python -m src.cli.main``.
        """
        if self.scheduler_invocation.strip():
            return shlex.split(self.scheduler_invocation)
        script = shutil.which("catchup")
        if script:
            return [script]
        return [sys.executable, "-m", "src.cli.main"]


settings = Settings()
