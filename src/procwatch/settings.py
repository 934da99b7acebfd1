"""Settings for procwatch, read from ``PROCWATCH_*`` environment variables."""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MAX_MESSAGES_PER_RUN = 100


class ProcwatchSettings(BaseSettings):
    """
    Settings shared by the launcher, the watchdog and the CLI.

    Every field can be overridden with ``PROCWATCH_<FIELD>`` or a ``.env``
    file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="PROCWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ---- launcher ----
    output_stream: Path | None = None
    pass_through_env: str = "APP_ENV"
    require_pass_through: bool = False

    # ---- process table ----
    process_filter: str = "python"
    snapshot_source: Literal["ps", "psutil"] = "ps"

    # ---- watchdog / queue ----
    max_messages_per_run: int = Field(default=DEFAULT_MAX_MESSAGES_PER_RUN, ge=1)
    queue_path: Path = Path("procwatch-queue.sqlite3")
    queue_name: str = "pid_killer"
    time_in_flight: float = Field(default=30.0, ge=0)

    # ---- logging ----
    log_level: str = "INFO"
    log_json: bool = False


def load_settings(**overrides: object) -> ProcwatchSettings:
    """Build settings from the environment, with keyword overrides on top."""
    return ProcwatchSettings(**overrides)
