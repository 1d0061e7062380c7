"""Settings via pydantic-settings with FOREMAN_ env prefix.

DB connection fields use validation_alias to read from the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app.
"""

from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FOREMAN_", env_file=".env")

    # DB connection -- unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("foreman", validation_alias="DB_USER")
    db_password: str = Field("foreman_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("foreman", validation_alias="DB_NAME")
    # Full SQLAlchemy URL; overrides the composed Postgres URL when set
    database_url: str = ""

    db_pool_size: int = 10
    db_max_overflow: int = 5
    worker_id: str = "global"
    log_level: str = "info"

    # Task queue
    coalesce_window_seconds: int = Field(900, ge=0)
    interactive_task_types: list[str] = ["chat_reply"]
    trim_caps: dict[str, int] = {"portfolio_eval": 24}

    # Sessions / heartbeat
    max_concurrent_sessions: int = Field(4, ge=2, le=16)
    max_tasks_per_heartbeat: int = Field(8, ge=1, le=50)
    heartbeat_active_seconds: float = 2.0
    heartbeat_idle_seconds: float = 5.0
    heartbeat_off_hours_seconds: float = 5.0

    # Business hours (ISO weekdays: Monday=1 .. Sunday=7)
    business_hours_start: int = Field(8, ge=0, le=24)
    business_hours_end: int = Field(18, ge=0, le=24)
    business_days: list[int] = [1, 2, 3, 4, 5]
    business_timezone: str = "UTC"

    # Periodic jobs
    periodic_jobs_enabled: bool = True
    backlog_high_watermark: int = 40
    primary_repo_path: str = "."

    # Autonomy planner
    autonomy_enabled: bool = True
    autonomy_scope: list[Literal["perf", "bugfix"]] = ["perf", "bugfix"]
    autonomy_hourly_budget: int = Field(2, ge=0, le=20)
    autonomy_max_concurrent_missions: int = Field(2, ge=0)
    autonomy_min_ev: float = 1.25
    autonomy_require_low_risk: bool = True
    autonomy_interactive_block_threshold: int = Field(4, ge=1)
    autonomy_candidate_limit: int = Field(60, ge=1)
    autonomy_max_auto_pr_files: int = 8
    autonomy_max_auto_pr_loc: int = 250

    # Failure notifications
    notify_webhook_url: str = ""
    notify_timeout: float = 10.0

    @field_validator(
        "heartbeat_active_seconds",
        "heartbeat_idle_seconds",
        "heartbeat_off_hours_seconds",
    )
    @classmethod
    def _clamp_interval(cls, value: float) -> float:
        return max(1.0, min(120.0, value))

    @field_validator("business_days")
    @classmethod
    def _validate_days(cls, value: list[int]) -> list[int]:
        for day in value:
            if not 1 <= day <= 7:
                raise ValueError(f"business_days entries must be 1..7, got {day}")
        return value

    @model_validator(mode="after")
    def _validate_hours(self) -> "Settings":
        if self.business_hours_start > self.business_hours_end:
            raise ValueError(
                f"business_hours_start ({self.business_hours_start}) must be <= "
                f"business_hours_end ({self.business_hours_end})"
            )
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
