from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    LOG_LEVEL: Optional[str] = "INFO"
    DATABASE_TYPE: Optional[str] = "sqlite"
    DATABASE_URL: Optional[str] = "username:password@hostname:port"
    DATABASE_PATH: Optional[str] = "data/reelqueue.db"
    HIGH_QUEUE_WORKERS: Optional[int] = 5
    DEFAULT_QUEUE_WORKERS: Optional[int] = 3
    BACKGROUND_QUEUE_WORKERS: Optional[int] = 2
    HIGH_QUEUE_CAPACITY: Optional[int] = 100
    DEFAULT_QUEUE_CAPACITY: Optional[int] = 100
    BACKGROUND_QUEUE_CAPACITY: Optional[int] = 100
    TASK_TIMEOUT: Optional[float] = 3600.0  # 1 hour
    CANCEL_GRACE_PERIOD: Optional[float] = 30.0
    DEFAULT_MAX_ATTEMPTS: Optional[int] = 3
    RETRY_BASE_DELAY: Optional[float] = 5.0
    RETRY_BACKOFF_FACTOR: Optional[float] = 2.0
    RETRY_MAX_DELAY: Optional[float] = 300.0  # 5 minutes
    RETRY_JITTER: Optional[float] = 0.1  # fraction of the computed delay
    SCHEDULER_TICK_INTERVAL: Optional[float] = 60.0
    HISTORY_MAX_AGE: Optional[int] = 604800  # 7 days
    HISTORY_MAX_COUNT: Optional[int] = 1000
    ENABLE_DEFAULT_SCHEDULES: Optional[bool] = True
    HEALTH_CHECK_INTERVAL: Optional[int] = 1800  # 30 minutes
    CLEANUP_INTERVAL: Optional[int] = 86400  # 1 day

    @field_validator("DATABASE_TYPE")
    def normalize_database_type(cls, v):
        v = (v or "sqlite").lower()
        if v == "postgres":
            return "postgresql"
        if v not in ("memory", "sqlite", "postgresql"):
            raise ValueError(f"Unsupported DATABASE_TYPE: {v}")
        return v

    @field_validator("LOG_LEVEL")
    def normalize_log_level(cls, v):
        return (v or "INFO").upper()

    @field_validator(
        "HIGH_QUEUE_WORKERS",
        "DEFAULT_QUEUE_WORKERS",
        "BACKGROUND_QUEUE_WORKERS",
        "HIGH_QUEUE_CAPACITY",
        "DEFAULT_QUEUE_CAPACITY",
        "BACKGROUND_QUEUE_CAPACITY",
        "DEFAULT_MAX_ATTEMPTS",
    )
    def at_least_one(cls, v):
        if v is None or v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("RETRY_JITTER")
    def clamp_jitter(cls, v):
        return min(max(v or 0.0, 0.0), 1.0)

    @field_validator(
        "TASK_TIMEOUT",
        "SCHEDULER_TICK_INTERVAL",
        "RETRY_BACKOFF_FACTOR",
    )
    def strictly_positive(cls, v):
        if v is None or v <= 0:
            raise ValueError("must be greater than 0")
        return v

    def queue_workers(self, priority) -> int:
        return getattr(self, f"{priority.name}_QUEUE_WORKERS")

    def queue_capacity(self, priority) -> int:
        return getattr(self, f"{priority.name}_QUEUE_CAPACITY")


settings = AppSettings()
