from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Scanner thread plus one writer transaction on top of the dispatch workers.
RESERVED_CONNECTIONS = 2
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """Runtime configuration for the user outbox pipeline."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: Optional[str] = None
    store_backend: str = Field("postgres", pattern="^(postgres|memory)$")
    pipeline_name: str = "user-outbox"
    log_level: str = "INFO"

    pool_min_connections: int = 1
    pool_max_connections: int = 8
    pool_timeout_seconds: float = 10.0

    scan_interval_seconds: float = 5.0
    scan_batch_size: int = 100
    scan_grace_seconds: float = 0.0
    catch_up_delay_seconds: float = 0.0

    feed_enabled: bool = True
    feed_channel: str = "outbox_events_pending"
    feed_poll_timeout_seconds: float = 1.0
    feed_reconnect_initial_seconds: float = 1.0
    feed_reconnect_max_seconds: float = 30.0

    dispatch_workers: int = Field(4, ge=1)
    max_attempts: int = Field(1, ge=1)
    retry_backoff_seconds: float = 5.0
    retry_backoff_multiplier: float = 2.0
    stale_processing_seconds: Optional[float] = 300.0

    max_delivery_attempts: int = Field(1, ge=1)
    delivery_delay_seconds: float = 0.1

    shutdown_timeout_seconds: float = 30.0

    @model_validator(mode="after")
    def check_pool_size(self) -> "Settings":
        needed = self.dispatch_workers + RESERVED_CONNECTIONS
        if self.pool_max_connections < needed:
            raise ValueError(
                f"pool_max_connections={self.pool_max_connections} is below dispatch_workers + "
                f"{RESERVED_CONNECTIONS} ({needed})"
            )
        return self

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level
