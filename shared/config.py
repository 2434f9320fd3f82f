"""
Runtime configuration for the notification outbox pipeline.

Every knob can be set through an OUTBOX_* environment variable or a .env
file. Durations are in seconds.
"""

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline settings (store location, worker pool, retry policy)."""

    database_url: str = Field(default="sqlite:///outbox.db")

    # Worker pool
    worker_count: int = Field(default=2, ge=1)
    batch_size: int = Field(default=10, ge=1)
    max_in_flight: int = Field(default=4, ge=1, description="Concurrent sends per worker")
    poll_interval: float = Field(default=5.0, gt=0)
    send_timeout: float = Field(default=10.0, gt=0)

    # Leasing
    lease_duration: float = Field(default=60.0, gt=0)
    reclaim_interval: float = Field(default=30.0, gt=0)

    # Retry policy
    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=1.0, gt=0)
    max_delay: float = Field(default=300.0, gt=0)
    jitter: float = Field(default=0.1, ge=0, le=1)

    model_config = SettingsConfigDict(
        env_prefix="OUTBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_delays(self) -> "Settings":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be greater than or equal to base_delay")
        return self

    @model_validator(mode="after")
    def _check_lease(self) -> "Settings":
        # A claimed entry starts sending right away, so its lease has to cover
        # one send plus the claim and write-back around it.
        if self.lease_duration <= 2 * self.send_timeout:
            raise ValueError(
                f"lease_duration ({self.lease_duration}s) must be more than twice "
                f"send_timeout ({self.send_timeout}s)"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Get the process-wide settings loaded from the environment."""
    return Settings()
