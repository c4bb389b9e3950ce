from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./loyalty.db"
    database_echo: bool = False

    log_level: str = "INFO"
    log_json: bool = True

    # Internal API security
    api_key: str = ""

    # Calendar decisions (birthdays, year windows) fall back to this zone when
    # a tenant has no timezone configured.
    default_timezone: str = "UTC"

    # Expiry sweeps
    expiry_sweep_concurrency: int = 4
    inactivity_warning_days: int = 30

    # RFM
    rfm_no_order_recency_days: int = 365

    # Loyalty job scheduler
    loyalty_scheduler_enabled: bool = False
    loyalty_job_schedule_path: str = "config/schedules.toml"

    @field_validator("expiry_sweep_concurrency")
    @classmethod
    def _clamp_concurrency(cls, value: int) -> int:
        return max(int(value), 1)


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
