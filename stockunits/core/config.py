"""Environment-driven configuration for the StockUnits service.

Every tunable the engine relies on lives on ``AppSettings`` so callers never
reach for ``os.getenv`` directly. Values come from the process environment or
a ``.env`` file and are read once per process through ``get_settings``.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Environment-driven application configuration."""

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    APP_NAME: str = "StockUnits"
    BASE_DIR: Path = Field(default_factory=lambda: Path(__file__).resolve().parents[2])
    DATA_DIR: Path = Field(default_factory=lambda: Path(__file__).resolve().parents[2] / "data")

    # ``DATABASE_URL`` wins over ``DB_URL`` when both are present.
    DB_URL: str = Field(
        default="sqlite:///data/stock.db",
        validation_alias=AliasChoices("DATABASE_URL", "DB_URL"),
    )

    # Empty key disables the X-API-Key check (local development).
    API_KEY: str = Field(default="", validation_alias=AliasChoices("API_KEY", "API_TOKEN"))

    LOG_LEVEL: str = "INFO"

    # ---- Expiry / stock alerting
    EXPIRY_ALERT_DAYS: int = Field(default=30, ge=0)
    LOW_STOCK_THRESHOLD: int = Field(default=10, ge=0)
    LOW_STOCK_CRITICAL: int = Field(default=5, ge=0)

    # ---- Identity allocation
    PREFIX_EXHAUSTED_POLICY: Literal["extend", "reject", "allow"] = "extend"
    ALLOCATION_ATTEMPTS: int = Field(default=3, ge=1)

    # ---- Distribution
    DISTRIBUTION_ATTEMPTS: int = Field(default=3, ge=1)
    DISTRIBUTION_COMMIT_MODE: Literal["atomic", "per_unit"] = "atomic"
    RETRY_BACKOFF: float = Field(default=0.05, ge=0)

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, value: object) -> str:
        if value in (None, ""):
            return "INFO"
        return str(value).strip().upper()

    @property
    def is_sqlite(self) -> bool:
        return self.DB_URL.startswith("sqlite")


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    settings = AppSettings()
    settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
    return settings


settings = get_settings()
