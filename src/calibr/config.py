"""Runtime configuration loaded from the environment and `.env`.

Settings are grouped per concern (database, redis, forecast defaults,
attestation, leaderboard) and validated once at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

_SUPPORTED_DB_SCHEMES = (
    "postgresql://",
    "postgresql+asyncpg://",
    "sqlite://",
    "sqlite+aiosqlite://",
)


class DatabaseSettings(BaseSettings):
    """Where forecasts, calibrations and attestations are stored."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (production) or SQLite (local) connection string",
    )
    pool_size: int = Field(
        default=5,
        alias="DATABASE_POOL_SIZE",
        ge=1,
        le=100,
        description="Connection pool size",
    )
    echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Echo SQL statements for debugging",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(_SUPPORTED_DB_SCHEMES):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        return v


class RedisSettings(BaseSettings):
    """Optional Redis backing the leaderboard page cache."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string (leaderboard cache disabled when unset)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class ForecastSettings(BaseSettings):
    """Forecast journaling defaults."""

    model_config = SettingsConfigDict(env_prefix="FORECAST_", extra="ignore")

    default_kelly_fraction: float = Field(
        default=0.5,
        alias="FORECAST_DEFAULT_KELLY_FRACTION",
        ge=0.0,
        le=1.0,
        description="Kelly multiplier applied when a request omits kellyFraction",
    )
    default_confidence: float = Field(
        default=0.5,
        alias="FORECAST_DEFAULT_CONFIDENCE",
        ge=0.0,
        le=1.0,
        description="Confidence recorded when a request omits it",
    )
    default_page_size: int = Field(
        default=20,
        alias="FORECAST_DEFAULT_PAGE_SIZE",
        ge=1,
        le=100,
        description="Default number of forecasts per list page",
    )
    max_page_size: int = Field(
        default=100,
        alias="FORECAST_MAX_PAGE_SIZE",
        ge=1,
        le=1000,
        description="Upper bound on forecasts per list page",
    )
    recent_window: int = Field(
        default=5,
        alias="FORECAST_RECENT_WINDOW",
        ge=1,
        le=100,
        description="Number of recent forecasts used for average-edge stats",
    )


class AttestationSettings(BaseSettings):
    """EAS attestation recording settings."""

    model_config = SettingsConfigDict(env_prefix="ATTESTATION_", extra="ignore")

    default_chain_id: int = Field(
        default=84532,
        alias="ATTESTATION_DEFAULT_CHAIN_ID",
        description="Chain ID assumed when a callback omits it (Base Sepolia=84532)",
    )
    schema_name: str = Field(
        default="CalibrForecast",
        alias="ATTESTATION_SCHEMA_NAME",
        description="EAS schema name recorded alongside attestations",
    )


class LeaderboardSettings(BaseSettings):
    """Leaderboard read-path settings."""

    model_config = SettingsConfigDict(env_prefix="LEADERBOARD_", extra="ignore")

    cache_ttl_seconds: int = Field(
        default=30,
        alias="LEADERBOARD_CACHE_TTL_SECONDS",
        ge=1,
        le=86_400,
        description="TTL for cached leaderboard pages",
    )
    default_page_size: int = Field(
        default=50,
        alias="LEADERBOARD_DEFAULT_PAGE_SIZE",
        ge=1,
        le=500,
        description="Default number of entries per leaderboard page",
    )
    max_page_size: int = Field(
        default=100,
        alias="LEADERBOARD_MAX_PAGE_SIZE",
        ge=1,
        le=1000,
        description="Upper bound on entries per leaderboard page",
    )


def _nested(settings_cls: type[BaseSettings]) -> Any:
    # Nested sections only see `.env` when handed the file explicitly.
    return Field(
        default_factory=lambda: settings_cls(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )


class Settings(BaseSettings):
    """Process-wide Calibr configuration.

    Each section reads its own variables from the environment or `.env`;
    only ``DATABASE_URL`` is mandatory.

    Example:
        ```python
        settings = get_settings()
        logging.basicConfig(level=settings.get_logging_level())
        db = DatabaseManager.from_settings(settings.database)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    database: DatabaseSettings = _nested(DatabaseSettings)
    redis: RedisSettings = _nested(RedisSettings)
    forecast: ForecastSettings = _nested(ForecastSettings)
    attestation: AttestationSettings = _nested(AttestationSettings)
    leaderboard: LeaderboardSettings = _nested(LeaderboardSettings)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        return logging.getLevelNamesMapping()[self.log_level]

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Settings as printable strings, with connection passwords masked."""
        return {
            "database_url": _mask_password(self.database.url),
            "redis_url": _mask_password(self.redis.url) if self.redis.url else "(not set)",
            "forecast": _stringify(
                self.forecast, "default_kelly_fraction", "default_confidence", "max_page_size"
            ),
            "attestation": _stringify(self.attestation, "default_chain_id", "schema_name"),
            "leaderboard": _stringify(
                self.leaderboard, "cache_ttl_seconds", "default_page_size"
            ),
            "log_level": self.log_level,
        }


def _stringify(section: BaseSettings, *fields: str) -> dict[str, str]:
    return {name: str(getattr(section, name)) for name in fields}


def _mask_password(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url
    credentials, at, host = rest.rpartition("@")
    user, colon, _password = credentials.partition(":")
    if not at or not colon:
        return url
    return f"{scheme}://{user}:***@{host}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process.

    Raises:
        pydantic.ValidationError: ``DATABASE_URL`` is missing or a value is invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Forget the loaded settings so the next call re-reads the environment."""
    get_settings.cache_clear()
