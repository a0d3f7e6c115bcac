import json
import re
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_cors_origins(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, list):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []
    if raw == "*":
        return ["*"]

    # Prefer JSON, but tolerate comma/space separated values.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    origins: list[str] = []
    for part in (p for p in re.split(r"[,\s]+", raw) if p):
        if part == "*":
            return ["*"]
        if part not in origins:
            origins.append(part)
    return origins


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # PostgreSQL settings
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "orgquota"
    # No default: must come from the environment when DATABASE_URL is unset
    db_password: str = ""
    db_name: str = "orgquota"

    # Connection pool settings
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_pool_timeout: int = 30  # Seconds to wait for a pooled connection
    db_pool_recycle: int = 300
    db_pool_pre_ping: bool = True

    # Per-statement timeout (asyncpg) in seconds
    db_command_timeout: float = 30.0

    # SQLite busy timeout in seconds; bounds how long a serializable writer
    # waits for the write lock before surfacing a conflict
    db_sqlite_busy_timeout: float = 5.0

    # Explicit DATABASE_URL (takes priority over db_* settings)
    database_url_override: str = Field(default="", validation_alias="DATABASE_URL")

    @property
    def database_url(self) -> str:
        """Build database connection URL.

        Priority:
        1. database_url_override (from DATABASE_URL env var or .env file)
        2. Built from db_* settings
        """
        if self.database_url_override:
            return self.database_url_override

        if not self.db_password:
            raise ValueError(
                "DB_PASSWORD must be set when DATABASE_URL is not provided"
            )
        return (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}@"
            f"{self.db_host}:{self.db_port}/{self.db_name}"
        )

    # Ledger settings
    default_currency: str = "IDR"
    allocation_max_retries: int = 2  # Re-runs on TransactionConflict; 0 disables
    allocation_retry_base_delay: float = 0.05
    allocation_retry_max_delay: float = 1.0

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("db_pool_size", "db_max_overflow")
    @classmethod
    def validate_pool_size_positive(cls, v: int) -> int:
        """Validate pool_size is positive."""
        if v < 1:
            raise ValueError("pool size values must be at least 1")
        return v

    @field_validator("allocation_max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("allocation_max_retries cannot be negative")
        return v

    @field_validator("db_command_timeout", "db_sqlite_busy_timeout")
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("default_currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        v = v.strip().upper()
        if len(v) != 3:
            raise ValueError("default_currency must be a 3-letter code")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
