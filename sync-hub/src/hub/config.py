"""Hub configuration using Pydantic Settings.

Values come from environment variables or `sync-hub/.env`. Relative paths
(sqlite database, log directory) resolve against the hub directory so the
server behaves the same whatever the working directory.
"""

from pathlib import Path
from typing import List, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

HUB_ROOT = Path(__file__).resolve().parents[2]

SQLITE_PREFIX = "sqlite+aiosqlite:///"


def anchor_sqlite_url(url: str, root: Path = HUB_ROOT) -> str:
    """Resolve a relative aiosqlite database path against `root`.

    Absolute paths, in-memory databases and other drivers pass through.
    """
    if not url.startswith(SQLITE_PREFIX):
        return url
    path = url[len(SQLITE_PREFIX):]
    if path.startswith("/") or path.startswith(":memory:"):
        return url
    return f"{SQLITE_PREFIX}{(root / path).resolve().as_posix()}"


class Settings(BaseSettings):
    """Chat sync Hub settings."""

    model_config = SettingsConfigDict(
        env_file=str(HUB_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # HTTP surface; chat routes are served at the root and under this prefix
    api_prefix: str = "/api"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    # Bearer tokens
    secret_key: str = Field(
        default="CHANGE-ME-IN-PRODUCTION",
        description="Secret key for JWT signing",
    )
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 43200  # 30 days

    # Chat store
    database_url: str = f"{SQLITE_PREFIX}chats.db"
    database_busy_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="How long a sqlite writer waits for a concurrent sync to commit.",
    )

    # Logging
    log_dir: Path = Path("logs")
    log_max_bytes: int = 1_048_576
    log_retention_days: int = Field(default=5, ge=0)
    uvicorn_log_level: str = "info"

    @field_validator("database_url")
    @classmethod
    def resolve_database_url(cls, value: str) -> str:
        return anchor_sqlite_url(value)

    @field_validator("log_dir", mode="before")
    @classmethod
    def resolve_log_dir(cls, value: Union[str, Path]) -> Path:
        path = Path(value)
        return path if path.is_absolute() else (HUB_ROOT / path).resolve()

    @field_validator("api_prefix")
    @classmethod
    def normalize_api_prefix(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if value and not value.startswith("/"):
            value = f"/{value}"
        return value

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith(SQLITE_PREFIX)


# Global settings instance
settings = Settings()
