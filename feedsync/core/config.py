"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Sync engine settings driven entirely by FEEDSYNC_* environment variables."""

    # Durable Store
    cache_backend: Literal["sqlite", "redis", "memory"] = Field(default="sqlite")
    database_url: str = Field(default="sqlite+aiosqlite:///./data/feedsync.db")
    database_echo: bool = Field(default=False)
    redis_url: Optional[str] = Field(default=None)

    # Cache Configuration
    cache_namespace: str = Field(default="app_cache", min_length=1)
    cache_ttl: float = Field(default=900.0, gt=0)  # 15 minutes

    # Paging
    page_size: int = Field(default=10, ge=1, le=200)

    # Timeouts (seconds)
    background_refresh_timeout: float = Field(default=5.0, gt=0)
    mutation_timeout: float = Field(default=15.0, gt=0)
    silent_refresh_delay: float = Field(default=0.5, ge=0)

    # Realtime
    realtime_connect_timeout: float = Field(default=3.0, gt=0)
    realtime_poll_interval: float = Field(default=15.0, gt=0)

    # Foreground Resume
    resume_stale_threshold: float = Field(default=30.0, ge=0)
    resume_debounce: float = Field(default=1.0, ge=0)

    # Remote RPC backend
    remote_url: Optional[str] = Field(default=None)
    remote_api_key: Optional[str] = Field(default=None)
    remote_timeout: float = Field(default=10.0, gt=0)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for file-backed SQLite."""
        if v and v.startswith("sqlite") and ":///" in v:
            db_path = v.split("///", 1)[1]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def uses_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = {
        "env_prefix": "FEEDSYNC_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
