"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="127.0.0.1", env="HOST")
    port: int = Field(default=3010, env="PORT", ge=1024, le=65535)
    debug: bool = Field(default=False, env="DEBUG")
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"], env="CORS_ORIGINS")

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/engine.db", env="DATABASE_URL")
    database_echo: bool = Field(default=False, env="DATABASE_ECHO")
    database_pool_size: int = Field(default=20, env="DATABASE_POOL_SIZE", ge=5, le=100)
    database_max_overflow: int = Field(default=30, env="DATABASE_MAX_OVERFLOW", ge=10, le=100)

    # Cache Configuration
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    redis_enabled: bool = Field(default=False, env="REDIS_ENABLED")
    cache_ttl: int = Field(default=3600, env="CACHE_TTL", ge=60)

    # Step log
    step_log_backend: Literal["database", "cache"] = Field(default="database", env="STEP_LOG_BACKEND")
    step_result_ttl: int = Field(default=604800, env="STEP_RESULT_TTL", ge=3600)  # 7 days

    # Execution Engine
    max_parallel_nodes: int = Field(default=4, env="MAX_PARALLEL_NODES", ge=1, le=64)
    run_lock_timeout: int = Field(default=3600, env="RUN_LOCK_TIMEOUT", ge=10)
    max_delay_seconds: float = Field(default=3600.0, env="MAX_DELAY_SECONDS", ge=0)
    http_timeout: float = Field(default=30.0, env="HTTP_TIMEOUT", ge=1.0, le=300.0)

    # Worker
    worker_enabled: bool = Field(default=True, env="WORKER_ENABLED")
    worker_concurrency: int = Field(default=2, env="WORKER_CONCURRENCY", ge=1, le=32)
    worker_poll_interval: float = Field(default=1.0, env="WORKER_POLL_INTERVAL", ge=0.05, le=60.0)
    recovery_on_startup: bool = Field(default=True, env="RECOVERY_ON_STARTUP")
    recovery_sweep_interval: float = Field(default=60.0, env="RECOVERY_SWEEP_INTERVAL", ge=1.0)
    recovery_stale_after: float = Field(default=30.0, env="RECOVERY_STALE_AFTER", ge=0.0)

    # Scheduled triggers
    scheduler_enabled: bool = Field(default=True, env="SCHEDULER_ENABLED")
    scheduler_timezone: str = Field(default="UTC", env="SCHEDULER_TIMEZONE")

    # Status channel
    status_buffer_size: int = Field(default=256, env="STATUS_BUFFER_SIZE", ge=1)

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite") and ":memory:" not in v:
            if ":///" in v:
                db_path = v.split("///")[1]
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        if v not in ("json", "console"):
            raise ValueError("log_format must be 'json' or 'console'")
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
