"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


ALLOWED_INTERVAL_HOURS = (6, 12, 24, 48, 168)


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1024, le=65535)
    debug: bool = Field(default=False)
    workers: int = Field(default=1, ge=1, le=8)

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/paper_alerts.db")
    database_echo: bool = Field(default=False)
    database_pool_size: int = Field(default=5, ge=1, le=100)
    database_max_overflow: int = Field(default=10, ge=0, le=100)

    # Result Cache Configuration
    redis_url: Optional[str] = Field(default=None)
    cache_backend: Literal["rest", "redis"] = Field(default="rest")
    cache_prefix: str = Field(default="papers", min_length=1)
    cache_ttl: int = Field(default=3600, ge=1)
    cache_timeout: float = Field(default=5.0, gt=0, le=60.0)

    # Rate Limiting
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_window: int = Field(default=60, ge=1)
    rate_limit_send_requests: int = Field(default=20, ge=1)
    rate_limit_search_requests: int = Field(default=30, ge=1)
    rate_limit_sweep_interval: int = Field(default=300, ge=1)
    rate_limit_retention: int = Field(default=600, ge=1)

    # Subscriptions
    max_subscriptions_per_user: int = Field(default=10, ge=1)
    default_interval_hours: int = Field(default=24)
    topic_max_length: int = Field(default=100, ge=1)

    # Subscription Worker
    worker_concurrency: int = Field(default=4, ge=1, le=32)
    worker_subscription_timeout: float = Field(default=60.0, gt=0)
    worker_run_deadline: float = Field(default=240.0, gt=0)
    worker_batch_limit: int = Field(default=100, ge=1)
    worker_results_per_subscription: int = Field(default=10, ge=1, le=100)
    worker_cron: str = Field(default="0 */6 * * *")
    worker_schedule_enabled: bool = Field(default=False)

    # arXiv Provider
    arxiv_api_url: str = Field(default="https://export.arxiv.org/api/query")
    arxiv_timeout: float = Field(default=30.0, gt=0, le=300)
    arxiv_min_interval: float = Field(default=3.0, ge=0)
    arxiv_max_retries: int = Field(default=3, ge=1, le=10)
    arxiv_retry_delay: float = Field(default=1.0, ge=0, le=10.0)

    # Telegram
    telegram_bot_token: Optional[str] = Field(default=None)
    telegram_parse_mode: str = Field(default="HTML")

    # Trigger authorization
    cron_secret: Optional[str] = Field(default=None)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite"):
            if ":///" in v:
                db_path = v.split("///")[1]
                if db_path and db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("default_interval_hours")
    @classmethod
    def validate_default_interval(cls, v):
        if v not in ALLOWED_INTERVAL_HOURS:
            raise ValueError(f"default_interval_hours must be one of {ALLOWED_INTERVAL_HOURS}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not self.debug

    @property
    def uses_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
