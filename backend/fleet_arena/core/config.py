"""Runtime configuration helpers.

Classes:
    Settings: Pydantic settings model capturing environment-driven defaults.

Functions:
    get_settings(): Return a cached Settings instance for dependency injection.
"""

from functools import lru_cache

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Fleet Arena Gateway"
    app_url: str = "http://localhost:3000"
    database_url: str = "sqlite+aiosqlite:///./data/fleet_arena.db"
    # Comma-separated pool, rotated round-robin per request.
    openrouter_api_key: SecretStr | None = None
    openrouter_url: str = "https://openrouter.ai/api/v1/chat/completions"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    model_timeout_seconds: float = 90.0
    max_retries: int = 2
    retry_base_seconds: float = 1.0
    retry_cap_seconds: float = 15.0
    max_output_tokens: int = 1024
    judge_model: str = "anthropic/claude-sonnet-4.6"
    judge_max_tokens: int = 2048
    judge_temperature: float = 0.1
    judge_content_limit: int = 800
    judge_retries: int = 3
    judge_concurrency: int = 10
    # Must outlast the slowest single step, the judge call included.
    job_lease_seconds: float = 300.0
    redis_url: str | None = None
    rate_limit_requests: int = 20
    rate_limit_window_seconds: float = 60.0
    rate_limit_prefix: str = "fleet-arena:rl"
    backfill_interval_seconds: float = 6 * 60 * 60
    backfill_batch_size: int = 50
    enable_background_jobs: bool = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()
