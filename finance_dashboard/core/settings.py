"""Configuration and environment settings for the Finance Dashboard API."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings for the Finance Dashboard API."""

    basiq_api_key: str | None = None
    basiq_base_url: str = "https://au-api.basiq.io"
    basiq_api_version: str = "3.0"
    basiq_consent_url: str = "https://consent.basiq.io"
    public_base_url: str = "http://localhost:3000"
    service_token_ttl_seconds: float = 1800.0
    http_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 5.0
    poll_max_attempts: int = 30
    poll_max_finished: int = 100
    report_poll_interval_seconds: float = 3.0
    report_poll_max_attempts: int = 10
    transactions_limit: int = 500
    log_file: str = "logs/finance_dashboard.log"
    server_host: str = "127.0.0.1"
    server_port: int = 8000

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache
def get_settings() -> "Settings":
    """Return the cached application settings."""
    return Settings()
