from functools import lru_cache

from mir_shared.constants import ISSUE_FRESHNESS_SECONDS, RESOLUTION_FRESHNESS_SECONDS
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = ""
    direct_database_url: str = ""

    environment: str = "development"
    cors_origins: str = "http://localhost:3000"

    redis_url: str = ""

    github_api_url: str = "https://api.github.com"
    git_token: str = ""  # Credential for scheduled and resumed syncs
    webhook_secret: str = ""

    # Staleness policy windows
    issue_freshness_seconds: int = ISSUE_FRESHNESS_SECONDS
    resolution_freshness_seconds: int = RESOLUTION_FRESHNESS_SECONDS

    # Sync orchestration
    sync_lease_seconds: int = 1800  # A syncing flag older than this is an abandoned lease
    sync_step_max_attempts: int = 3
    sync_step_retry_delay_seconds: float = 1.0
    scheduled_sync_interval_hours: int = 24

    # Webhook delivery dedup fast path
    webhook_delivery_ttl_seconds: int = 86400

    # Janitor config
    notification_retention_days: int = 30

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
