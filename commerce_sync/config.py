"""
Configuration management for the sync engine
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Engine settings"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Application
    app_name: str = "Commerce Sync Engine"
    environment: str = "development"
    log_level: str = "INFO"
    log_dir: str = ""  # Empty = console only

    # Canonical store
    database_url: str = "sqlite:///./commerce_sync.db"

    # Sync engine
    sync_batch_size: int = 100
    sync_retry_attempts: int = 3
    sync_timeout: int = 30000  # milliseconds, per connector call
    sync_retry_base_delay: float = 1.0  # seconds
    sync_retry_max_delay: float = 60.0  # seconds
    sync_retry_jitter: bool = False
    sync_parallelism: int = 4
    # Estimated in-memory size of one processed record, used as the
    # adaptive batching signal
    sync_record_size_bytes: int = 10240

    # Scheduling
    sync_timezone: str = "UTC"

    # Notifications
    notification_webhook_url: Optional[str] = None
    notification_timeout: float = 30.0

    # Platforms
    shopify_api_version: str = "2024-01"
    woocommerce_api_version: str = "wc/v3"
    stripe_api_base: str = "https://api.stripe.com/v1"

    @property
    def sync_timeout_seconds(self) -> float:
        return self.sync_timeout / 1000.0


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
