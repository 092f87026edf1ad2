from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./loyalty_engine.db"
    log_level: str = "INFO"

    # Square API
    square_api_base_url: str = "https://connect.squareup.com/v2"
    square_api_version: str = "2025-01-16"
    square_request_timeout_seconds: float = 15.0
    square_search_timeout_seconds: float = 20.0
    square_max_retries: int = 3
    square_default_retry_after_seconds: float = 5.0

    # Square webhooks
    square_webhook_signature_key: str = ""
    square_webhook_notification_url: str = "http://localhost:8000/api/v1/webhooks/square"
    # Comma separated, e.g. "inventory.count.updated,catalog.version.updated"
    square_webhook_ignored_event_types: str = ""

    # Shared key for internal loyalty routes; empty disables the check
    internal_api_key: str = ""

    # Stored credential encryption (Fernet key, urlsafe base64)
    token_encryption_key: str = ""

    # Loyalty engine
    loyalty_default_window_months: int = 12
    order_processing_cache_ttl_seconds: int = 120
    order_processing_cache_max_entries: int = 5000

    # Reward expiry worker
    reward_expiry_worker_enabled: bool = False
    reward_expiry_interval_seconds: int = 60 * 60

    @property
    def ignored_webhook_event_types(self) -> frozenset[str]:
        return frozenset(item.strip() for item in self.square_webhook_ignored_event_types.split(",") if item.strip())


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
