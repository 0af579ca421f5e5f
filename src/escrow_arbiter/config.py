"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup, so a malformed value fails fast with a clear error message.

Usage:
    from escrow_arbiter.config import get_settings
    settings = get_settings()
    print(settings.database_url)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Escrow Arbiter."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://arbiter:arbiter_dev"
        "@localhost:5432/escrow_arbiter"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_command_timeout: int = 10  # seconds, asyncpg only
    db_echo_sql: bool = False
    db_create_tables: bool = False

    # --- Redis ---
    redis_url: str = "redis://localhost:6379/0"
    redis_idempotency_ttl_seconds: int = 86400  # 24 hours

    # --- Payment processor (Stripe) ---
    # With payment_simulate=True no request leaves the process; receipts are
    # generated locally. Flip it off and set STRIPE_SECRET_KEY for real money.
    payment_simulate: bool = True
    stripe_secret_key: str = ""
    stripe_api_version: str = "2024-06-20"
    stripe_max_network_retries: int = 2
    payment_timeout_seconds: float = 15.0

    # --- Notifications (SMTP) ---
    notifications_enabled: bool = False
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_sender: str = "disputes@escrow-arbiter.local"
    smtp_use_tls: bool = True
    notification_timeout_seconds: float = 20.0

    # --- Authorization ---
    admin_user_ids: str = ""

    # --- Settlement reconciliation ---
    settlement_stale_after_minutes: int = 15
    settlement_retry_batch_size: int = 50
    settlement_max_attempts: int = 5

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def admin_user_id_list(self) -> list[str]:
        """Parse the comma-separated admin allow-list into a list."""
        if not self.admin_user_ids:
            return []
        return [u.strip() for u in self.admin_user_ids.split(",") if u.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
