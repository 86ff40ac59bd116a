# backend/trafikskola/core/config.py
from datetime import date
import logging
import os
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug(f"[CONFIG] Looking for .env at: {env_path}")
    load_dotenv(env_path)


class Settings(BaseSettings):
    """Application settings for the Trafikskola booking backend."""

    environment: Literal["development", "test", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )
    database_url: str = Field(
        default="sqlite+pysqlite:///./trafikskola.db",
        alias="DATABASE_URL",
        description="SQLAlchemy database URL",
    )
    redis_url: Optional[str] = Field(
        default="redis://localhost:6379/0",
        alias="REDIS_URL",
        description="Redis URL for rate limiting, slot locks and the Celery broker",
    )

    # Auth
    secret_key: SecretStr = Field(
        default=SecretStr("change-me-in-production"), description="JWT signing secret"
    )
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24

    # Public URLs used in gateway callbacks and admin action links
    public_url: str = Field(
        default="http://localhost:3000", description="Public base URL of the site"
    )
    admin_email: str = Field(default="admin@example.se", description="Payment admin inbox")
    school_timezone: str = Field(default="Europe/Stockholm", description="School local timezone")

    # Booking rules
    hold_window_minutes: int = Field(
        default=10, ge=1, description="Minutes a temp/on_hold booking blocks its slot"
    )
    booking_opens_from: Optional[date] = Field(
        default=None, description="Earliest date bookings may be placed on"
    )
    grouped_handledar_ids: list[str] = Field(
        default_factory=lambda: ["handledarutbildning-group"],
        description="Placeholder ids that stand for the handledar category, not a session",
    )
    slot_lock_ttl_seconds: int = 30

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True, description="Enable Redis rate limiting")
    booking_create_rate: str = Field(
        default="10/minute", description="Booking creation limit per client IP"
    )

    # Qliro gateway defaults (runtime values come from site_settings, category "payment")
    qliro_enabled: bool = False
    qliro_api_key: Optional[str] = None
    qliro_api_secret: Optional[SecretStr] = None
    qliro_environment: Literal["sandbox", "production"] = "sandbox"
    qliro_sandbox_url: str = "https://pago.qit.nu"
    qliro_production_url: str = "https://payments.qit.nu"
    qliro_webhook_secret: Optional[SecretStr] = Field(
        default=None, description="Shared secret for HMAC-SHA256 webhook signatures"
    )
    qliro_timeout_seconds: float = Field(default=30.0, gt=0)
    qliro_retry_attempts: int = Field(default=3, ge=1)
    qliro_retry_backoff_seconds: float = Field(default=1.0, ge=0)
    qliro_duplicate_recovery_attempts: int = Field(default=2, ge=1)
    qliro_order_expiry_hours: int = Field(default=24, ge=1)
    qliro_callback_token_ttl_hours: int = Field(default=48, ge=1)
    gateway_settings_cache_ttl_seconds: int = Field(default=300, ge=0)

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("public_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("redis_url", mode="before")
    @classmethod
    def _empty_redis_url(cls, v: Optional[str]) -> Optional[str]:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def qliro_base_url(self) -> str:
        if self.qliro_environment == "production":
            return self.qliro_production_url
        return self.qliro_sandbox_url


settings = Settings()
