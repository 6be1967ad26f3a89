# backend/consultcore/core/config.py
import logging
import os
from decimal import Decimal
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug(f"[CONFIG] Looking for .env at: {env_path}")
    load_dotenv(env_path)


def is_running_tests() -> bool:
    """Detect if code is running under pytest."""
    return os.getenv("PYTEST_CURRENT_TEST") is not None


class Settings(BaseSettings):
    """Runtime configuration for the booking lifecycle engine."""

    environment: str = Field(default="development", description="development|production")
    database_url: str = Field(
        default="sqlite+pysqlite:///./consultcore.db",
        description="SQLAlchemy database URL",
    )
    redis_url: str = "redis://localhost:6379"
    lock_namespace: str = Field(default="consultcore", description="Prefix for Redis lock keys")

    public_base_url: str = Field(
        default="http://localhost:3000",
        description="Frontend root used for payment return URLs",
    )
    api_base_url: str = Field(
        default="http://localhost:8000",
        description="Public root of this API, used for gateway notify URLs",
    )
    meeting_base_url: str = Field(
        default="https://meet.jit.si",
        description="Base URL used to mint meeting links on confirmation",
    )
    cron_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Bearer token required by the internal sweep endpoint",
    )

    # Stripe Configuration
    stripe_secret_key: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret key for backend API calls",
    )
    stripe_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe webhook signing secret",
    )
    stripe_currency: str = Field(default="inr", description="Default currency for Stripe payments")

    # PayPal Configuration
    paypal_client_id: SecretStr = Field(default=SecretStr(""))
    paypal_client_secret: SecretStr = Field(default=SecretStr(""))
    paypal_webhook_id: str = Field(default="", description="Webhook id used for signature checks")
    paypal_mode: Literal["sandbox", "live"] = "sandbox"
    paypal_currency: str = Field(default="USD", description="PayPal does not settle INR orders")
    paypal_fx_rate: Decimal = Field(
        default=Decimal("83"),
        gt=0,
        description="Booking-currency units per PayPal currency unit (INR per USD)",
    )

    # Cashfree Configuration
    cashfree_app_id: SecretStr = Field(default=SecretStr(""))
    cashfree_secret_key: SecretStr = Field(default=SecretStr(""))
    cashfree_mode: Literal["sandbox", "production"] = "sandbox"
    cashfree_api_version: str = "2023-08-01"
    cashfree_currency: str = "INR"
    cashfree_default_phone: str = Field(
        default="9999999999", description="Sent when the payer has no phone on file"
    )

    # Gateway call policy
    gateway_timeout_seconds: float = Field(default=10.0, gt=0)
    gateway_max_retries: int = Field(default=2, ge=0, le=5)
    gateway_retry_backoff_seconds: float = Field(default=0.5, ge=0)

    # Booking lifecycle thresholds
    pending_booking_ttl_minutes: int = Field(
        default=30, description="Unpaid PENDING bookings older than this are cancelled"
    )
    completion_lookback_minutes: int = Field(
        default=60, description="Window after end_time in which the sweep auto-completes"
    )
    chat_window_hours: int = Field(default=24, description="Post-session chat lifetime")
    payment_deadline_minutes: int = Field(
        default=60, description="Payments are refused this close to start_time"
    )
    sweep_interval_minutes: int = Field(default=5, ge=1)
    sweep_batch_size: int = Field(default=200, ge=1)

    # Completion OTP
    completion_otp_ttl_minutes: int = 15
    completion_otp_issue_limit: int = Field(
        default=5, description="OTP issues allowed per booking per window"
    )
    completion_otp_verify_limit: int = Field(
        default=5, description="Completion attempts allowed per booking per window"
    )
    completion_otp_rate_window_seconds: int = 900

    # Locks
    booking_lock_ttl_seconds: int = 90
    booking_lock_wait_seconds: float = 3.0
    sweep_lock_ttl_seconds: int = 240

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("database_url")
    @classmethod
    def _normalize_postgres_scheme(cls, value: str) -> str:
        # Managed Postgres providers hand out postgres:// URLs
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def paypal_base_url(self) -> str:
        if self.paypal_mode == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    @property
    def cashfree_base_url(self) -> str:
        if self.cashfree_mode == "production":
            return "https://api.cashfree.com/pg"
        return "https://sandbox.cashfree.com/pg"


settings = Settings()
