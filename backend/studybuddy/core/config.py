# backend/studybuddy/core/config.py
from decimal import Decimal
import logging
import os
from pathlib import Path
from typing import List, Optional

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
    logger.info(f"[CONFIG] Looking for .env at: {env_path}")
    load_dotenv(env_path)


PROD_SITE_MODES = {"prod", "production", "live"}


class Settings(BaseSettings):
    # Core
    secret_key: SecretStr = Field(
        default=SecretStr("dev-secret-key-change-me"),
        description="Signing key for bearer tokens issued by the identity service",
    )
    algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    environment: str = (
        "production"
        if os.getenv("SITE_MODE", "local").strip().lower() in PROD_SITE_MODES
        else "development"
    )
    is_testing: bool = Field(default=False, description="Set by the test harness")

    # Persistence
    database_url: str = Field(
        default="postgresql://localhost:5432/studybuddy",
        description="SQLAlchemy database URL",
    )
    redis_url: str = "redis://localhost:6379"
    celery_task_always_eager: bool = Field(
        default=False, description="Run Celery tasks inline (tests and local tooling)"
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
    stripe_currency: str = Field(default="usd", description="Default currency for payments")
    stripe_timeout_seconds: int = Field(
        default=8, description="Network timeout applied to every Stripe API call"
    )

    # Fee model
    platform_fee_rate: Decimal = Field(
        default=Decimal("0.15"),
        description="Platform fee as a fraction of the session amount (0.15 = 15%)",
    )
    processor_fee_rate: Decimal = Field(
        default=Decimal("0.029"), description="Processor percentage fee (0.029 = 2.9%)"
    )
    processor_fee_fixed_cents: int = Field(
        default=30, description="Processor flat fee per charge in cents"
    )

    # Booking policy
    booking_lead_time_hours: int = Field(
        default=3, description="Minimum hours between now and session start"
    )
    allowed_session_durations: List[int] = Field(
        default=[30, 60, 90], description="Session lengths offered to students (minutes)"
    )
    min_session_minutes: int = Field(default=30)
    max_session_minutes: int = Field(default=120)
    availability_horizon_days: int = Field(
        default=28, description="How far ahead slots may be listed or booked"
    )
    slot_step_minutes: int = Field(default=30, description="Grid for candidate slot starts")
    enforce_availability: bool = Field(
        default=True,
        description="Reject bookings that fall outside the tutor's weekly availability",
    )
    default_timezone: str = Field(default="America/Los_Angeles")
    auto_confirm_after_hours: int = Field(
        default=24, description="Hours after session end before the system confirms both sides"
    )

    # Payment gateway retry policy
    payment_retry_max_attempts: int = Field(default=3)
    payment_retry_backoff_seconds: List[float] = Field(
        default=[0.5, 1.0, 2.0],
        description="Sleep before each retry; the last value repeats if attempts exceed it",
    )

    # Notifications
    notification_webhook_url: Optional[str] = Field(
        default=None, description="Endpoint receiving session notifications (logged when unset)"
    )
    notification_timeout_seconds: float = Field(default=5.0)

    # Zoom (server-to-server OAuth)
    zoom_account_id: str = Field(default="")
    zoom_client_id: str = Field(default="")
    zoom_client_secret: SecretStr = Field(default=SecretStr(""))
    zoom_api_base_url: str = Field(default="https://api.zoom.us/v2")
    zoom_oauth_url: str = Field(default="https://zoom.us/oauth/token")

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("platform_fee_rate", "processor_fee_rate")
    @classmethod
    def _validate_rate(cls, value: Decimal) -> Decimal:
        if value < 0 or value >= 1:
            raise ValueError("fee rates must be fractions in [0, 1)")
        return value

    @field_validator("allowed_session_durations")
    @classmethod
    def _validate_durations(cls, value: List[int]) -> List[int]:
        if not value or any(minutes <= 0 for minutes in value):
            raise ValueError("allowed_session_durations must be positive minute counts")
        return sorted(set(value))

    @property
    def zoom_configured(self) -> bool:
        return bool(
            self.zoom_account_id
            and self.zoom_client_id
            and self.zoom_client_secret.get_secret_value()
        )


settings = Settings()
