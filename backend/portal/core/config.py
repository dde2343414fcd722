# backend/portal/core/config.py
from datetime import datetime
import logging
import os
from pathlib import Path
from typing import List, Literal

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import BRAND_NAME, DEFAULT_BOOKABLE_TIMESLOTS, TIMESLOT_FORMAT

_BACKEND_ROOT = Path(__file__).resolve().parents[2]

load_dotenv(_BACKEND_ROOT / ".env", override=False)

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    environment: Literal["development", "testing", "production"] = Field(
        default="development",
        description="Deployment environment; production disables mock collaborators",
    )
    database_url: str = Field(
        default="sqlite:///./portal.db",
        description="SQLAlchemy database URL",
    )
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str | None = Field(
        default=None,
        description="Optional broker override (defaults to redis_url)",
    )

    # Practice rules
    practice_timezone: str = Field(
        default="Europe/Amsterdam",
        description="Timezone used to interpret appointment date and timeslot",
    )
    currency: str = Field(default="eur", description="Invoice currency (ISO code, lower case)")
    session_price_initial: int = Field(default=75, description="Initial consultation fee")
    session_price_follow_up: int = Field(default=50, description="Follow-up consultation fee")
    late_reschedule_fee: int = Field(default=5, description="Flat fee for late reschedules")
    no_show_penalty_rate: float = Field(
        default=0.5, description="Share of the session price charged on a no-show"
    )
    late_reschedule_window_hours: int = 4
    modification_cutoff_minutes: int = 30
    appointment_duration_minutes: int = 60
    bookable_timeslots: List[str] = Field(
        default_factory=lambda: list(DEFAULT_BOOKABLE_TIMESLOTS),
        description="Daily start times clients can book (HH:MM, practice timezone)",
    )
    complete_program_monthly_amount: int = Field(
        default=150, description="Default monthly amount for the Complete Program"
    )
    max_billing_cycles: int = 3
    session_invoice_due_days: int = 14
    subscription_invoice_due_days: int = 7
    penalty_invoice_due_days: int = 7

    # Payments
    stripe_secret_key: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret key for backend API calls",
    )
    stripe_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe webhook signing secret",
    )

    # Email
    email_provider: Literal["console", "resend"] = Field(
        default="console",
        alias="EMAIL_PROVIDER",
        description="Email provider name",
    )
    resend_api_key: str | None = Field(
        default=None,
        alias="RESEND_API_KEY",
        description="API key for Resend provider (optional)",
    )
    from_email: str = f"{BRAND_NAME} <info@veenutrition.com>"
    admin_email: str = "admin@veenutrition.com"
    admin_name: str = "Vee Nutrition Admin"
    frontend_url: str = "http://localhost:5173"

    # Microsoft Teams (Graph API)
    microsoft_client_id: str = ""
    microsoft_client_secret: SecretStr = Field(default=SecretStr(""))
    microsoft_tenant_id: str = ""
    microsoft_organizer_user_id: str = Field(
        default="",
        description="Graph user id (or UPN) that owns the online meetings",
    )

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("bookable_timeslots")
    @classmethod
    def _normalize_timeslots(cls, value: List[str]) -> List[str]:
        try:
            slots = {datetime.strptime(slot.strip(), TIMESLOT_FORMAT).strftime(TIMESLOT_FORMAT) for slot in value}
        except ValueError as e:
            raise ValueError(f"bookable_timeslots must be HH:MM values: {e}")
        if not slots:
            raise ValueError("bookable_timeslots cannot be empty")
        return sorted(slots)

    @field_validator("no_show_penalty_rate")
    @classmethod
    def _validate_penalty_rate(cls, value: float) -> float:
        if not 0 <= value <= 1:
            raise ValueError("no_show_penalty_rate must be between 0 and 1")
        return value

    @property
    def teams_configured(self) -> bool:
        return bool(
            self.microsoft_client_id
            and self.microsoft_client_secret.get_secret_value()
            and self.microsoft_tenant_id
            and self.microsoft_organizer_user_id
        )

    @property
    def broker_url(self) -> str:
        return self.celery_broker_url or self.redis_url


settings = Settings()
