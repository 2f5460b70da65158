"""
Service settings loaded from environment variables (and an optional .env file).
"""
from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Booking service configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    database_url: str = Field(default="sqlite:///./booking.db", description="SQLAlchemy connection string")

    # Downstream services
    reservation_service_url: str = Field(default="http://localhost:3003")
    payment_service_url: str = Field(default="http://localhost:3006")
    payment_service_api_key: str = Field(default="dev-key-123")
    provider_service_url: str = Field(default="http://localhost:3005")

    # Per-call timeouts (seconds); payment is allowed longer
    hold_timeout_seconds: float = 10.0
    payment_timeout_seconds: float = 30.0
    payment_status_timeout_seconds: float = 10.0
    provider_timeout_seconds: float = 10.0

    hold_ttl_minutes: int = Field(default=15, description="Lifetime of an unconfirmed reservation hold")

    # Money
    default_currency: str = "LKR"
    processing_fee_percent: float = Field(default=2.9, description="Applied once at charge time when the processor omits it")

    # Payment
    payment_required: bool = Field(default=True, description="False records a skipped payment step instead of charging")
    payment_gateway: Literal["service", "stripe"] = "service"
    stripe_api_key: str = ""

    # Availability
    guide_approval_locks_calendar: bool = True
    conflict_checked_service_types: List[str] = Field(default_factory=lambda: ["guide", "transportation"])

    # Logging
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = True


# Global settings instance
settings = Settings()
