"""Configuration objects and helpers for the booking agent."""

from __future__ import annotations

from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration sourced from environment variables."""

    base_url: str = Field(..., alias="WODBUSTER_BASE_URL")
    encryption_key: SecretStr = Field(..., alias="WODBUSTER_ENCRYPTION_KEY")
    headless: bool = Field(True, alias="HEADLESS")
    timeout_seconds: int = Field(30, alias="TIMEOUT_SECONDS")
    booking_timeout_minutes: float = Field(15, alias="BOOKING_TIMEOUT_MINUTES")
    batch_timeout_minutes: float = Field(10, alias="BATCH_TIMEOUT_MINUTES")
    trigger_day_of_week: str = Field("sat", alias="TRIGGER_DAY_OF_WEEK")
    trigger_hour: int = Field(11, alias="TRIGGER_HOUR")
    trigger_minute: int = Field(55, alias="TRIGGER_MINUTE")
    timezone: str = Field("UTC", alias="TIMEZONE")
    jitter_base_ms: int = Field(800, alias="JITTER_BASE_MS")
    jitter_spread_ms: int = Field(400, alias="JITTER_SPREAD_MS")
    settle_seconds: float = Field(3.0, alias="SETTLE_SECONDS")
    session_ttl_hours: int = Field(24, alias="SESSION_TTL_HOURS")
    test_email: Optional[str] = Field(None, alias="TEST_EMAIL")
    test_password: Optional[SecretStr] = Field(None, alias="TEST_PASSWORD")

    model_config = SettingsConfigDict(
        env_file=(".env",),
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        """Normalise the site root so paths can be appended safely."""
        value = value.strip().rstrip("/")
        if not value:
            raise ValueError("base_url must not be empty")
        return value

    @field_validator("jitter_spread_ms")
    @classmethod
    def positive_spread(cls, value: int) -> int:
        if value < 1:
            raise ValueError("jitter_spread_ms must be at least 1")
        return value

    @property
    def login_url(self) -> str:
        """Page hosting the credentials form."""
        return f"{self.base_url}/user"

    @property
    def schedule_url(self) -> str:
        """Protected page used to check whether a session is still accepted."""
        return f"{self.base_url}/schedule"

    @property
    def timeout_ms(self) -> int:
        return self.timeout_seconds * 1000
