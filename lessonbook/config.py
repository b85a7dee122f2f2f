"""
Type-safe configuration using Pydantic Settings
Validates environment variables and provides sensible defaults
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from urllib.parse import quote


class LessonbookConfig(BaseSettings):
    """
    Booking engine configuration with validation
    Automatically loads from environment variables and .env file
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # Database settings
    database_url: str = Field(
        "sqlite:///lessonbook.db", description="SQLAlchemy URL of the record store"
    )

    # Schedule settings (working hours + buffer policy)
    schedule_file: Optional[str] = Field(
        None, description="JSON file with working_hours and buffer_policy sections"
    )

    # External calendar connector
    calendar_api_url: str = Field(
        "https://www.googleapis.com/calendar/v3",
        description="Base URL of the calendar provider API",
    )
    calendar_id: str = Field("primary", description="Admin calendar to read")
    calendar_access_token: Optional[str] = Field(
        None, description="Bearer token for the admin calendar"
    )
    calendar_timeout: float = Field(
        10.0, gt=0, le=60, description="Calendar request timeout in seconds"
    )

    # Booking workflow
    confirm_on_debit: bool = Field(
        True,
        description="Mark bookings confirmed as soon as the quota debit succeeds",
    )

    # Telegram front end (only needed to run the bot)
    telegram_bot_token: Optional[str] = Field(
        None, description="Telegram Bot API token from @BotFather"
    )

    log_level: str = Field("INFO", description="Root log level for entry points")

    @field_validator("telegram_bot_token")
    @classmethod
    def validate_telegram_token(cls, v: Optional[str]) -> Optional[str]:
        """Validate Telegram bot token format"""
        if v is None:
            return v
        if not v or v == "your_bot_token_here":
            raise ValueError(
                "TELEGRAM_BOT_TOKEN must be set to a valid token from @BotFather"
            )
        if ":" not in v:
            raise ValueError(
                "TELEGRAM_BOT_TOKEN appears to be invalid (should contain ':')"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Accept standard logging level names only"""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    def get_calendar_url(self) -> str:
        """Metadata endpoint of the admin calendar"""
        return f"{self.calendar_api_url.rstrip('/')}/calendars/{quote(self.calendar_id, safe='')}"

    def get_events_url(self) -> str:
        """Events endpoint of the admin calendar"""
        return f"{self.get_calendar_url()}/events"


# Singleton instance
_config: Optional[LessonbookConfig] = None


def get_config() -> LessonbookConfig:
    """
    Get or create the global configuration instance

    Returns:
        LessonbookConfig: Validated configuration

    Raises:
        ValidationError: If configuration is invalid
    """
    global _config
    if _config is None:
        _config = LessonbookConfig()
    return _config
