from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service configuration. Process environment wins over `.env`."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Required
    DATABASE_URL: str

    LOG_LEVEL: str

    # Stream signs webhook bodies with the API secret, so this is usually
    # the same value as STREAM_API_SECRET.
    WEBHOOK_SECRET: str
    WEBHOOK_VERIFY_SIGNATURE: bool = True

    # Shared secret for the cron-triggered sweeps
    CRON_SECRET: str

    # HS256 key used to verify session tokens issued by the auth provider
    SESSION_SECRET: str

    # Stream Chat
    STREAM_API_KEY: str
    STREAM_API_SECRET: str
    STREAM_BASE_URL: str = "https://chat.stream-io-api.com"
    STREAM_TIMEOUT_SECONDS: float = 10.0
    CHAT_SYSTEM_USER_ID: str = "system"
    CHAT_CHANNEL_TYPE: str = "messaging"

    # Notification timing
    EMAIL_NOTIFICATION_DELAY_MINUTES: int = 60
    CHAT_EXPIRY_GRACE_HOURS: int = 6

    # Outgoing mail
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_USE_TLS: bool = True
    EMAIL_FROM: str = '"Sunshine App" <no-reply@sunshine-app.com>'
    APP_URL: str = "https://app.sunshinedogs.app"


@lru_cache()
def get_settings() -> Settings:
    """Settings are read once per process; tests call `cache_clear()` after changing env."""
    return Settings()


settings = get_settings()
