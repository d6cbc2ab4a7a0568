from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Messages whose content starts with this token are forwarded to the bot
    BOT_MENTION_TRIGGER: str = "@Shark"

    # External collaborators, disabled when unset
    BOT_NOTIFY_URL: Optional[str] = None
    TEXT_GENERATION_URL: Optional[str] = None
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # Realtime fanout: max buffered events per subscriber before it is dropped
    EVENT_QUEUE_SIZE: int = 200

    # Upper bound for a single history page
    MAX_PAGE_SIZE: int = 50


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
