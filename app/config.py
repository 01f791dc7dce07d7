from functools import lru_cache
from typing import Literal, Optional

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

    # Storage
    DATABASE_URL: str = "sqlite:///./messages.db"
    STORE_BACKEND: Literal["sql", "memory"] = "sql"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Webhook security. An empty WEBHOOK_SECRET disables signature checks.
    WEBHOOK_SECRET: Optional[str] = None
    WEBHOOK_VERIFY_TOKEN: str = "washield_verify_token"

    # Provider (WhatsApp Cloud API)
    PROVIDER_API_URL: str = "https://graph.facebook.com/v18.0"
    PROVIDER_PHONE_NUMBER_ID: Optional[str] = None
    PROVIDER_ACCESS_TOKEN: Optional[str] = None
    DEFAULT_COUNTRY_CODE: str = "91"

    # Provider retry policy: delay = base * multiplier ** attempt
    PROVIDER_MAX_RETRIES: int = 3
    PROVIDER_RETRY_BASE_DELAY: float = 1.0
    PROVIDER_RETRY_MULTIPLIER: float = 2.0
    PROVIDER_TIMEOUT_SECONDS: float = 15.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
