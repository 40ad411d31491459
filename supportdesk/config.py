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

    # Database
    DATABASE_URL: str = "sqlite:///./supportdesk.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Shared secrets (unset = not enforced)
    WEBHOOK_TOKEN: Optional[str] = None
    WS_TOKEN: Optional[str] = None

    # WhatsApp gateway providers
    GATEWAY_PROVIDER: str = "evolution"
    EVOLUTION_API_URL: str = "http://localhost:8081"
    EVOLUTION_API_KEY: str = ""
    WAHA_API_URL: str = "http://localhost:3001"
    WAHA_API_KEY: str = ""
    GATEWAY_TIMEOUT: float = 15.0

    # Phone numbers without country code get this prefix
    DEFAULT_COUNTRY_CODE: str = "55"

    # Chatbot
    COMPANY_NAME: str = "Fi.V App"
    TIMEZONE: str = "America/Sao_Paulo"
    BUSINESS_HOURS_START: int = 9
    BUSINESS_HOURS_END: int = 18
    DEFAULT_RESPONSE_DELAY: float = 3.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
