from functools import lru_cache
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

    # Database / logging
    DATABASE_URL: str = "sqlite:///./rentbot.db"
    LOG_LEVEL: str = "INFO"

    # WhatsApp Cloud API credentials
    WHATSAPP_API_TOKEN: str = ""
    WHATSAPP_PHONE_NUMBER_ID: str = ""
    WHATSAPP_API_BASE_URL: str = "https://graph.facebook.com"
    WHATSAPP_API_VERSION: str = "v24.0"

    # Webhook security
    WHATSAPP_VERIFY_TOKEN: str = ""
    WHATSAPP_APP_SECRET: str = ""
    WHATSAPP_ENFORCE_SIGNATURE: bool = False

    # Flows: private key is either a PEM literal or a path to a PEM file
    WHATSAPP_FLOW_PRIVATE_KEY: str = ""
    WHATSAPP_FLOW_PRIVATE_KEY_PASSPHRASE: str = ""
    WHATSAPP_FLOW_ID: str = ""
    FLOW_RESPONSE_IV_MODE: str = "invert"
    ENABLE_SEARCH_FLOW: bool = False

    # Conversation policy
    WHATSAPP_FREE_WINDOW_MS: int = 86_400_000
    DRAFT_TTL_MINUTES: int = 1440
    SEARCH_RESULTS_LIMIT: int = 3
    DEDUP_TTL_SECONDS: int = 300
    DEFAULT_COUNTRY_CODE: str = "263"
    CONTACT_FEE: float = 1.0

    # Outbound HTTP
    OUTBOUND_TIMEOUT_SECONDS: float = 10.0
    OUTBOUND_RETRY_ATTEMPTS: int = 3


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
