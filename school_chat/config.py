from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Chat service settings, read from the environment (or `.env` as a fallback).

    DATABASE_URL, LOG_LEVEL and WEBHOOK_SECRET have no defaults; the service
    refuses to start without them.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    DATABASE_URL: str
    LOG_LEVEL: str

    # Shared secret for the X-Signature HMAC on inbound webhooks
    WEBHOOK_SECRET: str
    # Echoed back by GET /webhook during provider verification
    WEBHOOK_VERIFY_TOKEN: str = ""

    # Outbound WhatsApp Cloud API; delivery is skipped when these are empty
    WHATSAPP_ACCESS_TOKEN: str = ""
    WHATSAPP_PHONE_NUMBER_ID: str = ""
    WHATSAPP_API_VERSION: str = "v21.0"
    WHATSAPP_API_BASE_URL: str = "https://graph.facebook.com"
    DELIVERY_TIMEOUT_SECONDS: float = 10.0

    # Freeform replies are only deliverable this long after the last incoming message
    MESSAGE_WINDOW_HOURS: int = 24


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
