from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 3003
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_dir: Path = Path("logs")

    cors_origins: str = "*"

    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"

    refine_temperature: float = 0.7
    refine_max_tokens: int = 300
    refine_history_limit: int = 4

    search_chat_temperature: float = 0.7
    search_chat_max_tokens: int = 500
    search_chat_history_limit: int = 6
    sse_heartbeat_seconds: float = 15.0

    hotel_chat_temperature: float = 0.3
    hotel_chat_max_tokens: int = 120
    hotel_chat_history_limit: int = 10
    hotel_chat_stored_messages: int = 20

    conversation_ttl_seconds: int = 3600  # 1 hour
    conversation_sweep_interval_seconds: int = 900  # 15 minutes

    redis_url: str | None = None

    liteapi_key: str | None = None
    liteapi_base_url: str = "https://api.liteapi.travel/v3.0"
    liteapi_timeout_seconds: float = 30.0
    liteapi_details_timeout_seconds: float = 8.0
    liteapi_reviews_timeout_seconds: float = 15.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
