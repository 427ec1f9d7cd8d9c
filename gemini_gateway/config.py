from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Gateway settings, overridable through environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com"
    # Used when the request carries no temperature
    DEFAULT_TEMPERATURE: float = 0.7
    # Upstream request timeout (seconds)
    HTTP_TIMEOUT: float = 300.0
    # Max characters of an unfinished stream element held in memory
    STREAM_BUFFER_LIMIT: int = 1024 * 1024
    LOG_LEVEL: str = "INFO"

    HOST: str = "127.0.0.1"
    PORT: int = 8000


@lru_cache()
def get_settings() -> Settings:
    return Settings()
