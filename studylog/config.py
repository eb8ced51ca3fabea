"""
Configuration and settings for the study-log service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    service_name: str = Field(default="note-backend")

    # Shared project: authentication + per-user backend credentials
    shared_backend_url: Optional[str] = Field(default=None, env="SHARED_BACKEND_URL")
    shared_backend_anon_key: Optional[str] = Field(
        default=None, env="SHARED_BACKEND_ANON_KEY"
    )
    oauth_redirect_url: Optional[str] = Field(default=None, env="OAUTH_REDIRECT_URL")

    # Personal backends
    client_cache_capacity: int = Field(default=50, env="CLIENT_CACHE_CAPACITY")
    request_timeout_seconds: float = Field(default=30.0, env="REQUEST_TIMEOUT_SECONDS")

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, env="USE_IN_MEMORY_BACKENDS"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
