"""Application configuration powered by Pydantic settings."""
from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Global application settings loaded from environment variables."""

    PROJECT_NAME: str = Field(default="Image Minification Pipeline")
    VERSION: str = Field(default="0.1.0")

    DATABASE_URL: str = Field(default="postgresql+psycopg://postgres:postgres@db:5432/postgres")
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    IMAGE_OPTIMIZATION_ENABLED: bool = Field(default=True)

    SAAS_URL: str = Field(default="https://awp-saas.cloudlinux.com/")
    SAAS_KEY: str = Field(default="")
    SAAS_TIMEOUT: float = Field(default=24.0)
    UNIQUE_ID: str = Field(default="")
    SITE_URL: str = Field(default="http://localhost:8000")
    PUBLIC_URL: str = Field(default="http://localhost:8000")

    CONTENT_DIR: str = Field(default="/var/www/html/wp-content")
    CONTENT_URL: str = Field(default="http://localhost:8000/wp-content")
    SOURCE_FOLDER: str = Field(default="uploads")
    BACKUP_DIR: str = Field(default="/var/www/html/wp-content/imagemin/backup")
    DOWNLOAD_DIR: str = Field(default="/var/www/html/wp-content/imagemin/download")

    SCANNER_BATCH_SIZE: int = Field(default=100)
    WORKER_MAX_RETRIES: int = Field(default=10)
    DEFAULT_CONCURRENCY_LIMIT: int = Field(default=20)
    CONCURRENCY_LIMIT_TTL: int = Field(default=600)
    DOWNLOAD_STALE_AFTER: int = Field(default=900)
    WORKER_LOCK_TTL: int = Field(default=120)

    SCANNER_INTERVAL: float = Field(default=24 * 60 * 60)
    WORKER_INTERVAL: float = Field(default=24 * 60 * 60)
    WORKER_HEALTHCHECK_INTERVAL: float = Field(default=60)

    RATE_LIMIT_CALLBACK: str = Field(default="120/minute")

    LOG_LEVEL: str = Field(default="INFO")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }


@lru_cache(maxsize=1)
def get_settings(**overrides: Any) -> Settings:
    """Return cached settings instance to avoid repeated parsing."""

    if overrides:
        return Settings(**overrides)
    return Settings()


settings = get_settings()
