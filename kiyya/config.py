"""Engine configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .cache import CacheConfig
from .categories import BASE_TAGS, SERIES_TAGS
from .retry import RetryConfig


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Kiyya", alias="APP_NAME")
    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    retry_max_retries: int = Field(default=3, alias="RETRY_MAX_RETRIES", ge=0, le=10)
    retry_initial_delay: float = Field(
        default=1.0, alias="RETRY_INITIAL_DELAY", gt=0, le=60
    )
    retry_backoff_multiplier: float = Field(
        default=2.0, alias="RETRY_BACKOFF_MULTIPLIER", ge=1, le=10
    )

    cache_enabled: bool = Field(default=True, alias="CACHE_ENABLED")
    cache_max_items: int = Field(
        default=200, alias="CACHE_MAX_ITEMS", ge=1, le=10_000
    )
    cache_max_collections: int = Field(
        default=10, alias="CACHE_MAX_COLLECTIONS", ge=1, le=1_000
    )
    cache_ttl_seconds: float = Field(default=300, alias="CACHE_TTL", gt=0)
    cache_auto_cleanup: bool = Field(default=True, alias="CACHE_AUTO_CLEANUP")
    cache_cleanup_interval_seconds: float = Field(
        default=60, alias="CACHE_CLEANUP_INTERVAL", gt=0
    )

    default_page_size: int = Field(default=50, alias="DEFAULT_PAGE_SIZE", ge=1, le=500)

    catalog_api_url: HttpUrl = Field(
        default="https://api.na-backend.odysee.com/api/v1/proxy",
        alias="CATALOG_API_URL",
    )
    catalog_channel_id: str | None = Field(default=None, alias="CATALOG_CHANNEL_ID")
    catalog_request_timeout: float = Field(
        default=15.0, alias="CATALOG_REQUEST_TIMEOUT", gt=0
    )

    series_tags: Annotated[tuple[str, ...], NoDecode] = Field(
        default=SERIES_TAGS, alias="SERIES_TAGS"
    )

    @field_validator("series_tags", mode="before")
    @classmethod
    def _parse_series_tags(cls, value: object) -> tuple[str, ...]:
        """Normalise series tag selections from environment values."""

        if value is None:
            return SERIES_TAGS
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("SERIES_TAGS must be a string or iterable of strings")

        cleaned: list[str] = []
        for entry in raw_values:
            tag = entry.lower()
            if not tag:
                continue
            if tag not in BASE_TAGS:
                raise ValueError("Unknown series tags configured")
            if tag not in cleaned:
                cleaned.append(tag)
        if not cleaned:
            return SERIES_TAGS
        return tuple(cleaned)

    @property
    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.retry_max_retries,
            initial_delay=self.retry_initial_delay,
            backoff_multiplier=self.retry_backoff_multiplier,
        )

    @property
    def cache_config(self) -> CacheConfig:
        return CacheConfig(
            max_items_in_memory=self.cache_max_items,
            max_collections=self.cache_max_collections,
            collection_ttl=self.cache_ttl_seconds,
            auto_cleanup=self.cache_auto_cleanup,
            cleanup_interval=self.cache_cleanup_interval_seconds,
        )

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]
