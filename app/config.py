"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_WATCHLIST_NAME = "My Watchlist"


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="ReelKeeper", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./reelkeeper.db", alias="DATABASE_URL"
    )
    local_cache_path: str | None = Field(
        default="./reelkeeper-cache.json",
        alias="LOCAL_CACHE_PATH",
        validation_alias=AliasChoices("LOCAL_CACHE_PATH", "CACHE_PATH"),
    )

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_image_base_url: HttpUrl = Field(
        default="https://image.tmdb.org/t/p", alias="TMDB_IMAGE_BASE_URL"
    )

    default_watchlist_name: str = Field(
        default=DEFAULT_WATCHLIST_NAME, alias="DEFAULT_WATCHLIST_NAME", max_length=120
    )
    metadata_concurrency: int = Field(
        default=8, alias="METADATA_CONCURRENCY", ge=1, le=64
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("local_cache_path", mode="before")
    @classmethod
    def _blank_cache_path(cls, value: object) -> object:
        """Treat a blank cache path as "keep the cache in memory"."""

        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("default_watchlist_name", mode="before")
    @classmethod
    def _default_name(cls, value: object) -> object:
        if value is None:
            return DEFAULT_WATCHLIST_NAME
        if isinstance(value, str):
            cleaned = value.strip()
            return cleaned or DEFAULT_WATCHLIST_NAME
        return value

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
