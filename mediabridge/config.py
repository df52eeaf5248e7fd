"""Configuration loader for the MediaBridge bot (Pydantic edition)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Iterable, Literal, Sequence

from dotenv import load_dotenv
from pydantic import AliasChoices, Field, SecretStr, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

LOGGER = logging.getLogger(__name__)

DEFAULT_TWITTER_APIS: tuple[str, ...] = ("https://api.fxtwitter.com", "https://api.vxtwitter.com")
DEFAULT_INSTAGRAM_APIS: tuple[str, ...] = ("https://instafix.io",)
DEFAULT_TIKTOK_APIS: tuple[str, ...] = ("https://vxtiktok.com", "https://tikwm.com", "https://snapinsta.app")
DEFAULT_BLOCKED_DOMAINS: tuple[str, ...] = ()
MB = 1024 * 1024


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded safely."""


class AppConfig(BaseSettings):
    """Strongly typed runtime configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
        validate_default=True,
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        validation_alias=AliasChoices("APP_ENVIRONMENT", "APP_ENV"),
    )
    log_path: Path = Field(
        default=Path("logs/mediabridge.log"),
        validation_alias=AliasChoices("APP_LOG_PATH", "LOG_PATH"),
    )

    # Chat transport
    telegram_token: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("APP_TELEGRAM_TOKEN", "TELEGRAM_BOT_TOKEN", "BOT_TOKEN"),
    )
    telegram_api_base: str = Field("https://api.telegram.org", validation_alias="APP_TELEGRAM_API_BASE")
    poll_timeout_seconds: int = Field(30, ge=1, le=120, validation_alias="APP_POLL_TIMEOUT")

    # Filesystem layout
    temp_dir: Path = Field(default=Path("temp_downloads"), validation_alias=AliasChoices("APP_TEMP_DIR", "TEMP_DIR"))
    cache_dir: Path = Field(default=Path("data/cache"), validation_alias="APP_CACHE_DIR")
    image_dir: Path = Field(default=Path("data/images"), validation_alias="APP_IMAGE_DIR")

    # Generic downloader policy
    max_file_size_mb: int = Field(50, ge=1, le=2000, validation_alias="APP_MAX_FILE_SIZE_MB")
    max_duration_seconds: int = Field(600, ge=1, validation_alias="APP_MAX_DURATION")
    max_concurrent_downloads: int = Field(2, ge=1, le=16, validation_alias="APP_MAX_CONCURRENT_DOWNLOADS")
    blocked_domains: Annotated[tuple[str, ...], NoDecode] = Field(
        DEFAULT_BLOCKED_DOMAINS,
        validation_alias=AliasChoices("APP_BLOCKED_DOMAINS", "BLOCKED_DOMAINS"),
    )
    block_nsfw: bool = Field(True, validation_alias="APP_BLOCK_NSFW")
    block_playlists: bool = Field(False, validation_alias="APP_BLOCK_PLAYLISTS")
    preferred_quality: str = Field("best[height<=720]", validation_alias="APP_PREFERRED_QUALITY")
    generic_fallback_enabled: bool = Field(True, validation_alias="APP_GENERIC_FALLBACK")
    cleanup_after_send: bool = Field(True, validation_alias="APP_CLEANUP_AFTER_SEND")

    # Maintenance
    temp_max_age_minutes: int = Field(60, ge=1, validation_alias="APP_TEMP_MAX_AGE_MINUTES")
    temp_sweep_interval_minutes: int = Field(30, ge=1, validation_alias="APP_TEMP_SWEEP_INTERVAL")
    cache_max_age_days: int = Field(30, ge=1, validation_alias="APP_CACHE_MAX_AGE_DAYS")
    cache_max_entries: int = Field(1000, ge=1, validation_alias="APP_CACHE_MAX_ENTRIES")
    cache_cleanup_interval_minutes: int = Field(360, ge=1, validation_alias="APP_CACHE_CLEANUP_INTERVAL")

    # Providers
    twitter_apis: Annotated[tuple[str, ...], NoDecode] = Field(
        DEFAULT_TWITTER_APIS, validation_alias=AliasChoices("APP_TWITTER_APIS", "FXTWITTER_BASE_URL")
    )
    twitter_fix_base: str = Field("https://fxtwitter.com", validation_alias="APP_TWITTER_FIX_BASE")
    instagram_apis: Annotated[tuple[str, ...], NoDecode] = Field(
        DEFAULT_INSTAGRAM_APIS, validation_alias=AliasChoices("APP_INSTAGRAM_APIS", "INSTAFIX_BASE_URL")
    )
    instagram_fix_base: str = Field("https://instafix.io", validation_alias="APP_INSTAGRAM_FIX_BASE")
    instagram_session_id: SecretStr | None = Field(default=None, validation_alias="INSTAGRAM_SESSION_ID")
    instagram_ds_user_id: str | None = Field(default=None, validation_alias="INSTAGRAM_DS_USER_ID")
    instagram_csrf_token: SecretStr | None = Field(default=None, validation_alias="INSTAGRAM_CSRF_TOKEN")
    tiktok_apis: Annotated[tuple[str, ...], NoDecode] = Field(
        DEFAULT_TIKTOK_APIS, validation_alias=AliasChoices("APP_TIKTOK_APIS", "TIKTOK_FALLBACK_APIS")
    )
    tiktok_fix_base: str = Field("https://vxtiktok.com", validation_alias="APP_TIKTOK_FIX_BASE")
    twitter_enabled: bool = Field(True, validation_alias="APP_TWITTER_ENABLED")
    instagram_enabled: bool = Field(True, validation_alias="APP_INSTAGRAM_ENABLED")
    tiktok_enabled: bool = Field(True, validation_alias="APP_TIKTOK_ENABLED")

    # Networking
    retry_attempts: int = Field(3, ge=1, le=10, validation_alias="APP_RETRY_ATTEMPTS")
    retry_base_delay_ms: int = Field(1000, ge=0, validation_alias="APP_RETRY_DELAY_MS")
    max_retry_after_seconds: float = Field(30.0, ge=0, validation_alias="APP_MAX_RETRY_AFTER")
    provider_timeout_seconds: float = Field(10.0, gt=0, validation_alias="APP_PROVIDER_TIMEOUT")
    probe_timeout_seconds: float = Field(30.0, gt=0, validation_alias="APP_PROBE_TIMEOUT")
    image_timeout_seconds: float = Field(30.0, gt=0, validation_alias="APP_IMAGE_TIMEOUT")
    user_agent: str = Field(
        "Mozilla/5.0 (compatible; MediaBridge/0.1)",
        validation_alias="APP_USER_AGENT",
    )

    # Video optimizer
    optimizer_enabled: bool = Field(False, validation_alias="APP_OPTIMIZER_ENABLED")
    optimizer_max_width: int = Field(1280, ge=16, validation_alias="APP_OPTIMIZER_MAX_WIDTH")
    optimizer_max_height: int = Field(720, ge=16, validation_alias="APP_OPTIMIZER_MAX_HEIGHT")
    optimizer_crf: int = Field(28, ge=0, le=51, validation_alias="APP_OPTIMIZER_CRF")
    optimizer_max_duration_seconds: int = Field(300, ge=1, validation_alias="APP_OPTIMIZER_MAX_DURATION")

    # Chat behaviour
    auto_delete_original: bool = Field(True, validation_alias="APP_AUTO_DELETE_ORIGINAL")
    delete_delay_seconds: float = Field(3.0, ge=0, validation_alias="APP_DELETE_DELAY")
    show_engagement: bool = Field(True, validation_alias="APP_SHOW_ENGAGEMENT")
    caption_max_length: int = Field(1024, ge=64, le=4096, validation_alias="APP_CAPTION_MAX_LENGTH")

    @field_validator("log_path", "temp_dir", "cache_dir", "image_dir", mode="after")
    @classmethod
    def _expand_path(cls, value: Path) -> Path:
        expanded = value.expanduser()
        return expanded if expanded.is_absolute() else (Path.cwd() / expanded).resolve()

    @field_validator("blocked_domains", mode="before")
    @classmethod
    def _parse_domain_list(cls, value: str | Sequence[str] | None) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            tokens = [part.strip().lower() for part in value.replace("\n", ",").split(",") if part.strip()]
            return tuple(tokens)
        return tuple(item.lower() for item in value)

    @field_validator("twitter_apis", "instagram_apis", "tiktok_apis", mode="before")
    @classmethod
    def _split_api_bases(cls, value: str | Sequence[str] | None) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            tokens = [part.strip().rstrip("/") for part in value.split(",") if part.strip()]
            return tuple(tokens)
        return tuple(item.rstrip("/") for item in value)

    @model_validator(mode="after")
    def _validate_providers(self) -> "AppConfig":
        for name in ("twitter", "instagram", "tiktok"):
            if getattr(self, f"{name}_enabled") and not getattr(self, f"{name}_apis"):
                raise ConfigError(f"{name} provider is enabled but has no API base URLs")
        return self

    def ensure_runtime_directories(self) -> None:
        """Create directories required for runtime operation."""
        _ensure_directories(
            (
                self.temp_dir,
                self.cache_dir,
                self.image_dir,
                self.log_path.parent,
            )
        )

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * MB

    @property
    def video_cache_path(self) -> Path:
        return self.cache_dir / "video-cache.json"

    @property
    def image_cache_path(self) -> Path:
        return self.cache_dir / "image-cache.json"

    @property
    def has_instagram_session(self) -> bool:
        return bool(self.instagram_session_id and self.instagram_ds_user_id)


def _ensure_directories(paths: Iterable[Path]) -> None:
    for directory in paths:
        directory.mkdir(parents=True, exist_ok=True)


def load_config(env_path: Path | None = None) -> AppConfig:
    """Load configuration from .env/environment with validation."""
    load_kwargs: dict[str, str] = {}
    if env_path is not None:
        load_dotenv(env_path, override=False)
        load_kwargs["_env_file"] = str(env_path)
    else:
        load_dotenv(override=False)
    try:
        config = AppConfig(**load_kwargs)
    except ValidationError as exc:
        raise ConfigError("Invalid configuration") from exc

    config.ensure_runtime_directories()

    LOGGER.info(
        "AppConfig loaded",
        extra={
            "event": "config.loaded",
            "environment": config.environment,
            "paths": {
                "log": str(config.log_path),
                "temp": str(config.temp_dir),
                "cache": str(config.cache_dir),
            },
        },
    )
    return config
