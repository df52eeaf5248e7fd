"""Normalized data shapes passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Platform(str, Enum):
    TWITTER = "twitter"
    INSTAGRAM = "instagram"
    TIKTOK = "tiktok"

    @property
    def display_name(self) -> str:
        return {"twitter": "Twitter/X", "instagram": "Instagram", "tiktok": "TikTok"}[self.value]


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    ANIMATED_IMAGE = "animated_image"


class MediaItem(BaseModel):
    """One playable or viewable asset of a post."""

    kind: MediaKind
    url: str
    thumbnail_url: Optional[str] = None
    duration_seconds: Optional[float] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _drop_image_duration(self) -> "MediaItem":
        if self.kind is MediaKind.IMAGE:
            self.duration_seconds = None
        return self

    @property
    def is_video(self) -> bool:
        return self.kind is MediaKind.VIDEO


class Engagement(BaseModel):
    likes: Optional[NonNegativeInt] = None
    shares: Optional[NonNegativeInt] = None
    comments: Optional[NonNegativeInt] = None

    @property
    def is_empty(self) -> bool:
        return self.likes is None and self.shares is None and self.comments is None


class Post(BaseModel):
    """Normalized result of a successful platform resolution."""

    id: str = Field(min_length=1)
    platform: Platform
    source_url: str
    author: str = "unknown"
    text_content: Optional[str] = None
    media_items: list[MediaItem] = Field(default_factory=list)
    captured_at: datetime = Field(default_factory=utcnow)
    engagement: Optional[Engagement] = None
    parent_post: Optional[Post] = None

    @field_validator("author", mode="before")
    @classmethod
    def _default_author(cls, value: Any) -> str:
        if value is None:
            return "unknown"
        text = str(value).strip().lstrip("@")
        return text or "unknown"

    @field_validator("text_content", mode="before")
    @classmethod
    def _blank_text(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @model_validator(mode="after")
    def _single_level_parent(self) -> "Post":
        parent = self.parent_post
        if parent is None:
            return self
        if parent.id == self.id and parent.platform == self.platform:
            raise ValueError("a post cannot be its own parent")
        if parent.parent_post is not None:
            self.parent_post = parent.model_copy(update={"parent_post": None})
        return self

    @property
    def primary_media(self) -> MediaItem | None:
        return self.media_items[0] if self.media_items else None

    @property
    def has_video(self) -> bool:
        return any(item.is_video for item in self.media_items)


@dataclass(frozen=True, slots=True)
class MediaMetadata:
    """Subset of extractor metadata the pipeline cares about."""

    title: str | None = None
    uploader: str | None = None
    extractor: str | None = None
    duration_seconds: float | None = None
    estimated_size_bytes: int | None = None
    webpage_url: str | None = None
    thumbnail_url: str | None = None
    is_playlist: bool = False
    playlist_count: int | None = None
    nsfw: bool = False

    @classmethod
    def from_info(cls, info: dict[str, Any]) -> "MediaMetadata":
        is_playlist = info.get("_type") == "playlist" or bool(info.get("entries"))
        entries = info.get("entries") or []
        if is_playlist and entries and isinstance(entries, list):
            first = entries[0] or {}
        else:
            first = info
        duration = first.get("duration")
        size = first.get("filesize") or first.get("filesize_approx")
        return cls(
            title=first.get("title") or info.get("title"),
            uploader=first.get("uploader") or first.get("channel") or info.get("uploader"),
            extractor=info.get("extractor_key") or info.get("extractor"),
            duration_seconds=float(duration) if duration is not None else None,
            estimated_size_bytes=int(size) if size is not None else None,
            webpage_url=first.get("webpage_url") or info.get("webpage_url"),
            thumbnail_url=first.get("thumbnail"),
            is_playlist=is_playlist,
            playlist_count=info.get("playlist_count") or (len(entries) if isinstance(entries, list) else None),
        )


@dataclass(slots=True)
class DownloadArtifact:
    """A downloaded file owned by the file manager until released."""

    local_path: Path
    size_bytes: int | None = None
    duration_seconds: float | None = None
    metadata: MediaMetadata = field(default_factory=MediaMetadata)
    thumbnail_path: Path | None = None
    source: str = "yt-dlp"


class CacheEntry(BaseModel):
    """Persisted record linking a normalized URL to a delivered artifact."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    url_hash: str
    clean_url: str
    original_url: str
    delivery_locator: str
    platform: str
    timestamp: datetime = Field(default_factory=utcnow)
    title: Optional[str] = None
    author: Optional[str] = None
    duration_seconds: Optional[float] = None
    file_size_bytes: Optional[int] = None

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


__all__ = [
    "CacheEntry",
    "DownloadArtifact",
    "Engagement",
    "MediaItem",
    "MediaKind",
    "MediaMetadata",
    "Platform",
    "Post",
    "utcnow",
]
