"""Lightweight Reddit JSON API path for hosted videos."""

from __future__ import annotations

import logging
from typing import Any

from ..errors import DownloadFailed, ResolutionError
from ..extraction import as_seconds, probe
from ..http_client import ApiClient
from ..models import MediaMetadata
from ..urls import domain_matches, host_of, parse_url

logger = logging.getLogger(__name__)

REDDIT_DOMAINS = ("reddit.com",)
VIDEO_SOURCES = ("media.reddit_video", "secure_media.reddit_video", "preview.reddit_video_preview")


def is_reddit_url(url: str) -> bool:
    host = host_of(url)
    return host is not None and any(domain_matches(host, domain) for domain in REDDIT_DOMAINS)


def json_api_url(url: str) -> str:
    parts = parse_url(url)
    path = parts.path.rstrip("/")
    return f"{parts.scheme}://{parts.netloc}{path}.json"


def _video_of(post: dict[str, Any]) -> dict[str, Any] | None:
    for path in VIDEO_SOURCES:
        video = probe(post, path)
        if isinstance(video, dict) and video.get("fallback_url"):
            return video
    return None


class RedditVideoLocator:
    """Find the direct fallback MP4 of a Reddit post without running yt-dlp."""

    def __init__(self, api: ApiClient, user_agent: str) -> None:
        self._api = api
        self.headers = {"User-Agent": user_agent, "Accept": "application/json"}

    async def locate(self, url: str) -> tuple[str, MediaMetadata]:
        """Return ``(direct_video_url, metadata)``; raises DownloadFailed when there is no video."""
        try:
            data = await self._api.get_json(json_api_url(url), api="reddit", headers=self.headers)
        except ResolutionError as exc:
            raise DownloadFailed(f"reddit api: {exc}") from exc
        post = probe(data, "0.data.children.0.data", "data.children.0.data")
        if not isinstance(post, dict):
            raise DownloadFailed("unexpected reddit api response")
        video = _video_of(post)
        if video is None:
            for parent in post.get("crosspost_parent_list") or []:
                video = _video_of(parent)
                if video is not None:
                    break
        if video is None:
            raise DownloadFailed("no hosted video in reddit post")
        duration = video.get("duration")
        metadata = MediaMetadata(
            title=post.get("title"),
            uploader=f"u/{post['author']}" if post.get("author") else None,
            extractor="reddit",
            duration_seconds=as_seconds(duration) if duration is not None else None,
            webpage_url=url,
            thumbnail_url=post.get("thumbnail") if str(post.get("thumbnail", "")).startswith("http") else None,
            nsfw=bool(post.get("over_18")),
        )
        logger.debug("Reddit video for %s: %s", url, video["fallback_url"])
        return str(video["fallback_url"]), metadata
