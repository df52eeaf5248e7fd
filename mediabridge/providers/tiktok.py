"""TikTok provider with an ordered list of third-party mirror APIs."""

from __future__ import annotations

import logging
import re
from typing import Any, Sequence

from ..errors import ResolutionError, ResolutionReason
from ..extraction import FieldRule, as_count, as_datetime, as_seconds, as_str, extract, probe
from ..http_client import ApiClient
from ..models import Engagement, MediaItem, MediaKind, Platform, Post
from ..urls import classify, clean_url, host_of, path_segments
from . import Endpoint, PostRef, run_chain

logger = logging.getLogger(__name__)

_VIDEO_RE = re.compile(r"/(?:video|v|photo)/(\d+)")
_USER_RE = re.compile(r"/@([\w.-]+)")
SHORT_LINK_HOSTS = frozenset({"vm.tiktok.com", "vt.tiktok.com"})

TIKTOK_RULES = (
    FieldRule("id", ("id", "aweme_id", "video_id"), transform=as_str),
    FieldRule("author", ("author.uniqueId", "author.unique_id", "author.nickname"), default="unknown", transform=as_str),
    FieldRule("text", ("desc", "title"), transform=as_str),
    FieldRule("thumbnail", ("video.cover", "video.origin_cover", "cover", "origin_cover"), transform=as_str),
    FieldRule("duration", ("video.duration", "duration"), transform=as_seconds),
    FieldRule("captured_at", ("createTime", "create_time"), transform=as_datetime),
    FieldRule("likes", ("stats.diggCount", "stats.digg_count", "digg_count"), transform=as_count),
    FieldRule("shares", ("stats.shareCount", "stats.share_count", "share_count"), transform=as_count),
    FieldRule("comments", ("stats.commentCount", "stats.comment_count", "comment_count"), transform=as_count),
)

VIDEO_URL_RULE = FieldRule(
    "video_url",
    ("video.downloadAddr", "video.download_addr", "video.playAddr", "play", "hdplay", "wmplay"),
    required=True,
    transform=as_str,
)


def _absolute(url: Any, base_url: str) -> str | None:
    if url is not None and not isinstance(url, str):
        raise ResolutionError(ResolutionReason.PARSE, f"media URL is a {type(url).__name__}, not a string")
    if url and url.startswith("/"):
        return f"{base_url}{url}"
    return url


def parse_tiktok(data: Any, ref: PostRef, base_url: str) -> Post:
    """Parse any of the vxTikTok, TikWM or Snapinsta shapes."""
    if not isinstance(data, dict):
        raise ResolutionError(ResolutionReason.PARSE, "tiktok response is not an object")
    code = data.get("code")
    if isinstance(code, int) and code != 0 and isinstance(data.get("msg"), str):
        raise ResolutionError(ResolutionReason.NOT_FOUND, f"tikwm code {code}: {data['msg']}")
    root = data["data"] if isinstance(data.get("data"), dict) else data
    fields = extract(root, TIKTOK_RULES)

    images = root.get("images")
    if isinstance(images, list) and images:
        urls = [probe(image, "url", "image_url", "url_list.0") if isinstance(image, dict) else image for image in images]
        media = [MediaItem(kind=MediaKind.IMAGE, url=str(_absolute(url, base_url))) for url in urls if url]
        if not media:
            raise ResolutionError(ResolutionReason.PARSE, "tiktok slideshow without image URLs")
    else:
        video_url = extract(root, (VIDEO_URL_RULE,))["video_url"]
        media = [
            MediaItem(
                kind=MediaKind.VIDEO,
                url=str(_absolute(video_url, base_url)),
                thumbnail_url=_absolute(fields["thumbnail"], base_url),
                duration_seconds=fields["duration"],
            )
        ]

    post_id = fields["id"] or ref.post_id
    author = fields["author"]
    engagement = Engagement(likes=fields["likes"], shares=fields["shares"], comments=fields["comments"])
    post_kwargs: dict[str, Any] = {
        "id": post_id,
        "platform": Platform.TIKTOK,
        "source_url": probe(root, "url", "share_url") or f"https://www.tiktok.com/@{author}/video/{post_id}",
        "author": author,
        "text_content": fields["text"],
        "media_items": media,
        "engagement": None if engagement.is_empty else engagement,
    }
    if fields["captured_at"] is not None:
        post_kwargs["captured_at"] = fields["captured_at"]
    return Post(**post_kwargs)


def _lookup_url(ref: PostRef) -> str:
    if ref.post_id.isdigit():
        return f"https://www.tiktok.com/@{ref.username or 'user'}/video/{ref.post_id}"
    return ref.url


async def fetch_vxtiktok(api: ApiClient, base_url: str, ref: PostRef) -> Any:
    return await api.get_json(f"{base_url}/api/video/{ref.post_id}", api="vxtiktok")


async def fetch_tikwm(api: ApiClient, base_url: str, ref: PostRef) -> Any:
    return await api.post_form_json(f"{base_url}/api/", {"url": _lookup_url(ref), "hd": "1"}, api="tikwm")


async def fetch_snapinsta(api: ApiClient, base_url: str, ref: PostRef) -> Any:
    return await api.post_form_json(f"{base_url}/api/tiktok/video", {"url": _lookup_url(ref)}, api="snapinsta")


def endpoint_for(base_url: str) -> Endpoint:
    base = base_url.rstrip("/")
    host = host_of(base) or base
    if "tikwm" in host:
        return Endpoint("tikwm", base, fetch_tikwm, parse_tiktok)
    if "snapinsta" in host:
        return Endpoint("snapinsta", base, fetch_snapinsta, parse_tiktok)
    if "vxtiktok" not in host:
        logger.warning("Unknown TikTok API %s; assuming the vxtiktok request shape", base)
    return Endpoint("vxtiktok", base, fetch_vxtiktok, parse_tiktok)


def parse_ref(url: str) -> PostRef:
    user_match = _USER_RE.search(url)
    username = user_match.group(1) if user_match else None
    match = _VIDEO_RE.search(url)
    if match:
        return PostRef(url=url, post_id=match.group(1), username=username)
    if host_of(url) in SHORT_LINK_HOSTS:
        segments = path_segments(url)
        if segments:
            return PostRef(url=url, post_id=segments[0], username=username, kind="short")
    raise ResolutionError(ResolutionReason.PARSE, f"no video id in {url}")


class TikTokProvider:
    """Resolve TikTok videos and photo posts via mirrors tried in configured order."""

    platform = Platform.TIKTOK

    def __init__(self, api: ApiClient, api_bases: Sequence[str], fix_base: str = "https://vxtiktok.com") -> None:
        self._api = api
        self.endpoints = tuple(endpoint_for(base) for base in api_bases)
        self.fix_base = fix_base.rstrip("/")

    def can_handle(self, url: str) -> bool:
        return classify(url) is Platform.TIKTOK

    def canonicalize(self, url: str) -> str:
        try:
            ref = parse_ref(url)
        except ResolutionError:
            return clean_url(url)
        if ref.kind == "short":
            return f"{self.fix_base}/t/{ref.post_id}/"
        return f"{self.fix_base}/@{ref.username or 'user'}/video/{ref.post_id}"

    async def resolve(self, url: str) -> Post:
        ref = parse_ref(url)
        result = await run_chain(self.endpoints, self._api, ref, self.platform)
        if result.post is None:
            raise result.as_error(self.platform)
        return result.post
