"""Twitter/X provider backed by the FxTwitter and VxTwitter mirrors."""

from __future__ import annotations

import logging
import re
from typing import Any, Sequence

from ..errors import ResolutionError, ResolutionReason
from ..extraction import FieldRule, as_count, as_datetime, as_millis_seconds, as_seconds, as_str, extract, probe
from ..http_client import ApiClient
from ..models import Engagement, MediaItem, MediaKind, Platform, Post
from ..urls import classify, clean_url, path_segments
from . import Endpoint, PostRef, run_chain

logger = logging.getLogger(__name__)

_STATUS_RE = re.compile(r"/status(?:es)?/(\d+)")

FX_RULES = (
    FieldRule("id", ("id", "tweetID"), required=True, transform=as_str),
    FieldRule("source_url", ("url", "tweetURL"), transform=as_str),
    FieldRule("author", ("author.screen_name", "author.name"), default="unknown", transform=as_str),
    FieldRule("text", ("text", "raw_text.text"), transform=as_str),
    FieldRule("captured_at", ("created_timestamp", "created_at", "date"), transform=as_datetime),
    FieldRule("likes", ("likes", "favorite_count"), transform=as_count),
    FieldRule("shares", ("retweets", "retweet_count"), transform=as_count),
    FieldRule("comments", ("replies", "reply_count"), transform=as_count),
)

VX_RULES = (
    FieldRule("id", ("tweetID", "conversationID"), required=True, transform=as_str),
    FieldRule("source_url", ("tweetURL",), transform=as_str),
    FieldRule("author", ("user_screen_name", "user_name"), default="unknown", transform=as_str),
    FieldRule("text", ("text",), transform=as_str),
    FieldRule("captured_at", ("date_epoch", "date"), transform=as_datetime),
    FieldRule("likes", ("likes",), transform=as_count),
    FieldRule("shares", ("retweets",), transform=as_count),
    FieldRule("comments", ("replies",), transform=as_count),
)


def _entries(value: Any, what: str) -> list[dict[str, Any]]:
    """Media lists must hold objects; anything else marks a malformed payload."""
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(entry, dict) for entry in value):
        raise ResolutionError(ResolutionReason.PARSE, f"malformed {what} list")
    return value


def _require_url(item: dict[str, Any], *paths: str) -> str:
    url = probe(item, *paths)
    if not isinstance(url, str) or not url:
        raise ResolutionError(ResolutionReason.PARSE, "media entry without a playable URL")
    return url


def _fx_media(tweet: dict[str, Any]) -> list[MediaItem]:
    media = tweet.get("media") or {}
    if not isinstance(media, dict):
        raise ResolutionError(ResolutionReason.PARSE, "fxtwitter media is not an object")
    items: list[MediaItem] = []
    for photo in _entries(media.get("photos"), "photo"):
        url = _require_url(photo, "url")
        items.append(MediaItem(kind=MediaKind.IMAGE, url=url, thumbnail_url=url))
    for video in _entries(media.get("videos"), "video"):
        kind = MediaKind.ANIMATED_IMAGE if video.get("type") == "gif" else MediaKind.VIDEO
        items.append(
            MediaItem(
                kind=kind,
                url=_require_url(video, "url", "variants.0.url"),
                thumbnail_url=probe(video, "thumbnail_url"),
                duration_seconds=as_seconds(video["duration"]) if video.get("duration") is not None else None,
            )
        )
    return items


def _vx_media(tweet: dict[str, Any]) -> list[MediaItem]:
    items: list[MediaItem] = []
    for entry in _entries(tweet.get("media_extended"), "media_extended"):
        kind = {"image": MediaKind.IMAGE, "gif": MediaKind.ANIMATED_IMAGE}.get(entry.get("type"), MediaKind.VIDEO)
        duration = entry.get("duration_millis")
        items.append(
            MediaItem(
                kind=kind,
                url=_require_url(entry, "url"),
                thumbnail_url=probe(entry, "thumbnail_url"),
                duration_seconds=as_millis_seconds(duration) if duration is not None else None,
            )
        )
    return items


def _build_post(fields: dict[str, Any], media: list[MediaItem], fallback_url: str, parent: Post | None) -> Post:
    engagement = Engagement(likes=fields["likes"], shares=fields["shares"], comments=fields["comments"])
    post_kwargs: dict[str, Any] = {
        "id": fields["id"],
        "platform": Platform.TWITTER,
        "source_url": fields["source_url"] or fallback_url,
        "author": fields["author"],
        "text_content": fields["text"],
        "media_items": media,
        "engagement": None if engagement.is_empty else engagement,
        "parent_post": parent,
    }
    if fields["captured_at"] is not None:
        post_kwargs["captured_at"] = fields["captured_at"]
    return Post(**post_kwargs)


def parse_fxtwitter(data: Any, ref: PostRef, base_url: str) -> Post:
    code = probe(data, "code")
    if code not in (None, 200):
        reason = ResolutionReason.NOT_FOUND if code == 404 else ResolutionReason.PARSE
        raise ResolutionError(reason, f"fxtwitter code {code}: {probe(data, 'message', default='')}")
    tweet = probe(data, "tweet")
    if not isinstance(tweet, dict):
        raise ResolutionError(ResolutionReason.PARSE, "fxtwitter response without a tweet object")
    parent = None
    quoted = probe(data, "tweet.quote", "includes.tweets.0")
    if isinstance(quoted, dict):
        quoted_fields = extract(quoted, FX_RULES)
        if quoted_fields["id"] != ref.post_id:
            parent = _build_post(quoted_fields, _fx_media(quoted), f"https://x.com/i/status/{quoted_fields['id']}", None)
    return _build_post(extract(tweet, FX_RULES), _fx_media(tweet), ref.url, parent)


def parse_vxtwitter(data: Any, ref: PostRef, base_url: str) -> Post:
    if not isinstance(data, dict):
        raise ResolutionError(ResolutionReason.PARSE, "vxtwitter response is not an object")
    parent = None
    quoted = data.get("qrt")
    if isinstance(quoted, dict):
        quoted_fields = extract(quoted, VX_RULES)
        if quoted_fields["id"] != ref.post_id:
            parent = _build_post(quoted_fields, _vx_media(quoted), f"https://x.com/i/status/{quoted_fields['id']}", None)
    return _build_post(extract(data, VX_RULES), _vx_media(data), ref.url, parent)


async def fetch_fxtwitter(api: ApiClient, base_url: str, ref: PostRef) -> Any:
    return await api.get_json(f"{base_url}/status/{ref.post_id}", api="fxtwitter")


async def fetch_vxtwitter(api: ApiClient, base_url: str, ref: PostRef) -> Any:
    user = ref.username or "i"
    return await api.get_json(f"{base_url}/{user}/status/{ref.post_id}", api="vxtwitter")


def endpoint_for(base_url: str) -> Endpoint:
    base = base_url.rstrip("/")
    if "vxtwitter" in base or "fixvx" in base:
        return Endpoint("vxtwitter", base, fetch_vxtwitter, parse_vxtwitter)
    return Endpoint("fxtwitter", base, fetch_fxtwitter, parse_fxtwitter)


def parse_ref(url: str) -> PostRef:
    match = _STATUS_RE.search(url)
    if not match:
        raise ResolutionError(ResolutionReason.PARSE, f"no status id in {url}")
    segments = path_segments(url)
    username = segments[0] if segments and segments[0] not in ("i", "status", "statuses") else None
    return PostRef(url=url, post_id=match.group(1), username=username)


class TwitterProvider:
    """Resolve tweets through an ordered list of embed-fixing mirrors."""

    platform = Platform.TWITTER

    def __init__(self, api: ApiClient, api_bases: Sequence[str], fix_base: str = "https://fxtwitter.com") -> None:
        self._api = api
        self.endpoints = tuple(endpoint_for(base) for base in api_bases)
        self.fix_base = fix_base.rstrip("/")

    def can_handle(self, url: str) -> bool:
        return classify(url) is Platform.TWITTER

    def canonicalize(self, url: str) -> str:
        try:
            ref = parse_ref(url)
        except ResolutionError:
            return clean_url(url)
        return f"{self.fix_base}/{ref.username or 'i'}/status/{ref.post_id}"

    async def resolve(self, url: str) -> Post:
        ref = parse_ref(url)
        result = await run_chain(self.endpoints, self._api, ref, self.platform)
        if result.post is None:
            raise result.as_error(self.platform)
        return result.post
