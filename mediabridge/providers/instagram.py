"""Instagram provider: authenticated web GraphQL first, InstaFix mirrors after."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Sequence

from ..errors import ResolutionError, ResolutionReason
from ..extraction import FieldRule, as_count, as_datetime, as_seconds, as_str, extract, probe
from ..http_client import ApiClient
from ..models import Engagement, MediaItem, MediaKind, Platform, Post
from ..urls import classify, clean_url
from . import Endpoint, PostRef, run_chain

logger = logging.getLogger(__name__)

GRAPHQL_BASE = "https://www.instagram.com"
GRAPHQL_QUERY_HASH = "b3055c01b4b222b8a47dc12b090e4e64"
INSTAGRAM_APP_ID = "936619743392459"

_SHORTCODE_RE = re.compile(r"/(p|reel|reels|tv)/([A-Za-z0-9_-]+)")

MEDIA_ROOTS = ("data.xdt_shortcode_media", "data.shortcode_media", "graphql.shortcode_media", "items.0")

POST_RULES = (
    FieldRule("id", ("shortcode", "code", "id", "pk"), transform=as_str),
    FieldRule("source_url", ("url", "permalink"), transform=as_str),
    FieldRule("author", ("owner.username", "user.username", "author.username", "owner.full_name"), default="unknown", transform=as_str),
    FieldRule(
        "text",
        ("caption.text", "edge_media_to_caption.edges.0.node.text", "caption", "title"),
        transform=as_str,
    ),
    FieldRule("captured_at", ("taken_at_timestamp", "taken_at", "timestamp"), transform=as_datetime),
    FieldRule("likes", ("likes_count", "like_count", "edge_media_preview_like.count", "edge_liked_by.count"), transform=as_count),
    FieldRule("comments", ("comments_count", "comment_count", "edge_media_to_comment.count"), transform=as_count),
)


def _node_media(node: Any) -> MediaItem:
    if not isinstance(node, dict):
        raise ResolutionError(ResolutionReason.PARSE, "media node is not an object")
    display = probe(node, "display_url", "thumbnail_src", "image_versions2.candidates.0.url")
    if node.get("is_video") or node.get("media_type") == 2:
        url = probe(node, "video_url", "video_versions.0.url")
        if not isinstance(url, str):
            raise ResolutionError(ResolutionReason.PARSE, "video post without a video URL")
        duration = node.get("video_duration")
        return MediaItem(
            kind=MediaKind.VIDEO,
            url=str(url),
            thumbnail_url=display if isinstance(display, str) else None,
            duration_seconds=as_seconds(duration) if duration is not None else None,
        )
    if not isinstance(display, str):
        raise ResolutionError(ResolutionReason.PARSE, "image post without a display URL")
    return MediaItem(kind=MediaKind.IMAGE, url=str(display), thumbnail_url=str(display))


def _media_items(media: dict[str, Any]) -> list[MediaItem]:
    edges = probe(media, "edge_sidecar_to_children.edges")
    if isinstance(edges, list) and edges:
        return [_node_media(edge.get("node") if isinstance(edge, dict) else edge) for edge in edges]
    carousel = media.get("carousel_media")
    if isinstance(carousel, list) and carousel:
        return [_node_media(node) for node in carousel]
    return [_node_media(media)]


def parse_instagram(data: Any, ref: PostRef, base_url: str) -> Post:
    media = probe(data, *MEDIA_ROOTS, default=data)
    if not isinstance(media, dict) or not media:
        raise ResolutionError(ResolutionReason.PARSE, "instagram response without post data")
    fields = extract(media, POST_RULES)
    engagement = Engagement(likes=fields["likes"], comments=fields["comments"])
    post_kwargs: dict[str, Any] = {
        "id": fields["id"] or ref.post_id,
        "platform": Platform.INSTAGRAM,
        "source_url": fields["source_url"] or f"https://www.instagram.com/{ref.kind or 'p'}/{ref.post_id}/",
        "author": fields["author"],
        "text_content": fields["text"],
        "media_items": _media_items(media),
        "engagement": None if engagement.is_empty else engagement,
    }
    if fields["captured_at"] is not None:
        post_kwargs["captured_at"] = fields["captured_at"]
    return Post(**post_kwargs)


async def fetch_instafix(api: ApiClient, base_url: str, ref: PostRef) -> Any:
    return await api.get_json(f"{base_url}/api/post/{ref.post_id}", api="instafix")


def session_fetcher(session_id: str, ds_user_id: str, csrf_token: str | None, user_agent: str):
    """Build a fetch function that queries the web GraphQL endpoint with a session cookie."""
    cookie = f"sessionid={session_id}; ds_user_id={ds_user_id}"
    headers = {
        "User-Agent": user_agent,
        "X-IG-App-ID": INSTAGRAM_APP_ID,
        "X-Requested-With": "XMLHttpRequest",
        "Accept": "application/json, text/plain, */*",
        "Referer": "https://www.instagram.com/",
    }
    if csrf_token:
        cookie = f"{cookie}; csrftoken={csrf_token}"
        headers["X-CSRFToken"] = csrf_token
    headers["Cookie"] = cookie

    async def fetch_graphql(api: ApiClient, base_url: str, ref: PostRef) -> Any:
        variables = json.dumps(
            {
                "shortcode": ref.post_id,
                "child_comment_count": 3,
                "fetch_comment_count": 40,
                "parent_comment_count": 24,
                "has_threaded_comments": False,
            },
            separators=(",", ":"),
        )
        data = await api.get_json(
            f"{base_url}/graphql/query/",
            api="instagram-graphql",
            params={"query_hash": GRAPHQL_QUERY_HASH, "variables": variables},
            headers=headers,
        )
        if not probe(data, "data.xdt_shortcode_media", "data.shortcode_media"):
            raise ResolutionError(ResolutionReason.PARSE, "graphql response without shortcode media")
        return data

    return fetch_graphql


def parse_ref(url: str) -> PostRef:
    match = _SHORTCODE_RE.search(url)
    if not match:
        raise ResolutionError(ResolutionReason.PARSE, f"no post shortcode in {url}")
    kind = "reel" if match.group(1) in ("reel", "reels") else match.group(1)
    return PostRef(url=url, post_id=match.group(2), kind=kind)


class InstagramProvider:
    """Resolve posts and reels; carousel children become ordered media items."""

    platform = Platform.INSTAGRAM

    def __init__(
        self,
        api: ApiClient,
        api_bases: Sequence[str],
        fix_base: str = "https://instafix.io",
        *,
        session_endpoint: Endpoint | None = None,
    ) -> None:
        self._api = api
        endpoints = [Endpoint("instafix", base.rstrip("/"), fetch_instafix, parse_instagram) for base in api_bases]
        if session_endpoint is not None:
            endpoints.insert(0, session_endpoint)
        self.endpoints = tuple(endpoints)
        self.fix_base = fix_base.rstrip("/")

    @classmethod
    def with_session(
        cls,
        api: ApiClient,
        api_bases: Sequence[str],
        fix_base: str,
        *,
        session_id: str,
        ds_user_id: str,
        csrf_token: str | None = None,
        user_agent: str = "Mozilla/5.0",
    ) -> "InstagramProvider":
        endpoint = Endpoint(
            "instagram-graphql",
            GRAPHQL_BASE,
            session_fetcher(session_id, ds_user_id, csrf_token, user_agent),
            parse_instagram,
        )
        return cls(api, api_bases, fix_base, session_endpoint=endpoint)

    def can_handle(self, url: str) -> bool:
        return classify(url) is Platform.INSTAGRAM

    def canonicalize(self, url: str) -> str:
        try:
            ref = parse_ref(url)
        except ResolutionError:
            return clean_url(url)
        return f"{self.fix_base}/{ref.kind}/{ref.post_id}/"

    async def resolve(self, url: str) -> Post:
        ref = parse_ref(url)
        result = await run_chain(self.endpoints, self._api, ref, self.platform)
        if result.post is None:
            raise result.as_error(self.platform)
        return result.post
