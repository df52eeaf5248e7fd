"""Tests for platform providers, the fallback chain and the registry."""

import asyncio

import httpx
import pytest

from conftest import json_response, make_api
from mediabridge.errors import ResolutionError, ResolutionReason
from mediabridge.models import MediaKind, Platform, Post
from mediabridge.providers import Endpoint, PostRef, run_chain
from mediabridge.providers.instagram import InstagramProvider
from mediabridge.providers.registry import ProviderRegistry, build_registry
from mediabridge.providers.tiktok import TikTokProvider
from mediabridge.providers.twitter import TwitterProvider, parse_ref as twitter_ref

FX_TWEET = {
    "code": 200,
    "message": "OK",
    "tweet": {
        "id": "42",
        "url": "https://x.com/alice/status/42",
        "text": "look at this",
        "author": {"screen_name": "alice", "name": "Alice"},
        "likes": 1234,
        "retweets": 5,
        "replies": 2,
        "media": {
            "videos": [
                {
                    "url": "https://video.twimg.com/clip.mp4",
                    "thumbnail_url": "https://pbs.twimg.com/thumb.jpg",
                    "duration": 12.5,
                    "type": "video",
                }
            ]
        },
    },
}

VX_TWEET = {
    "tweetID": "42",
    "tweetURL": "https://twitter.com/alice/status/42",
    "text": "look at this",
    "user_screen_name": "alice",
    "likes": 10,
    "media_extended": [
        {"type": "image", "url": "https://pbs.twimg.com/media/a.jpg"},
    ],
}

TIKWM_VIDEO = {
    "code": 0,
    "msg": "success",
    "data": {
        "id": "7001",
        "title": "dance",
        "play": "https://tikwm.example/video/7001.mp4",
        "cover": "https://tikwm.example/cover.jpg",
        "duration": 15,
        "digg_count": 99,
        "author": {"unique_id": "bob"},
    },
}


# ============================================================================
# Fallback chain
# ============================================================================

def _endpoint(name, calls, outcome):
    async def fetch(api, base_url, ref):
        calls.append(name)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def parse(data, ref, base_url):
        return Post(id=ref.post_id, platform=Platform.TWITTER, source_url=ref.url, author=data["author"])

    return Endpoint(name, f"https://{name}.example", fetch, parse)


def test_chain_falls_through_to_third_endpoint():
    """A and B fail, C succeeds: each is called exactly once, in order."""
    calls = []
    endpoints = [
        _endpoint("a", calls, ResolutionError(ResolutionReason.NETWORK, "down")),
        _endpoint("b", calls, {"unexpected": True}),
        _endpoint("c", calls, {"author": "carol"}),
    ]
    api, _ = make_api(lambda request: httpx.Response(500))
    ref = PostRef(url="https://x.com/carol/status/7", post_id="7")
    result = asyncio.run(run_chain(endpoints, api, ref, Platform.TWITTER))
    assert calls == ["a", "b", "c"]
    assert result.ok
    assert result.endpoint == "c"
    assert result.post.author == "carol"
    assert [attempt.endpoint for attempt in result.attempts] == ["a", "b"]
    assert result.attempts[1].error.reason is ResolutionReason.PARSE


def test_chain_exhaustion_reports_last_reason():
    calls = []
    endpoints = [
        _endpoint("a", calls, ResolutionError(ResolutionReason.NOT_FOUND, "gone")),
        _endpoint("b", calls, ResolutionError(ResolutionReason.RATE_LIMITED, "slow down")),
    ]
    api, _ = make_api(lambda request: httpx.Response(500))
    result = asyncio.run(run_chain(endpoints, api, PostRef(url="u", post_id="1"), Platform.TWITTER))
    error = result.as_error(Platform.TWITTER)
    assert not result.ok
    assert error.reason is ResolutionReason.RATE_LIMITED
    assert "a (gone)" in str(error) and "b (slow down)" in str(error)


def test_chain_all_not_found_is_not_found():
    calls = []
    endpoints = [
        _endpoint("a", calls, ResolutionError(ResolutionReason.NOT_FOUND)),
        _endpoint("b", calls, ResolutionError(ResolutionReason.NOT_FOUND)),
    ]
    api, _ = make_api(lambda request: httpx.Response(500))
    result = asyncio.run(run_chain(endpoints, api, PostRef(url="u", post_id="1"), Platform.TWITTER))
    assert result.as_error(Platform.TWITTER).reason is ResolutionReason.NOT_FOUND


def test_chain_survives_arbitrary_endpoint_errors():
    """An unexpected exception from one API is recorded and the next API still runs."""
    calls = []
    endpoints = [
        _endpoint("a", calls, RuntimeError("boom")),
        _endpoint("b", calls, {"author": "bea"}),
    ]
    api, _ = make_api(lambda request: httpx.Response(500))
    result = asyncio.run(run_chain(endpoints, api, PostRef(url="u", post_id="1"), Platform.TWITTER))
    assert calls == ["a", "b"]
    assert result.post.author == "bea"
    assert result.attempts[0].error.reason is ResolutionReason.PARSE
    assert "RuntimeError: boom" in str(result.attempts[0].error)


# ============================================================================
# Twitter
# ============================================================================

def test_twitter_ref_parsing():
    ref = twitter_ref("https://x.com/alice/status/42?s=20")
    assert (ref.username, ref.post_id) == ("alice", "42")
    assert twitter_ref("https://twitter.com/i/status/9").username is None
    with pytest.raises(ResolutionError):
        twitter_ref("https://x.com/alice")


def test_twitter_resolves_via_fxtwitter():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return json_response(FX_TWEET)

    api, _ = make_api(handler)
    provider = TwitterProvider(api, ["https://api.fxtwitter.com", "https://api.vxtwitter.com"])
    post = asyncio.run(provider.resolve("https://x.com/alice/status/42"))
    assert seen == ["https://api.fxtwitter.com/status/42"]
    assert post.platform is Platform.TWITTER
    assert post.author == "alice"
    assert post.engagement.likes == 1234
    assert post.primary_media.kind is MediaKind.VIDEO
    assert post.primary_media.duration_seconds == 12.5


def test_twitter_falls_back_to_vxtwitter():
    seen = []

    def handler(request):
        seen.append(request.url.host)
        if request.url.host == "api.fxtwitter.com":
            return httpx.Response(404)
        return json_response(VX_TWEET)

    api, _ = make_api(handler)
    provider = TwitterProvider(api, ["https://api.fxtwitter.com", "https://api.vxtwitter.com"])
    post = asyncio.run(provider.resolve("https://twitter.com/alice/status/42"))
    assert seen == ["api.fxtwitter.com", "api.vxtwitter.com"]
    assert post.primary_media.kind is MediaKind.IMAGE
    assert post.engagement.likes == 10


def test_twitter_malformed_media_falls_back_to_vxtwitter():
    seen = []
    malformed = {"code": 200, "tweet": {"id": "42", "media": [{"url": "https://video.twimg.com/x.mp4"}]}}

    def handler(request):
        seen.append(request.url.host)
        if request.url.host == "api.fxtwitter.com":
            return json_response(malformed)
        return json_response(VX_TWEET)

    api, _ = make_api(handler)
    provider = TwitterProvider(api, ["https://api.fxtwitter.com", "https://api.vxtwitter.com"])
    post = asyncio.run(provider.resolve("https://x.com/alice/status/42"))
    assert seen == ["api.fxtwitter.com", "api.vxtwitter.com"]
    assert post.primary_media.url == "https://pbs.twimg.com/media/a.jpg"


def test_twitter_non_object_media_entries_are_rejected():
    payload = {"code": 200, "tweet": {"id": "42", "media": {"videos": ["https://video.twimg.com/x.mp4"]}}}
    api, _ = make_api(lambda request: json_response(payload))
    provider = TwitterProvider(api, ["https://api.fxtwitter.com"])
    with pytest.raises(ResolutionError) as info:
        asyncio.run(provider.resolve("https://x.com/alice/status/42"))
    assert info.value.reason is ResolutionReason.PARSE


def test_twitter_quote_becomes_parent_post():
    payload = {
        "code": 200,
        "tweet": {
            **FX_TWEET["tweet"],
            "quote": {"id": "7", "text": "original", "author": {"screen_name": "bob"}},
        },
    }
    api, _ = make_api(lambda request: json_response(payload))
    provider = TwitterProvider(api, ["https://api.fxtwitter.com"])
    post = asyncio.run(provider.resolve("https://x.com/alice/status/42"))
    assert post.parent_post is not None
    assert post.parent_post.author == "bob"
    assert post.parent_post.parent_post is None


def test_twitter_canonicalize():
    api, _ = make_api(lambda request: httpx.Response(500))
    provider = TwitterProvider(api, ["https://api.fxtwitter.com"], "https://fxtwitter.com")
    assert provider.canonicalize("https://x.com/alice/status/42?t=abc") == "https://fxtwitter.com/alice/status/42"
    assert provider.canonicalize("https://x.com/alice") == "https://x.com/alice"


# ============================================================================
# TikTok and Instagram
# ============================================================================

def test_tiktok_uses_configured_order():
    seen = []

    def handler(request):
        seen.append((request.method, request.url.host))
        if request.url.host == "vxtiktok.com":
            return httpx.Response(200, text="<html>captcha</html>", headers={"content-type": "text/html"})
        return json_response(TIKWM_VIDEO)

    api, _ = make_api(handler)
    provider = TikTokProvider(api, ["https://vxtiktok.com", "https://tikwm.com"])
    post = asyncio.run(provider.resolve("https://www.tiktok.com/@bob/video/7001"))
    assert seen == [("GET", "vxtiktok.com"), ("POST", "tikwm.com")]
    assert post.author == "bob"
    assert post.primary_media.url == "https://tikwm.example/video/7001.mp4"
    assert post.primary_media.duration_seconds == 15


def test_tiktok_error_code_is_not_found():
    api, _ = make_api(lambda request: json_response({"code": -1, "msg": "Url parsing is failed!"}))
    provider = TikTokProvider(api, ["https://tikwm.com"])
    with pytest.raises(ResolutionError) as info:
        asyncio.run(provider.resolve("https://www.tiktok.com/@bob/video/7001"))
    assert info.value.reason is ResolutionReason.NOT_FOUND


def test_tiktok_canonicalize_short_link():
    api, _ = make_api(lambda request: httpx.Response(500))
    provider = TikTokProvider(api, ["https://tikwm.com"], "https://vxtiktok.com")
    assert provider.canonicalize("https://vm.tiktok.com/ZMabc/") == "https://vxtiktok.com/t/ZMabc/"
    assert provider.canonicalize("https://www.tiktok.com/@bob/video/7001") == "https://vxtiktok.com/@bob/video/7001"


VX_TIKTOK = {
    "id": "7001",
    "desc": "dance",
    "author": {"uniqueId": "bob"},
    "video": {"playAddr": "https://vxtiktok.example/7001.mp4", "duration": 15},
}


def test_tiktok_slideshow_accepts_image_objects():
    payload = {
        "code": 0,
        "msg": "success",
        "data": {"id": "7001", "author": {"unique_id": "bob"}, "images": [{"url": "https://tikwm.example/1.jpg"}]},
    }
    api, _ = make_api(lambda request: json_response(payload))
    provider = TikTokProvider(api, ["https://tikwm.com"])
    post = asyncio.run(provider.resolve("https://www.tiktok.com/@bob/video/7001"))
    assert [item.url for item in post.media_items] == ["https://tikwm.example/1.jpg"]
    assert post.primary_media.kind is MediaKind.IMAGE


def test_tiktok_malformed_slideshow_falls_through():
    seen = []
    malformed = {"code": 0, "msg": "success", "data": {"id": "7001", "images": [{"url": {"nested": True}}]}}

    def handler(request):
        seen.append(request.url.host)
        if request.url.host == "tikwm.com":
            return json_response(malformed)
        return json_response(VX_TIKTOK)

    api, _ = make_api(handler)
    provider = TikTokProvider(api, ["https://tikwm.com", "https://vxtiktok.com"])
    post = asyncio.run(provider.resolve("https://www.tiktok.com/@bob/video/7001"))
    assert seen == ["tikwm.com", "vxtiktok.com"]
    assert post.primary_media.url == "https://vxtiktok.example/7001.mp4"


def test_instagram_non_object_carousel_node_is_a_parse_error():
    payload = {"shortcode": "Cabc", "edge_sidecar_to_children": {"edges": ["https://cdn.example/1.jpg"]}}
    api, _ = make_api(lambda request: json_response(payload))
    provider = InstagramProvider(api, ["https://instafix.io"])
    with pytest.raises(ResolutionError) as info:
        asyncio.run(provider.resolve("https://www.instagram.com/p/Cabc/"))
    assert info.value.reason is ResolutionReason.PARSE


def test_instagram_carousel_keeps_order():
    payload = {
        "shortcode": "Cabc",
        "owner": {"username": "carol"},
        "edge_sidecar_to_children": {
            "edges": [
                {"node": {"display_url": "https://cdn.example/1.jpg"}},
                {"node": {"is_video": True, "video_url": "https://cdn.example/2.mp4", "display_url": "https://cdn.example/2.jpg"}},
            ]
        },
    }
    api, _ = make_api(lambda request: json_response(payload))
    provider = InstagramProvider(api, ["https://instafix.io"])
    post = asyncio.run(provider.resolve("https://www.instagram.com/p/Cabc/"))
    assert [item.kind for item in post.media_items] == [MediaKind.IMAGE, MediaKind.VIDEO]
    assert post.author == "carol"
    assert provider.canonicalize("https://www.instagram.com/reel/Cabc/?igsh=1") == "https://instafix.io/reel/Cabc/"


def test_instagram_session_endpoint_runs_first():
    seen = []

    def handler(request):
        seen.append(request.url.host)
        if request.url.host == "www.instagram.com":
            assert "sessionid=s3cret" in request.headers["cookie"]
            return httpx.Response(403)
        return json_response({"shortcode": "Cabc", "display_url": "https://cdn.example/1.jpg"})

    api, _ = make_api(handler)
    provider = InstagramProvider.with_session(
        api, ["https://instafix.io"], "https://instafix.io", session_id="s3cret", ds_user_id="1"
    )
    post = asyncio.run(provider.resolve("https://www.instagram.com/p/Cabc/"))
    assert seen == ["www.instagram.com", "instafix.io"]
    assert post.primary_media.kind is MediaKind.IMAGE


# ============================================================================
# Registry
# ============================================================================

def test_registry_routes_by_platform(config):
    api, _ = make_api(lambda request: httpx.Response(500))
    registry = build_registry(config, api)
    assert set(registry.platforms) == {Platform.TWITTER, Platform.INSTAGRAM, Platform.TIKTOK}
    assert registry.for_url("https://x.com/a/status/1").platform is Platform.TWITTER
    assert registry.for_url("https://www.youtube.com/watch?v=1") is None


def test_registry_respects_disabled_providers(make_config):
    api, _ = make_api(lambda request: httpx.Response(500))
    registry = build_registry(make_config(tiktok_enabled=False), api)
    assert registry.get(Platform.TIKTOK) is None
    assert registry.for_url("https://www.tiktok.com/@a/video/1") is None
    assert len(registry) == 2


def test_registry_replace_provider():
    api, _ = make_api(lambda request: httpx.Response(500))
    registry = ProviderRegistry([TwitterProvider(api, ["https://a.example"])])
    replacement = TwitterProvider(api, ["https://b.example"])
    registry.register(replacement)
    assert registry.get(Platform.TWITTER) is replacement
