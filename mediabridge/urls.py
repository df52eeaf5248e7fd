"""URL parsing, platform classification and cache key derivation."""

from __future__ import annotations

import hashlib
import re
from typing import Final
from urllib.parse import SplitResult, parse_qsl, urlencode, urlsplit, urlunsplit

from .errors import ClassificationFailure
from .models import Platform

PLATFORM_HOSTS: Final[dict[Platform, frozenset[str]]] = {
    Platform.TWITTER: frozenset(
        {
            "twitter.com",
            "www.twitter.com",
            "mobile.twitter.com",
            "m.twitter.com",
            "x.com",
            "www.x.com",
            "mobile.x.com",
        }
    ),
    Platform.INSTAGRAM: frozenset(
        {
            "instagram.com",
            "www.instagram.com",
            "m.instagram.com",
            "instagr.am",
            "www.instagr.am",
        }
    ),
    Platform.TIKTOK: frozenset(
        {
            "tiktok.com",
            "www.tiktok.com",
            "m.tiktok.com",
            "vm.tiktok.com",
            "vt.tiktok.com",
        }
    ),
}

# Registrable domains the yt-dlp extractor family is known to handle. A host
# matches when it equals an entry or ends with "." + entry.
DOWNLOADABLE_DOMAINS: Final[frozenset[str]] = frozenset(
    {
        "youtube.com",
        "youtu.be",
        "reddit.com",
        "redd.it",
        "vimeo.com",
        "dailymotion.com",
        "twitch.tv",
        "soundcloud.com",
        "streamable.com",
        "facebook.com",
        "fb.watch",
        "bilibili.com",
        "tumblr.com",
        "imgur.com",
        "pinterest.com",
        "bsky.app",
        "twitter.com",
        "x.com",
        "instagram.com",
        "tiktok.com",
    }
)

TRACKING_PARAMS: Final[frozenset[str]] = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "ref",
        "source",
        "igsh",
        "igshid",
        "fbclid",
        "gclid",
    }
)

CACHE_KEY_LENGTH: Final[int] = 16

_URL_RE = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)
_TRAILING_PUNCT = ".,;:!?'\""
_BRACKETS = {")": "(", "]": "[", "}": "{"}


def parse_url(url: str) -> SplitResult:
    """Split an http(s) URL, raising ClassificationFailure when it is unusable."""
    if not isinstance(url, str) or not url.strip():
        raise ClassificationFailure(str(url), "empty")
    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
    except ValueError as exc:
        raise ClassificationFailure(url, str(exc)) from exc
    if parts.scheme.lower() not in ("http", "https"):
        raise ClassificationFailure(url, f"unsupported scheme {parts.scheme!r}")
    if not hostname:
        raise ClassificationFailure(url, "missing host")
    return parts


def host_of(url: str) -> str | None:
    """Lowercased hostname without a trailing dot, or None when unparseable."""
    try:
        parts = parse_url(url)
    except ClassificationFailure:
        return None
    return (parts.hostname or "").rstrip(".").lower() or None


def classify(url: str) -> Platform | None:
    """Return the platform owning ``url`` by exact hostname, never raising."""
    host = host_of(url)
    if host is None:
        return None
    for platform, hosts in PLATFORM_HOSTS.items():
        if host in hosts:
            return platform
    return None


def domain_matches(host: str, domain: str) -> bool:
    """True when ``host`` is ``domain`` or one of its subdomains (label boundary)."""
    host = host.rstrip(".").lower()
    domain = domain.strip().lstrip(".").lower()
    return bool(domain) and (host == domain or host.endswith("." + domain))


def is_likely_downloadable(url: str) -> bool:
    """Advisory check against the generic extractor's known domains."""
    host = host_of(url)
    if host is None:
        return False
    return any(domain_matches(host, domain) for domain in DOWNLOADABLE_DOMAINS)


def _trim_token(token: str) -> str:
    while token:
        last = token[-1]
        if last in _TRAILING_PUNCT:
            token = token[:-1]
        elif last in _BRACKETS and token.count(last) > token.count(_BRACKETS[last]):
            token = token[:-1]
        else:
            break
    return token


def extract_urls(text: str | None) -> list[str]:
    """Find http(s) URLs in free text, de-duplicated in first-seen order."""
    if not text:
        return []
    seen: set[str] = set()
    found: list[str] = []
    for match in _URL_RE.finditer(text):
        token = _trim_token(match.group(0))
        if not token or token in seen:
            continue
        try:
            parse_url(token)
        except ClassificationFailure:
            continue
        seen.add(token)
        found.append(token)
    return found


def clean_url(url: str) -> str:
    """Remove tracking query parameters; unparseable input is returned unchanged."""
    try:
        parts = parse_url(url)
    except ClassificationFailure:
        return url
    query = [(key, value) for key, value in parse_qsl(parts.query, keep_blank_values=True) if key.lower() not in TRACKING_PARAMS]
    path = parts.path or "/"
    return urlunsplit((parts.scheme.lower(), parts.netloc, path, urlencode(query), parts.fragment))


def cache_key(url: str) -> str:
    """Stable short key: cleaned, lowercased, SHA-256, first 16 hex chars."""
    normalized = clean_url(url).lower()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:CACHE_KEY_LENGTH]


def path_segments(url: str) -> list[str]:
    try:
        parts = parse_url(url)
    except ClassificationFailure:
        return []
    return [segment for segment in parts.path.split("/") if segment]
