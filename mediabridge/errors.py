"""Error taxonomy shared by the resolution pipeline.

Every component translates library exceptions (httpx, yt-dlp, filesystem)
into one of these types at its boundary, so the resolution manager only
ever reasons about the classes defined here.
"""

from __future__ import annotations

from enum import Enum


class MediaBridgeError(Exception):
    """Base class for all pipeline failures."""

    def user_message(self) -> str:
        """Short, human readable text suitable for a chat reply."""
        return str(self) or type(self).__name__


class ClassificationFailure(MediaBridgeError):
    """Raised when a URL cannot be parsed at all."""

    def __init__(self, url: str, detail: str = "") -> None:
        super().__init__(f"Unparseable URL {url!r}: {detail}" if detail else f"Unparseable URL {url!r}")
        self.url = url


class ResolutionReason(str, Enum):
    NETWORK = "network"
    PARSE = "parse"
    RATE_LIMITED = "rate_limited"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"

    @property
    def retryable(self) -> bool:
        return self in (ResolutionReason.NETWORK, ResolutionReason.RATE_LIMITED)


_REASON_TEXT = {
    ResolutionReason.NETWORK: "the service could not be reached",
    ResolutionReason.PARSE: "the service returned an unexpected response",
    ResolutionReason.RATE_LIMITED: "the service is rate limiting requests, try again later",
    ResolutionReason.FORBIDDEN: "access to the post was refused",
    ResolutionReason.NOT_FOUND: "the post does not exist or is private",
}


class ResolutionError(MediaBridgeError):
    """A provider could not turn a URL into a post."""

    def __init__(
        self,
        reason: ResolutionReason,
        message: str = "",
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
        api: str | None = None,
    ) -> None:
        super().__init__(message or reason.value)
        self.reason = reason
        self.status_code = status_code
        self.retry_after = retry_after
        self.api = api

    @property
    def retryable(self) -> bool:
        return self.reason.retryable

    def user_message(self) -> str:
        return _REASON_TEXT[self.reason].capitalize()


class PolicyKind(str, Enum):
    TOO_LARGE = "too_large"
    TOO_LONG = "too_long"
    BLOCKED_DOMAIN = "blocked_domain"
    NSFW = "nsfw"
    PLAYLIST_BLOCKED = "playlist_blocked"


_POLICY_TEXT = {
    PolicyKind.TOO_LARGE: "File is too large",
    PolicyKind.TOO_LONG: "Video is too long",
    PolicyKind.BLOCKED_DOMAIN: "Downloads from this site are blocked",
    PolicyKind.NSFW: "Adult content is not allowed",
    PolicyKind.PLAYLIST_BLOCKED: "Playlists are not allowed",
}


class PolicyViolation(MediaBridgeError):
    """The generic downloader refused a target; never retried."""

    def __init__(self, kind: PolicyKind, detail: str = "") -> None:
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)
        self.kind = kind
        self.detail = detail

    def user_message(self) -> str:
        base = _POLICY_TEXT[self.kind]
        return f"{base} ({self.detail})" if self.detail else base


class CapacityExceeded(MediaBridgeError):
    """Every download slot is busy; callers may retry later."""

    def __init__(self, active: int, maximum: int) -> None:
        super().__init__(f"{active}/{maximum} downloads already running")
        self.active = active
        self.maximum = maximum

    def user_message(self) -> str:
        return f"Too many downloads in progress ({self.active}/{self.maximum}), try again in a moment"


class CacheCorruption(MediaBridgeError):
    """A cache file was unreadable or written by an incompatible version."""

    def __init__(self, path: object, detail: str) -> None:
        super().__init__(f"{path}: {detail}")
        self.path = path
        self.detail = detail


class DeliveryFailure(MediaBridgeError):
    """The chat transport rejected or failed an operation."""

    def __init__(self, operation: str, detail: str = "", *, status_code: int | None = None) -> None:
        super().__init__(f"{operation} failed: {detail}" if detail else f"{operation} failed")
        self.operation = operation
        self.detail = detail
        self.status_code = status_code

    def user_message(self) -> str:
        return "The content was found but could not be sent here"


class DownloadFailed(MediaBridgeError):
    """The extraction tool or a direct fetch failed outside the policy rules."""

    def user_message(self) -> str:
        return "The media could not be downloaded"
