"""Platform providers: shared protocol, endpoint descriptors and the fallback chain."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, Sequence, runtime_checkable

from ..errors import MediaBridgeError, ResolutionError, ResolutionReason
from ..http_client import ApiClient
from ..models import Platform, Post

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PostRef:
    """Identifiers parsed offline from a platform URL."""

    url: str
    post_id: str
    username: str | None = None
    kind: str | None = None


FetchFn = Callable[[ApiClient, str, PostRef], Awaitable[Any]]
ParseFn = Callable[[Any, PostRef, str], Post]


@dataclass(frozen=True, slots=True)
class Endpoint:
    """One upstream API in a provider's ordered fallback list."""

    name: str
    base_url: str
    fetch: FetchFn
    parse: ParseFn


@dataclass(frozen=True, slots=True)
class AttemptRecord:
    endpoint: str
    error: MediaBridgeError


@dataclass(slots=True)
class ChainResult:
    """Outcome of walking an endpoint list: a post, or every failure in order."""

    post: Post | None = None
    endpoint: str | None = None
    attempts: list[AttemptRecord] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.post is not None

    def as_error(self, platform: Platform) -> ResolutionError:
        """Summarize exhaustion as one ResolutionError.

        ``not_found`` wins only when every endpoint agreed on it; otherwise
        the last endpoint's reason is reported.
        """
        reasons = [
            attempt.error.reason if isinstance(attempt.error, ResolutionError) else ResolutionReason.PARSE
            for attempt in self.attempts
        ]
        if not reasons:
            return ResolutionError(ResolutionReason.NETWORK, f"no {platform.value} endpoints configured")
        if all(reason is ResolutionReason.NOT_FOUND for reason in reasons):
            reason = ResolutionReason.NOT_FOUND
        else:
            reason = reasons[-1]
        tried = ", ".join(f"{attempt.endpoint} ({attempt.error})" for attempt in self.attempts)
        return ResolutionError(reason, f"all {platform.value} APIs failed: {tried}", api=self.attempts[-1].endpoint)


async def run_chain(endpoints: Sequence[Endpoint], api: ApiClient, ref: PostRef, platform: Platform) -> ChainResult:
    """Try ``endpoints`` strictly in order; the first parsed post wins."""
    result = ChainResult()
    for endpoint in endpoints:
        logger.debug("Trying %s API %s for %s", platform.value, endpoint.name, ref.post_id)
        try:
            data = await endpoint.fetch(api, endpoint.base_url, ref)
            post = endpoint.parse(data, ref, endpoint.base_url)
        except MediaBridgeError as exc:
            error: MediaBridgeError = exc
        except Exception as exc:
            # Malformed payloads surface as arbitrary errors; the next API still gets its turn.
            error = ResolutionError(ResolutionReason.PARSE, f"{type(exc).__name__}: {exc}", api=endpoint.name)
        else:
            result.post = post
            result.endpoint = endpoint.name
            if result.attempts:
                logger.info(
                    "%s resolved via %s after %d failed API(s)",
                    platform.display_name,
                    endpoint.name,
                    len(result.attempts),
                )
            return result
        logger.warning("%s API %s failed for %s: %s", platform.display_name, endpoint.name, ref.post_id, error)
        result.attempts.append(AttemptRecord(endpoint.name, error))
    return result


@runtime_checkable
class Provider(Protocol):
    """Capability set every platform provider offers."""

    platform: Platform

    def can_handle(self, url: str) -> bool: ...

    async def resolve(self, url: str) -> Post: ...

    def canonicalize(self, url: str) -> str: ...


__all__ = [
    "AttemptRecord",
    "ChainResult",
    "Endpoint",
    "PostRef",
    "Provider",
    "run_chain",
]
