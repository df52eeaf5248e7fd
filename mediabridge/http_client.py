"""Shared HTTP helper injected into every provider.

Wraps ``httpx.AsyncClient`` with the per-call retry policy and translates
transport failures and status codes into ``ResolutionError`` reasons so that
no raw httpx exception leaves this module.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx
from tenacity import AsyncRetrying, RetryCallState, before_sleep_log, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from .config import AppConfig
from .errors import PolicyKind, PolicyViolation, ResolutionError, ResolutionReason

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = httpx.Timeout(connect=5.0, read=10.0, write=10.0, pool=15.0)
SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay * multiplier ** (attempt - 1)``."""

    attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_retry_after: float = 30.0

    @classmethod
    def from_config(cls, config: AppConfig) -> "RetryPolicy":
        return cls(
            attempts=config.retry_attempts,
            base_delay=config.retry_base_delay_ms / 1000,
            max_retry_after=config.max_retry_after_seconds,
        )

    def backoff(self, attempt_number: int) -> float:
        return self.base_delay * self.multiplier ** max(attempt_number - 1, 0)


class wait_retry_after(wait_base):
    """Honor a server ``Retry-After`` hint, else fall back to exponential backoff."""

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, ResolutionError) and exc.retry_after is not None:
            return min(exc.retry_after, self.policy.max_retry_after)
        return self.policy.backoff(retry_state.attempt_number)


def parse_retry_after(value: str | None) -> float | None:
    """Seconds from a ``Retry-After`` header given as delta-seconds or HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ResolutionError) and exc.retryable


def raise_for_status(response: httpx.Response, api: str | None = None) -> None:
    """Map a non-2xx response onto the resolution taxonomy."""
    status = response.status_code
    if 200 <= status < 300:
        return
    detail = f"HTTP {status} from {response.request.url.host}"
    if status in (401, 403):
        raise ResolutionError(ResolutionReason.FORBIDDEN, detail, status_code=status, api=api)
    if status in (404, 410):
        raise ResolutionError(ResolutionReason.NOT_FOUND, detail, status_code=status, api=api)
    if status == 429:
        raise ResolutionError(
            ResolutionReason.RATE_LIMITED,
            detail,
            status_code=status,
            retry_after=parse_retry_after(response.headers.get("retry-after")),
            api=api,
        )
    raise ResolutionError(ResolutionReason.NETWORK, detail, status_code=status, api=api)


def decode_json(response: httpx.Response, api: str | None = None) -> Any:
    """Parse a JSON body; an HTML error page counts as a parse failure."""
    content_type = response.headers.get("content-type", "").lower()
    body = response.text
    if "text/html" in content_type or body.lstrip()[:1] == "<":
        raise ResolutionError(ResolutionReason.PARSE, "received HTML where JSON was expected", api=api)
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise ResolutionError(ResolutionReason.PARSE, f"invalid JSON: {exc.msg}", api=api) from exc


class ApiClient:
    """Retrying JSON client built on a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: RetryPolicy | None = None,
        *,
        timeout: httpx.Timeout | float | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._client = client
        self.policy = policy or RetryPolicy()
        self.timeout = timeout if timeout is not None else HTTP_TIMEOUT
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: AppConfig, client: httpx.AsyncClient, *, sleep: SleepFn = asyncio.sleep) -> "ApiClient":
        return cls(
            client,
            RetryPolicy.from_config(config),
            timeout=httpx.Timeout(config.provider_timeout_seconds, connect=5.0),
            sleep=sleep,
        )

    async def get_json(
        self,
        url: str,
        *,
        api: str | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        return await self.request("GET", url, api=api, params=params, headers=headers)

    async def post_form_json(
        self,
        url: str,
        data: dict[str, Any],
        *,
        api: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        return await self.request("POST", url, api=api, data=data, headers=headers)

    async def request(self, method: str, url: str, *, api: str | None = None, **kwargs: Any) -> Any:
        """Issue a request with retry on network and rate-limit failures."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.attempts),
            wait=wait_retry_after(self.policy),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        result: Any = None
        async for attempt in retrying:
            with attempt:
                result = await self._attempt(method, url, api=api, **kwargs)
        return result

    async def _attempt(self, method: str, url: str, *, api: str | None, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise ResolutionError(ResolutionReason.NETWORK, f"timeout calling {url}", api=api) from exc
        except httpx.HTTPError as exc:
            raise ResolutionError(ResolutionReason.NETWORK, f"{type(exc).__name__}: {exc}", api=api) from exc
        raise_for_status(response, api)
        return decode_json(response, api)

    async def stream_to_file(
        self,
        url: str,
        destination: Path,
        *,
        max_bytes: int,
        timeout: float | None = None,
        headers: dict[str, str] | None = None,
        content_types: tuple[str, ...] | None = None,
    ) -> int:
        """Download ``url`` into ``destination`` without retry, enforcing ``max_bytes``.

        A partially written file is removed when the size cap trips, the
        content type is not in ``content_types`` or the transfer fails.
        """
        written = 0
        try:
            async with self._client.stream(
                "GET", url, headers=headers, timeout=timeout or self.timeout, follow_redirects=True
            ) as response:
                raise_for_status(response)
                content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
                if content_types is not None and content_type not in content_types:
                    raise ResolutionError(ResolutionReason.PARSE, f"unexpected content type {content_type or '(none)'}")
                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > max_bytes:
                    raise PolicyViolation(PolicyKind.TOO_LARGE, f"{int(declared)} bytes > {max_bytes} bytes")
                handle = await asyncio.to_thread(destination.open, "wb")
                try:
                    async for chunk in response.aiter_bytes():
                        written += len(chunk)
                        if written > max_bytes:
                            raise PolicyViolation(PolicyKind.TOO_LARGE, f"more than {max_bytes} bytes")
                        await asyncio.to_thread(handle.write, chunk)
                finally:
                    await asyncio.to_thread(handle.close)
        except httpx.TimeoutException as exc:
            destination.unlink(missing_ok=True)
            raise ResolutionError(ResolutionReason.NETWORK, f"timeout fetching {url}") from exc
        except httpx.HTTPError as exc:
            destination.unlink(missing_ok=True)
            raise ResolutionError(ResolutionReason.NETWORK, f"{type(exc).__name__}: {exc}") from exc
        except (PolicyViolation, ResolutionError):
            destination.unlink(missing_ok=True)
            raise
        return written
