"""Local image artifacts, cached by media URL so repeat posts skip the fetch."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import secrets
from pathlib import Path
from urllib.parse import urlsplit

from .cache import ResolutionCache
from .config import AppConfig
from .files import IMAGE_EXTENSIONS, format_file_size
from .http_client import ApiClient
from .locks import KeyedLock
from .models import CacheEntry
from .urls import cache_key

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp", "image/bmp")
MAX_IMAGE_BYTES = 10 * 1024 * 1024
IMAGE_HEADERS = {
    "Accept": "image/webp,image/apng,image/*,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


async def file_exists(entry: CacheEntry) -> bool:
    """Image cache verifier: the locator is a local path that must still be a file."""
    return await asyncio.to_thread(Path(entry.delivery_locator).is_file)


async def delete_file(entry: CacheEntry) -> None:
    path = Path(entry.delivery_locator)
    await asyncio.to_thread(path.unlink, missing_ok=True)
    logger.debug("Deleted cached image %s", path.name)


def image_cache(config: AppConfig) -> ResolutionCache:
    return ResolutionCache(config.image_cache_path, name="image", on_evict=delete_file)


def _filename_for(url: str) -> str:
    digest = hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]
    suffix = Path(urlsplit(url).path).suffix.lower()
    if suffix not in IMAGE_EXTENSIONS:
        suffix = ".jpg"
    return f"{digest}{suffix}"


class ImageFetcher:
    """Fetch post images to ``image_dir`` with content-type and size checks."""

    def __init__(
        self,
        api: ApiClient,
        cache: ResolutionCache,
        image_dir: Path,
        *,
        timeout: float = 30.0,
        max_bytes: int = MAX_IMAGE_BYTES,
        user_agent: str = "Mozilla/5.0",
    ) -> None:
        self._api = api
        self.cache = cache
        self.image_dir = Path(image_dir)
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.headers = {"User-Agent": user_agent, **IMAGE_HEADERS}
        self.image_dir.mkdir(parents=True, exist_ok=True)
        self._locks = KeyedLock()

    @classmethod
    def from_config(cls, config: AppConfig, api: ApiClient, cache: ResolutionCache) -> "ImageFetcher":
        return cls(
            api,
            cache,
            config.image_dir,
            timeout=config.image_timeout_seconds,
            user_agent=config.user_agent,
        )

    async def fetch(self, url: str, *, platform: str = "image", title: str | None = None, author: str | None = None) -> Path:
        """Return a local copy of ``url``; raises ResolutionError or PolicyViolation on failure.

        Fetches of one URL are serialized, so concurrent callers share a
        single download. The body lands under a private name and is renamed
        into place only once complete.
        """
        async with self._locks.hold(cache_key(url)):
            cached = await self.cache.get(url, verify=file_exists)
            if cached is not None:
                logger.debug("Image cache hit for %s", url)
                return Path(cached.delivery_locator)
            destination = self.image_dir / _filename_for(url)
            partial = destination.with_name(f".{destination.name}.{secrets.token_hex(4)}.part")
            size = await self._api.stream_to_file(
                url,
                partial,
                max_bytes=self.max_bytes,
                timeout=self.timeout,
                headers=self.headers,
                content_types=ALLOWED_CONTENT_TYPES,
            )
            await asyncio.to_thread(os.replace, partial, destination)
            await self.cache.put(
                url,
                delivery_locator=str(destination),
                platform=platform,
                title=title,
                author=author,
                file_size_bytes=size,
            )
        logger.info("Fetched image %s (%s)", destination.name, format_file_size(size))
        return destination
