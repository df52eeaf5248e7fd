"""Resolution manager: cache check, provider, generic fallback, delivery.

Each URL runs through the stages strictly in sequence while holding a lock
keyed by its cache key, so two concurrent requests for the same link never
race each other into duplicate deliveries or conflicting cache writes.
Distinct URLs proceed independently.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .cache import ResolutionCache
from .config import AppConfig
from .downloader.generic import GenericDownloader
from .errors import (
    CapacityExceeded,
    DeliveryFailure,
    DownloadFailed,
    MediaBridgeError,
    PolicyViolation,
    ResolutionError,
)
from .formatting import DisplayOptions, format_download, format_error, format_post, strip_html
from .images import ImageFetcher
from .locks import KeyedLock
from .models import CacheEntry, DownloadArtifact, MediaKind, Platform, Post
from .optimizer import VideoOptimizer
from .providers.registry import ProviderRegistry
from .transport import ChatTransport, MessageLocator
from .urls import cache_key, classify, extract_urls, is_likely_downloadable

logger = logging.getLogger(__name__)

PROCESSING_TEXT = "🔄 Processing content..."


class Stage(str, Enum):
    CACHE = "cache"
    PROVIDER = "provider"
    GENERIC = "generic"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class InboundMessage:
    chat_id: int | str
    message_id: int
    text: str
    user_id: int | None = None

    @property
    def locator(self) -> MessageLocator:
        return MessageLocator(self.chat_id, self.message_id)


@dataclass(slots=True)
class Outcome:
    """What happened to one URL of an inbound message."""

    url: str
    stage: Stage
    platform: Platform | None = None
    locator: MessageLocator | None = None
    error: MediaBridgeError | None = None
    degraded: bool = False
    api_errors: list[MediaBridgeError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and self.locator is not None


@dataclass(frozen=True, slots=True)
class ManagerOptions:
    generic_fallback: bool = True
    auto_delete_original: bool = False
    delete_delay_seconds: float = 3.0
    status_messages: bool = True
    display: DisplayOptions = field(default_factory=DisplayOptions)

    @classmethod
    def from_config(cls, config: AppConfig) -> "ManagerOptions":
        return cls(
            generic_fallback=config.generic_fallback_enabled,
            auto_delete_original=config.auto_delete_original,
            delete_delay_seconds=config.delete_delay_seconds,
            display=DisplayOptions(
                show_engagement=config.show_engagement,
                max_length=config.caption_max_length,
            ),
        )


class ResolutionManager:
    """Turns links found in chat messages into delivered content."""

    def __init__(
        self,
        registry: ProviderRegistry,
        cache: ResolutionCache,
        transport: ChatTransport,
        *,
        downloader: GenericDownloader | None = None,
        images: ImageFetcher | None = None,
        optimizer: VideoOptimizer | None = None,
        options: ManagerOptions | None = None,
    ) -> None:
        self.registry = registry
        self.cache = cache
        self.transport = transport
        self.downloader = downloader
        self.images = images
        self.optimizer = optimizer
        self.options = options or ManagerOptions()
        self._locks = KeyedLock()
        self._background: set[asyncio.Task[None]] = set()

    # ----------------------------------------------------------- messages

    def wants(self, url: str) -> bool:
        """Whether a URL found in chat enters the pipeline at all."""
        if classify(url) is not None:
            return True
        return self.options.generic_fallback and self.downloader is not None

    async def handle_text(self, message: InboundMessage) -> list[Outcome]:
        """Process every URL in ``message`` in order; one failure never stops the rest."""
        urls = [url for url in extract_urls(message.text) if self.wants(url)]
        outcomes: list[Outcome] = []
        for url in urls:
            outcomes.append(await self.process_url(message, url))
        if outcomes and all(outcome.ok for outcome in outcomes) and self.options.auto_delete_original:
            self._schedule_delete(message.locator, self.options.delete_delay_seconds)
        return outcomes

    async def process_url(self, message: InboundMessage, url: str) -> Outcome:
        platform = classify(url)
        async with self._locks.hold(cache_key(url)):
            status = await self._send_status(message)
            try:
                outcome = await self._run(message, url, platform)
            except MediaBridgeError as exc:
                outcome = Outcome(url, Stage.FAILED, platform, error=exc)
            except Exception as exc:
                logger.exception("Unexpected failure while processing %s", url)
                error = MediaBridgeError(f"Unexpected error ({type(exc).__name__})")
                outcome = Outcome(url, Stage.FAILED, platform, error=error)
            await self._finish_status(message, status, outcome)
        log = logger.info if outcome.ok else logger.warning
        log(
            "Processed %s via %s",
            url,
            outcome.stage.value,
            extra={
                "event": "resolution.completed" if outcome.ok else "resolution.failed",
                "stage": outcome.stage.value,
                "platform": platform.value if platform else None,
                "error": str(outcome.error) if outcome.error else None,
            },
        )
        return outcome

    # ------------------------------------------------------------- stages

    async def _run(self, message: InboundMessage, url: str, platform: Platform | None) -> Outcome:
        locator = await self._from_cache(message, url)
        if locator is not None:
            return Outcome(url, Stage.CACHE, platform, locator=locator)

        provider_error: MediaBridgeError | None = None
        provider = self.registry.for_url(url)
        if provider is not None:
            try:
                post = await provider.resolve(url)
            except ResolutionError as exc:
                logger.warning("%s provider failed for %s: %s", provider.platform.display_name, url, exc)
                provider_error = exc
            else:
                locator, degraded = await self._deliver_post(message, post)
                if not degraded:
                    await self._remember(url, locator, post)
                return Outcome(url, Stage.PROVIDER, platform, locator=locator, degraded=degraded)

        if not self.options.generic_fallback or self.downloader is None:
            raise provider_error or DownloadFailed("no provider handles this link")

        if platform is None and not is_likely_downloadable(url):
            logger.debug("%s is outside the known extractor domains; trying anyway", url)
        try:
            artifact = await self.downloader.download(url)
        except (PolicyViolation, CapacityExceeded):
            raise
        except MediaBridgeError as exc:
            logger.warning("Generic download failed for %s: %s", url, exc)
            raise provider_error or exc
        try:
            locator, degraded = await self._deliver_artifact(message, url, artifact)
        finally:
            await self.downloader.release(artifact)
        if not degraded:
            await self._remember_artifact(url, locator, artifact, platform)
        errors = [provider_error] if provider_error else []
        return Outcome(url, Stage.GENERIC, platform, locator=locator, degraded=degraded, api_errors=errors)

    async def _from_cache(self, message: InboundMessage, url: str) -> MessageLocator | None:
        copied: list[MessageLocator] = []

        async def copy_verifies(entry: CacheEntry) -> bool:
            try:
                source = MessageLocator.decode(entry.delivery_locator)
                copied.append(await self.transport.copy_message(source, message.chat_id, reply_to=message.message_id))
            except (ValueError, DeliveryFailure) as exc:
                logger.info("Cached delivery for %s is gone: %s", url, exc)
                return False
            return True

        entry = await self.cache.get(url, verify=copy_verifies)
        if entry is None or not copied:
            return None
        logger.info("Cache hit for %s", url, extra={"event": "cache.hit", "platform": entry.platform})
        return copied[0]

    async def _remember(self, url: str, locator: MessageLocator, post: Post) -> None:
        await self.cache.put(
            url,
            delivery_locator=locator.encode(),
            platform=post.platform.value,
            title=(post.text_content or "")[:100] or None,
            author=post.author,
            duration_seconds=post.primary_media.duration_seconds if post.primary_media else None,
        )

    async def _remember_artifact(
        self, url: str, locator: MessageLocator, artifact: DownloadArtifact, platform: Platform | None
    ) -> None:
        meta = artifact.metadata
        await self.cache.put(
            url,
            delivery_locator=locator.encode(),
            platform=platform.value if platform else (meta.extractor or "generic").lower(),
            title=meta.title,
            author=meta.uploader,
            duration_seconds=artifact.duration_seconds,
            file_size_bytes=artifact.size_bytes,
        )

    # ----------------------------------------------------------- delivery

    async def _deliver_post(self, message: InboundMessage, post: Post) -> tuple[MessageLocator, bool]:
        caption = format_post(post, self.options.display)
        media = post.primary_media
        if media is None:
            return await self._send_caption(message, caption), False
        source: str | Path = media.url
        if media.kind is MediaKind.IMAGE and self.images is not None:
            try:
                source = await self.images.fetch(media.url, platform=post.platform.value, author=post.author)
            except MediaBridgeError as exc:
                logger.info("Image fetch failed, sending by URL: %s", exc)
        try:
            locator = await self.transport.send_media(
                message.chat_id,
                media.kind,
                source,
                caption=caption,
                reply_to=message.message_id,
            )
        except DeliveryFailure as exc:
            logger.warning("Media delivery failed for %s, sending text: %s", post.source_url, exc)
            return await self._send_caption(message, caption), True
        return locator, False

    async def _deliver_artifact(
        self, message: InboundMessage, url: str, artifact: DownloadArtifact
    ) -> tuple[MessageLocator, bool]:
        caption = format_download(artifact, url, self.options.display)
        info = self.downloader.files.describe(artifact.local_path, artifact.size_bytes or 0)
        if info.is_image:
            kind = MediaKind.ANIMATED_IMAGE if info.ext == ".gif" else MediaKind.IMAGE
        else:
            kind = MediaKind.VIDEO
        path = artifact.local_path
        optimized: Path | None = None
        if kind is MediaKind.VIDEO and self.optimizer is not None:
            result = await self.optimizer.optimize(path)
            if result.was_optimized:
                optimized = path = result.path
        try:
            locator = await self.transport.send_media(
                message.chat_id,
                kind,
                path,
                caption=caption,
                reply_to=message.message_id,
                thumbnail=artifact.thumbnail_path,
            )
        except DeliveryFailure as exc:
            logger.warning("Upload of %s failed, sending text: %s", path.name, exc)
            return await self._send_caption(message, caption), True
        finally:
            if optimized is not None:
                await self.downloader.files.remove(optimized)
        return locator, False

    async def _send_caption(self, message: InboundMessage, caption: str) -> MessageLocator:
        """Text fallback: HTML first, then plain text; raises DeliveryFailure if both fail."""
        try:
            return await self.transport.send_text(message.chat_id, caption, reply_to=message.message_id)
        except DeliveryFailure as exc:
            logger.warning("HTML text delivery failed, retrying as plain text: %s", exc)
        return await self.transport.send_text(
            message.chat_id, strip_html(caption), reply_to=message.message_id, html=False
        )

    # ------------------------------------------------------------- status

    async def _send_status(self, message: InboundMessage) -> MessageLocator | None:
        if not self.options.status_messages:
            return None
        try:
            return await self.transport.send_text(message.chat_id, PROCESSING_TEXT, reply_to=message.message_id)
        except DeliveryFailure as exc:
            logger.info("Could not send processing status: %s", exc)
            return None

    async def _finish_status(self, message: InboundMessage, status: MessageLocator | None, outcome: Outcome) -> None:
        try:
            if outcome.ok:
                if status is not None:
                    await self.transport.delete_message(status)
                return
            text = format_error(outcome.platform, outcome.error)
            if status is not None:
                await self.transport.edit_text(status, text)
            else:
                await self.transport.send_text(message.chat_id, text, reply_to=message.message_id)
        except DeliveryFailure as exc:
            logger.warning("Could not update status for %s: %s", outcome.url, exc)

    # --------------------------------------------------------- background

    def _schedule_delete(self, locator: MessageLocator, delay: float) -> None:
        task = asyncio.create_task(self._delete_later(locator, delay))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _delete_later(self, locator: MessageLocator, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.transport.delete_message(locator)
        except DeliveryFailure as exc:
            # Usually missing admin rights in a group.
            logger.info("Could not delete original message %s: %s", locator.encode(), exc)

    async def drain(self) -> None:
        """Wait for pending background deletions."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
