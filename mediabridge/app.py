"""Top-level application controller for the MediaBridge bot."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Final, Optional

import httpx

from .cache import ResolutionCache
from .commands import CommandRouter
from .config import AppConfig, load_config
from .downloader.generic import GenericDownloader
from .downloader.ytdlp import ExtractorRunner
from .errors import DeliveryFailure
from .files import FileManager
from .http_client import HTTP_TIMEOUT, ApiClient, SleepFn
from .images import ImageFetcher, file_exists, image_cache
from .logging_utils import configure_logging
from .manager import InboundMessage, ManagerOptions, ResolutionManager
from .optimizer import VideoOptimizer
from .providers.registry import ProviderRegistry, build_registry
from .scheduler import SchedulerManager
from .transport import PollingTransport, TelegramBotTransport

logger = logging.getLogger(__name__)

POLL_ERROR_BACKOFF: Final[float] = 5.0


def _log_event(level: int, event: str, **fields: Any) -> None:
    """Emit structured log events with consistent metadata."""
    payload = {"event": event, **fields}
    logger.log(level, json.dumps(payload, default=str, separators=(",", ":")))


@dataclass(slots=True)
class Components:
    """Everything the pipeline needs, constructed once per process."""

    config: AppConfig
    http: httpx.AsyncClient
    api: ApiClient
    registry: ProviderRegistry
    files: FileManager
    video_cache: ResolutionCache
    image_cache: ResolutionCache
    downloader: GenericDownloader
    images: ImageFetcher
    optimizer: VideoOptimizer

    async def aclose(self) -> None:
        await self.http.aclose()


def build_components(
    config: AppConfig,
    *,
    http: httpx.AsyncClient | None = None,
    runner: ExtractorRunner | None = None,
    sleep: SleepFn = asyncio.sleep,
) -> Components:
    http = http or httpx.AsyncClient(
        timeout=HTTP_TIMEOUT,
        follow_redirects=True,
        headers={"User-Agent": config.user_agent},
    )
    api = ApiClient.from_config(config, http, sleep=sleep)
    files = FileManager(config.temp_dir, config.max_file_size_bytes, cleanup_after_send=config.cleanup_after_send)
    downloader = GenericDownloader.from_config(config, files, api)
    if runner is not None:
        downloader.runner = runner
    images_cache = image_cache(config)
    return Components(
        config=config,
        http=http,
        api=api,
        registry=build_registry(config, api),
        files=files,
        video_cache=ResolutionCache(config.video_cache_path, name="video"),
        image_cache=images_cache,
        downloader=downloader,
        images=ImageFetcher.from_config(config, api, images_cache),
        optimizer=VideoOptimizer.from_config(config),
    )


@dataclass(frozen=True, slots=True)
class JobSpec:
    """A maintenance job and the config attribute holding its interval in minutes."""

    job_id: str
    interval_field: str
    action: Callable[[Components], Awaitable[Any]]


async def _sweep_temp(components: Components) -> int:
    return await components.downloader.maintenance(components.config.temp_max_age_minutes * 60)


async def _clean_video_cache(components: Components) -> int:
    config = components.config
    return await components.video_cache.cleanup(
        older_than_days=config.cache_max_age_days,
        max_entries=config.cache_max_entries,
    )


async def _clean_image_cache(components: Components) -> int:
    config = components.config
    return await components.image_cache.cleanup(
        older_than_days=config.cache_max_age_days,
        max_entries=config.cache_max_entries,
        verify=file_exists,
    )


JOB_SPECS: Final[tuple[JobSpec, ...]] = (
    JobSpec("temp_sweep", "temp_sweep_interval_minutes", _sweep_temp),
    JobSpec("video_cache_cleanup", "cache_cleanup_interval_minutes", _clean_video_cache),
    JobSpec("image_cache_cleanup", "cache_cleanup_interval_minutes", _clean_image_cache),
)


def message_from_update(update: dict[str, Any]) -> InboundMessage | None:
    message = update.get("message") or update.get("channel_post")
    if not isinstance(message, dict):
        return None
    text = message.get("text") or message.get("caption")
    chat = message.get("chat") or {}
    if not text or "id" not in chat or "message_id" not in message:
        return None
    sender = message.get("from") or {}
    return InboundMessage(
        chat_id=chat["id"],
        message_id=int(message["message_id"]),
        text=text,
        user_id=sender.get("id"),
    )


class MediaBridgeBot:
    """Coordinates polling, message handling, maintenance jobs and graceful shutdown."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        *,
        transport: PollingTransport | None = None,
        components: Components | None = None,
    ) -> None:
        self.config = config or load_config()
        configure_logging(self.config)
        self.components = components or build_components(self.config)
        self.transport = transport or TelegramBotTransport.from_config(self.config, self.components.http)
        self.manager = ResolutionManager(
            self.components.registry,
            self.components.video_cache,
            self.transport,
            downloader=self.components.downloader,
            images=self.components.images,
            optimizer=self.components.optimizer,
            options=ManagerOptions.from_config(self.config),
        )
        self.commands = CommandRouter(self.manager, image_cache=self.components.image_cache)
        self.scheduler = SchedulerManager()
        self._stop_event = asyncio.Event()
        self._tasks: set[asyncio.Task[None]] = set()
        self._is_running = False
        self._offset: int | None = None
        self._configure_jobs()
        _log_event(logging.INFO, "mediabridge.initialized", environment=self.config.environment)

    def _configure_jobs(self) -> None:
        """Register maintenance jobs with the scheduler."""
        for spec in JOB_SPECS:
            minutes = getattr(self.config, spec.interval_field)

            async def job(spec: JobSpec = spec) -> Any:
                return await spec.action(self.components)

            try:
                self.scheduler.add_recurring_job(job, trigger="interval", id=spec.job_id, minutes=minutes)
            except Exception as exc:  # pragma: no cover - unexpected scheduler failure
                _log_event(logging.CRITICAL, "mediabridge.job_registration_failed", job_id=spec.job_id, error=str(exc))
                raise RuntimeError(f"Failed to register job {spec.job_id}") from exc
            _log_event(logging.DEBUG, "mediabridge.job_registered", job_id=spec.job_id, minutes=minutes)

    def _install_signal_handlers(self) -> None:
        """Attach SIGTERM/SIGINT handlers to the running loop where supported."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(signum, self._handle_signal, signum)
            except (NotImplementedError, RuntimeError):
                _log_event(logging.WARNING, "mediabridge.signal_handlers_skipped", reason="unsupported")
                return
        _log_event(logging.INFO, "mediabridge.signal_handlers_installed")

    def _handle_signal(self, signum: int) -> None:
        _log_event(logging.WARNING, "mediabridge.signal_received", signal=signum)
        self.stop()

    async def handle_update(self, update: dict[str, Any]) -> None:
        message = message_from_update(update)
        if message is None:
            return
        try:
            if await self.commands.dispatch(message):
                return
            await self.manager.handle_text(message)
        except Exception:
            logger.exception("Unhandled error for update %s", update.get("update_id"))

    def _spawn(self, update: dict[str, Any]) -> None:
        task = asyncio.create_task(self.handle_update(update))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def poll_once(self) -> int:
        """Fetch one batch of updates and dispatch each as its own task."""
        updates = await self.transport.get_updates(self._offset, self.config.poll_timeout_seconds)
        for update in updates:
            self._offset = int(update["update_id"]) + 1
            self._spawn(update)
        return len(updates)

    async def run(self) -> None:
        """Start the scheduler and poll until stop is requested."""
        if self._is_running:
            _log_event(logging.INFO, "mediabridge.start_ignored", reason="already_running")
            return
        self._is_running = True
        self._stop_event.clear()
        self._install_signal_handlers()
        self.scheduler.start()
        _log_event(logging.INFO, "mediabridge.started", jobs=len(JOB_SPECS))
        stopper = asyncio.create_task(self._stop_event.wait())
        try:
            while not self._stop_event.is_set():
                poll = asyncio.create_task(self.poll_once())
                await asyncio.wait({poll, stopper}, return_when=asyncio.FIRST_COMPLETED)
                if not poll.done():
                    # Stop requested mid long-poll; the batch is re-fetched on next start.
                    poll.cancel()
                    await asyncio.gather(poll, return_exceptions=True)
                    break
                try:
                    poll.result()
                except DeliveryFailure as exc:
                    _log_event(logging.WARNING, "mediabridge.poll_failed", error=str(exc))
                    await asyncio.wait({stopper}, timeout=POLL_ERROR_BACKOFF)
        finally:
            stopper.cancel()
            await self._shutdown_resources()

    async def _shutdown_resources(self) -> None:
        """Stop the scheduler, finish in-flight work and close HTTP connections."""
        try:
            self.scheduler.shutdown()
            _log_event(logging.INFO, "mediabridge.scheduler_shutdown")
        except Exception as exc:
            _log_event(logging.ERROR, "mediabridge.scheduler_shutdown_failed", error=str(exc))
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.manager.drain()
        await self.components.aclose()
        self._is_running = False
        _log_event(logging.INFO, "mediabridge.stopped")

    def stop(self) -> None:
        """Signal the application to stop."""
        if not self._is_running:
            _log_event(logging.INFO, "mediabridge.stop_ignored", reason="not_running")
            return
        if self._stop_event.is_set():
            _log_event(logging.DEBUG, "mediabridge.stop_redundant")
            return
        self._stop_event.set()
        _log_event(logging.WARNING, "mediabridge.stop_requested")

    def health_snapshot(self) -> dict[str, Any]:
        """Return current health metadata for dashboards/CLI calls."""
        snapshot = self.scheduler.snapshot()
        return {
            "environment": self.config.environment,
            "running": self._is_running,
            "in_flight": len(self._tasks),
            "downloads_active": self.components.downloader.active_downloads,
            "providers": [platform.value for platform in self.components.registry.platforms],
            "scheduler": {
                "total_jobs": snapshot.total_jobs,
                "running": snapshot.running,
                "next_runs": snapshot.next_runs,
                "last_runs": {job_id: run.status for job_id, run in snapshot.last_runs.items()},
            },
        }
