"""Last-resort downloader built on yt-dlp.

Policy is enforced in a fixed order so that nothing is fetched for a
target that would be rejected anyway:

1. capacity (a bounded counter, never a queue)
2. blocked domains
3. Reddit JSON path, for Reddit posts
4. metadata probe: NSFW screen and playlist rule
5. duration and estimated size
6. download, then re-stat the file against the size limit
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator

from ..config import AppConfig
from ..errors import CapacityExceeded, DownloadFailed, MediaBridgeError, PolicyKind, PolicyViolation
from ..files import FileManager, format_duration, format_file_size, sanitize_title
from ..http_client import ApiClient
from ..models import DownloadArtifact, MediaMetadata
from ..urls import domain_matches, host_of
from .reddit import RedditVideoLocator, is_reddit_url
from .ytdlp import ExtractorRunner, YtDlpRunner

logger = logging.getLogger(__name__)

NSFW_KEYWORDS = ("porn", "nsfw", "adult", "xxx", "sex")
SIDECAR_SUFFIXES = (".info.json", ".jpg", ".jpeg", ".png", ".webp", ".part", ".ytdl", ".temp")
THUMBNAIL_SUFFIXES = (".jpg", ".png", ".webp")
SUPPORTED_SITES_TTL = 3600.0


@dataclass(frozen=True, slots=True)
class DownloadPolicy:
    max_file_size: int = 50 * 1024 * 1024
    max_duration: float = 600
    max_concurrent: int = 2
    blocked_domains: tuple[str, ...] = ()
    block_nsfw: bool = True
    block_playlists: bool = False
    preferred_quality: str = "best[height<=720]"
    probe_timeout: float = 30.0
    user_agent: str = "Mozilla/5.0"

    @classmethod
    def from_config(cls, config: AppConfig) -> "DownloadPolicy":
        return cls(
            max_file_size=config.max_file_size_bytes,
            max_duration=config.max_duration_seconds,
            max_concurrent=config.max_concurrent_downloads,
            blocked_domains=config.blocked_domains,
            block_nsfw=config.block_nsfw,
            block_playlists=config.block_playlists,
            preferred_quality=config.preferred_quality,
            probe_timeout=config.probe_timeout_seconds,
            user_agent=config.user_agent,
        )


@dataclass(frozen=True, slots=True)
class DownloaderStats:
    active_downloads: int
    max_downloads: int
    temp_files: int
    temp_size: int
    supported_sites: int


def format_chain(policy: DownloadPolicy) -> str:
    """yt-dlp selector: combined A/V at falling resolution, then video-only, then anything."""
    cap = f"[filesize<{max(policy.max_file_size // (1024 * 1024), 1)}M]"
    chain = (
        f"{policy.preferred_quality}{cap}",
        f"best[height<=720]{cap}",
        f"best[height<=480]{cap}",
        f"best{cap}",
        f"bestvideo[height<=720]{cap}",
        f"bestvideo{cap}",
        "best",
    )
    return "/".join(dict.fromkeys(chain))


def _size_of(entry: dict[str, Any]) -> int:
    return int(entry.get("filesize") or entry.get("filesize_approx") or 0)


def reported_size(info: dict[str, Any] | None) -> int | None:
    """Largest size yt-dlp reported for the selected format(s), merged parts summed."""
    if not isinstance(info, dict):
        return None
    sizes = [_size_of(info)]
    for key in ("requested_downloads", "requested_formats"):
        parts = info.get(key)
        if isinstance(parts, list):
            sizes.append(sum(_size_of(part) for part in parts if isinstance(part, dict)))
    return max(sizes) or None


class GenericDownloader:
    """Fetch arbitrary media URLs under size, duration, domain and concurrency policy."""

    def __init__(
        self,
        files: FileManager,
        policy: DownloadPolicy,
        *,
        runner: ExtractorRunner | None = None,
        reddit: RedditVideoLocator | None = None,
        api: ApiClient | None = None,
    ) -> None:
        self.files = files
        self.policy = policy
        self.runner = runner or YtDlpRunner()
        self.reddit = reddit
        self._api = api
        self._active = 0
        self._sites: list[str] = []
        self._sites_updated = 0.0

    @classmethod
    def from_config(cls, config: AppConfig, files: FileManager, api: ApiClient) -> "GenericDownloader":
        return cls(
            files,
            DownloadPolicy.from_config(config),
            reddit=RedditVideoLocator(api, config.user_agent),
            api=api,
        )

    @property
    def active_downloads(self) -> int:
        return self._active

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        if self._active >= self.policy.max_concurrent:
            raise CapacityExceeded(self._active, self.policy.max_concurrent)
        self._active += 1
        try:
            yield
        finally:
            self._active -= 1

    # ------------------------------------------------------------ policy

    def is_blocked(self, url: str) -> bool:
        host = host_of(url)
        if host is None:
            return False
        return any(domain_matches(host, blocked) for blocked in self.policy.blocked_domains)

    def _check_domain(self, url: str) -> None:
        if self.is_blocked(url):
            raise PolicyViolation(PolicyKind.BLOCKED_DOMAIN, host_of(url) or url)

    def _screen(self, metadata: MediaMetadata) -> None:
        if self.policy.block_nsfw:
            if metadata.nsfw:
                raise PolicyViolation(PolicyKind.NSFW)
            haystack = f"{metadata.title or ''} {metadata.uploader or ''}".lower()
            hit = next((word for word in NSFW_KEYWORDS if word in haystack), None)
            if hit is not None:
                raise PolicyViolation(PolicyKind.NSFW)
        if metadata.is_playlist and self.policy.block_playlists:
            count = f"{metadata.playlist_count} items" if metadata.playlist_count else ""
            raise PolicyViolation(PolicyKind.PLAYLIST_BLOCKED, count)

    def check_limits(self, metadata: MediaMetadata) -> None:
        """Reject on duration or estimated size before any bytes are pulled."""
        duration = metadata.duration_seconds
        if duration is not None and duration > self.policy.max_duration:
            raise PolicyViolation(
                PolicyKind.TOO_LONG,
                f"{format_duration(duration)}, limit {format_duration(self.policy.max_duration)}",
            )
        size = metadata.estimated_size_bytes
        if size is not None and size > self.policy.max_file_size:
            raise PolicyViolation(
                PolicyKind.TOO_LARGE,
                f"{format_file_size(size)}, limit {format_file_size(self.policy.max_file_size)}",
            )

    def _probe_options(self) -> dict[str, object]:
        return {
            "extract_flat": "in_playlist",
            "socket_timeout": self.policy.probe_timeout,
            "http_headers": {"User-Agent": self.policy.user_agent, "Accept-Language": "en-US,en;q=0.9"},
        }

    # ------------------------------------------------------------ public

    async def extract_metadata(self, url: str) -> MediaMetadata:
        """Metadata-only probe; applies the domain, NSFW and playlist rules."""
        self._check_domain(url)
        info = await asyncio.to_thread(self.runner.extract_info, url, self._probe_options())
        metadata = MediaMetadata.from_info(info)
        self._screen(metadata)
        return metadata

    async def can_handle(self, url: str) -> bool:
        if self.is_blocked(url):
            return False
        try:
            await self.extract_metadata(url)
        except MediaBridgeError as exc:
            logger.debug("Generic downloader cannot handle %s: %s", url, exc)
            return False
        return True

    async def download(self, url: str) -> DownloadArtifact:
        """Download ``url`` into the temp directory and return the validated artifact."""
        async with self._slot():
            self._check_domain(url)
            if self.reddit is not None and self._api is not None and is_reddit_url(url):
                try:
                    return await self._download_reddit(url)
                except PolicyViolation:
                    raise
                except MediaBridgeError as exc:
                    logger.info("Reddit direct path failed for %s (%s); falling back to yt-dlp", url, exc)
            metadata = await self.extract_metadata(url)
            self.check_limits(metadata)
            return await self._download_generic(url, metadata)

    async def _download_reddit(self, url: str) -> DownloadArtifact:
        video_url, metadata = await self.reddit.locate(url)
        self._screen(metadata)
        self.check_limits(metadata)
        destination = self.files.temp_path(self.files.generate_filename(metadata.title or "reddit_video", "mp4"))
        await self._api.stream_to_file(
            video_url,
            destination,
            max_bytes=self.policy.max_file_size,
            timeout=self.policy.probe_timeout,
            headers={"User-Agent": self.policy.user_agent, "Referer": "https://www.reddit.com/"},
        )
        info = await self._validate_output(destination)
        logger.info("Downloaded reddit video %s (%s)", destination.name, format_file_size(info.size))
        return DownloadArtifact(
            local_path=destination,
            size_bytes=info.size,
            duration_seconds=metadata.duration_seconds,
            metadata=metadata,
            source="reddit",
        )

    def _download_options(self, prefix: str, metadata: MediaMetadata) -> dict[str, object]:
        options: dict[str, object] = {
            "format": format_chain(self.policy),
            "outtmpl": str(self.files.temp_dir / f"{prefix}_{sanitize_title(metadata.title)}.%(ext)s"),
            "writeinfojson": True,
            "writethumbnail": True,
            "merge_output_format": "mp4",
            "max_filesize": self.policy.max_file_size,
            "socket_timeout": self.policy.probe_timeout,
            "http_headers": {"User-Agent": self.policy.user_agent},
            "noplaylist": True,
            "overwrites": False,
            "retries": 1,
        }
        if metadata.is_playlist:
            options["noplaylist"] = False
            options["playlist_items"] = "1"
        return options

    async def _download_generic(self, url: str, metadata: MediaMetadata) -> DownloadArtifact:
        prefix = self.files.new_prefix()
        options = self._download_options(prefix, metadata)
        try:
            result = await asyncio.to_thread(self.runner.download, url, options)
        except DownloadFailed:
            await self._remove_prefixed(prefix)
            raise
        output = await asyncio.to_thread(self._find_output, prefix)
        if output is None:
            await self._remove_prefixed(prefix)
            # max_filesize makes yt-dlp skip the download silently.
            size = reported_size(result)
            if size is not None and size > self.policy.max_file_size:
                raise PolicyViolation(
                    PolicyKind.TOO_LARGE,
                    f"{format_file_size(size)}, limit {format_file_size(self.policy.max_file_size)}",
                )
            raise DownloadFailed("downloaded file not found")
        info = await self._validate_output(output)
        logger.info(
            "Downloaded %s via %s (%s)",
            output.name,
            metadata.extractor or "yt-dlp",
            format_file_size(info.size),
        )
        return DownloadArtifact(
            local_path=output,
            size_bytes=info.size,
            duration_seconds=metadata.duration_seconds,
            metadata=metadata,
            thumbnail_path=await asyncio.to_thread(self._find_thumbnail, output),
        )

    async def _validate_output(self, path: Path):
        try:
            return await self.files.validate(path)
        except MediaBridgeError:
            await self.files.remove(path)
            raise

    def _find_output(self, prefix: str) -> Path | None:
        candidates = sorted(
            entry
            for entry in self.files.temp_dir.iterdir()
            if entry.name.startswith(prefix) and not entry.name.lower().endswith(SIDECAR_SUFFIXES)
        )
        return candidates[0] if candidates else None

    @staticmethod
    def _find_thumbnail(media_path: Path) -> Path | None:
        for suffix in THUMBNAIL_SUFFIXES:
            candidate = media_path.with_suffix(suffix)
            if candidate.exists():
                return candidate
        return None

    async def _remove_prefixed(self, prefix: str) -> None:
        def _purge() -> None:
            for entry in self.files.temp_dir.iterdir():
                if entry.name.startswith(prefix):
                    entry.unlink(missing_ok=True)

        await asyncio.to_thread(_purge)

    async def release(self, artifact: DownloadArtifact) -> None:
        await self.files.release(artifact.local_path)

    async def supported_sites(self) -> list[str]:
        now = time.monotonic()
        if self._sites and now - self._sites_updated < SUPPORTED_SITES_TTL:
            return self._sites
        try:
            self._sites = await asyncio.to_thread(self.runner.list_extractors)
            self._sites_updated = now
        except Exception:
            logger.warning("Could not list yt-dlp extractors", exc_info=True)
        return self._sites

    async def stats(self) -> DownloaderStats:
        directory = await self.files.directory_stats()
        sites = await self.supported_sites()
        return DownloaderStats(
            active_downloads=self._active,
            max_downloads=self.policy.max_concurrent,
            temp_files=directory.file_count,
            temp_size=directory.total_size,
            supported_sites=len(sites),
        )

    async def maintenance(self, max_age_seconds: float = 3600) -> int:
        removed = await self.files.cleanup_old_files(max_age_seconds)
        await self.supported_sites()
        return removed
