"""Thin synchronous wrapper around ``yt_dlp.YoutubeDL``.

The generic downloader calls these methods through ``asyncio.to_thread``;
tests substitute any object with the same three methods.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from yt_dlp import YoutubeDL
from yt_dlp.extractor import gen_extractor_classes
from yt_dlp.utils import DownloadError, ExtractorError

from ..errors import DownloadFailed

logger = logging.getLogger(__name__)


class _QuietLogger:
    """Route yt-dlp chatter into our logging tree instead of stdout."""

    def debug(self, msg: str) -> None:
        if not msg.startswith("[debug] "):
            logger.debug(msg)

    def info(self, msg: str) -> None:
        logger.debug(msg)

    def warning(self, msg: str) -> None:
        logger.info(msg)

    def error(self, msg: str) -> None:
        logger.warning(msg)


class ExtractorRunner(Protocol):
    def extract_info(self, url: str, options: dict[str, Any]) -> dict[str, Any]: ...

    def download(self, url: str, options: dict[str, Any]) -> dict[str, Any]: ...

    def list_extractors(self) -> list[str]: ...


class YtDlpRunner:
    """Blocking yt-dlp calls; every yt-dlp failure surfaces as ``DownloadFailed``."""

    def _run(self, url: str, options: dict[str, Any], *, download: bool) -> dict[str, Any]:
        opts = {"logger": _QuietLogger(), "quiet": True, "no_warnings": True, **options}
        try:
            with YoutubeDL(opts) as ydl:
                info = ydl.extract_info(url, download=download)
                info = ydl.sanitize_info(info) if info else info
        except (DownloadError, ExtractorError) as exc:
            raise DownloadFailed(_short_error(exc)) from exc
        if not info:
            raise DownloadFailed("no metadata returned")
        return info

    def extract_info(self, url: str, options: dict[str, Any]) -> dict[str, Any]:
        return self._run(url, {**options, "skip_download": True}, download=False)

    def download(self, url: str, options: dict[str, Any]) -> dict[str, Any]:
        return self._run(url, options, download=True)

    def list_extractors(self) -> list[str]:
        return sorted({cls.IE_NAME for cls in gen_extractor_classes() if getattr(cls, "_WORKING", True)})


def _short_error(exc: Exception) -> str:
    text = str(exc).replace("ERROR: ", "").strip()
    return text.splitlines()[0][:300] if text else type(exc).__name__
