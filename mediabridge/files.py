"""Temporary file lifecycle for downloaded artifacts."""

from __future__ import annotations

import asyncio
import logging
import math
import re
import secrets
import string
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .errors import DownloadFailed, PolicyKind, PolicyViolation

logger = logging.getLogger(__name__)

MIME_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".avi": "video/avi",
    ".mov": "video/quicktime",
    ".mkv": "video/x-matroska",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".m4a": "audio/mp4",
    ".flac": "audio/flac",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}
VIDEO_EXTENSIONS = frozenset({".mp4", ".webm", ".avi", ".mov", ".mkv", ".flv", ".wmv", ".m4v"})
AUDIO_EXTENSIONS = frozenset({".mp3", ".wav", ".ogg", ".m4a", ".flac", ".aac", ".wma"})
IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp"})
MEDIA_EXTENSIONS = VIDEO_EXTENSIONS | AUDIO_EXTENSIONS | IMAGE_EXTENSIONS

_TITLE_STRIP_RE = re.compile(r"[^\w\s-]")
_SPACE_RE = re.compile(r"\s+")
_ALPHABET = string.ascii_lowercase + string.digits


def format_file_size(size: int | float | None) -> str:
    if not size or size <= 0:
        return "0 B"
    units = ("B", "KB", "MB", "GB", "TB")
    index = min(int(math.log(size, 1024)), len(units) - 1)
    value = round(size / 1024**index, 2)
    return f"{value:g} {units[index]}"


def format_duration(seconds: float | None) -> str:
    if not seconds or seconds <= 0:
        return "0:00"
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


@dataclass(frozen=True, slots=True)
class FileInfo:
    path: Path
    size: int
    ext: str
    mime_type: str
    is_video: bool
    is_audio: bool
    is_image: bool


@dataclass(frozen=True, slots=True)
class DirectoryStats:
    file_count: int
    total_size: int


def sanitize_title(title: str | None, limit: int = 50) -> str:
    if not title:
        return "download"
    cleaned = _SPACE_RE.sub("_", _TITLE_STRIP_RE.sub("", title).strip())[:limit]
    return cleaned or "download"


class FileManager:
    """Owns the temp directory: naming, validation, release and aging."""

    def __init__(self, temp_dir: Path, max_file_size: int, *, cleanup_after_send: bool = True) -> None:
        self.temp_dir = Path(temp_dir)
        self.max_file_size = max_file_size
        self.cleanup_after_send = cleanup_after_send
        self.temp_dir.mkdir(parents=True, exist_ok=True)

    def generate_filename(self, title: str | None = None, ext: str = "mp4") -> str:
        """``{epoch_ms}_{random6}_{title}.{ext}``; unique across concurrent callers."""
        stamp = time.time_ns() // 1_000_000
        suffix = "".join(secrets.choice(_ALPHABET) for _ in range(6))
        return f"{stamp}_{suffix}_{sanitize_title(title)}.{ext.lstrip('.') or 'mp4'}"

    def temp_path(self, filename: str) -> Path:
        return self.temp_dir / filename

    def new_prefix(self) -> str:
        """Unique filename prefix for tools that choose their own extension."""
        return self.generate_filename(None, "x").rsplit("_", 1)[0]

    def describe(self, path: Path, size: int) -> FileInfo:
        ext = path.suffix.lower()
        return FileInfo(
            path=path,
            size=size,
            ext=ext,
            mime_type=MIME_TYPES.get(ext, "application/octet-stream"),
            is_video=ext in VIDEO_EXTENSIONS,
            is_audio=ext in AUDIO_EXTENSIONS,
            is_image=ext in IMAGE_EXTENSIONS,
        )

    async def validate(self, path: Path, *, allowed: Iterable[str] | None = MEDIA_EXTENSIONS) -> FileInfo:
        """Check existence, size and extension before a file is used."""
        try:
            stat = await asyncio.to_thread(path.stat)
        except FileNotFoundError as exc:
            raise DownloadFailed(f"file not found: {path.name}") from exc
        if stat.st_size > self.max_file_size:
            raise PolicyViolation(
                PolicyKind.TOO_LARGE,
                f"{format_file_size(stat.st_size)}, limit {format_file_size(self.max_file_size)}",
            )
        info = self.describe(path, stat.st_size)
        if allowed is not None and info.ext not in set(allowed):
            raise DownloadFailed(f"unsupported file type {info.ext or '(none)'}")
        return info

    def _siblings(self, path: Path) -> list[Path]:
        stem = path.stem
        directory = path.parent
        if not directory.exists():
            return []
        return [entry for entry in directory.iterdir() if entry != path and entry.name.startswith(f"{stem}.")]

    def _remove_sync(self, path: Path) -> int:
        removed = 0
        for candidate in [path, *self._siblings(path)]:
            try:
                candidate.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError:
                logger.warning("Could not remove %s", candidate, exc_info=True)
        return removed

    async def remove(self, path: Path) -> int:
        """Delete ``path`` and siblings sharing its base name (thumbnail, info json)."""
        removed = await asyncio.to_thread(self._remove_sync, Path(path))
        if removed:
            logger.debug("Removed %d file(s) for %s", removed, Path(path).name)
        return removed

    async def release(self, path: Path) -> None:
        """Called once the caller finished sending ``path``."""
        if self.cleanup_after_send:
            await self.remove(path)

    def list_temp_files(self) -> list[Path]:
        if not self.temp_dir.exists():
            return []
        return [entry for entry in self.temp_dir.iterdir() if entry.is_file()]

    def _sweep_sync(self, max_age_seconds: float) -> int:
        cutoff = time.time() - max_age_seconds
        removed = 0
        for entry in self.list_temp_files():
            try:
                if entry.stat().st_mtime < cutoff:
                    entry.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
            except OSError:
                logger.warning("Could not age out %s", entry, exc_info=True)
        return removed

    async def cleanup_old_files(self, max_age_seconds: float = 3600) -> int:
        """Leak backstop: remove temp files older than ``max_age_seconds``."""
        removed = await asyncio.to_thread(self._sweep_sync, max_age_seconds)
        if removed:
            logger.info("Aging sweep removed %d temp file(s)", removed)
        return removed

    async def cleanup_all(self) -> int:
        return await asyncio.to_thread(self._sweep_sync, -1)

    async def directory_stats(self) -> DirectoryStats:
        def _stats() -> DirectoryStats:
            total = 0
            files = self.list_temp_files()
            for entry in files:
                try:
                    total += entry.stat().st_size
                except FileNotFoundError:
                    continue
            return DirectoryStats(file_count=len(files), total_size=total)

        return await asyncio.to_thread(_stats)
