"""Video re-encoding before delivery, built around moviepy."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from moviepy import VideoFileClip

from .config import AppConfig
from .files import format_file_size

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OptimizerLimits:
    max_width: int = 1280
    max_height: int = 720
    crf: int = 28
    max_duration: float = 300
    max_file_size: int = 50 * 1024 * 1024

    @classmethod
    def from_config(cls, config: AppConfig) -> "OptimizerLimits":
        return cls(
            max_width=config.optimizer_max_width,
            max_height=config.optimizer_max_height,
            crf=config.optimizer_crf,
            max_duration=config.optimizer_max_duration_seconds,
            max_file_size=config.max_file_size_bytes,
        )


@dataclass(frozen=True, slots=True)
class OptimizationResult:
    path: Path
    was_optimized: bool
    original_size: int
    final_size: int
    error: str | None = None

    @property
    def size_reduction(self) -> float:
        if not self.original_size:
            return 0.0
        return (self.original_size - self.final_size) / self.original_size * 100


def optimized_path_for(source: Path) -> Path:
    return source.with_name(f"{source.stem}_optimized.mp4")


def _needs_work(clip: VideoFileClip, size: int, limits: OptimizerLimits) -> bool:
    width, height = clip.size
    return (
        width > limits.max_width
        or height > limits.max_height
        or (clip.duration or 0) > limits.max_duration
        or size > limits.max_file_size
    )


def _transcode(source: Path, destination: Path, limits: OptimizerLimits) -> bool:
    """Blocking encode; returns False when the source already fits the limits."""
    with VideoFileClip(str(source)) as clip:
        if not _needs_work(clip, source.stat().st_size, limits):
            return False
        width, height = clip.size
        scale = min(limits.max_width / width, limits.max_height / height, 1.0)
        if scale < 1.0:
            # libx264 needs even dimensions.
            clip = clip.resized(new_size=(int(width * scale) // 2 * 2, int(height * scale) // 2 * 2))
        if clip.duration and clip.duration > limits.max_duration:
            clip = clip.subclipped(0, limits.max_duration)
        clip.write_videofile(
            str(destination),
            codec="libx264",
            audio_codec="aac",
            temp_audiofile=str(destination.with_suffix(".temp-audio.m4a")),
            remove_temp=True,
            ffmpeg_params=["-crf", str(limits.crf), "-movflags", "+faststart", "-pix_fmt", "yuv420p"],
            threads=2,
            logger=None,
        )
    return True


class VideoOptimizer:
    """Shrink downloaded videos to chat-friendly resolution, length and size.

    Never fails the delivery: on any encoding error the original file is
    returned untouched.
    """

    def __init__(self, limits: OptimizerLimits, *, enabled: bool = True) -> None:
        self.limits = limits
        self.enabled = enabled

    @classmethod
    def from_config(cls, config: AppConfig) -> "VideoOptimizer":
        return cls(OptimizerLimits.from_config(config), enabled=config.optimizer_enabled)

    async def optimize(self, source: Path) -> OptimizationResult:
        source = Path(source)
        original_size = source.stat().st_size if source.exists() else 0
        unchanged = OptimizationResult(source, False, original_size, original_size)
        if not self.enabled or not source.exists():
            return unchanged
        destination = optimized_path_for(source)
        try:
            changed = await asyncio.to_thread(_transcode, source, destination, self.limits)
        except Exception as exc:
            logger.warning("Video optimization failed for %s: %s", source.name, exc, exc_info=True)
            destination.unlink(missing_ok=True)
            return OptimizationResult(source, False, original_size, original_size, error=str(exc))
        if not changed or not destination.exists():
            logger.debug("Video %s already within limits", source.name)
            return unchanged
        final_size = destination.stat().st_size
        result = OptimizationResult(destination, True, original_size, final_size)
        logger.info(
            "Video optimized: %s -> %s (%.1f%% reduction)",
            format_file_size(original_size),
            format_file_size(final_size),
            result.size_reduction,
        )
        return result
