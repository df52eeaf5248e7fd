"""Tests for the pre-delivery video optimizer."""

import asyncio
from pathlib import Path

from mediabridge.optimizer import OptimizationResult, OptimizerLimits, VideoOptimizer, optimized_path_for


def test_disabled_optimizer_returns_source(tmp_path):
    source = tmp_path / "clip.mp4"
    source.write_bytes(b"\x00" * 128)
    result = asyncio.run(VideoOptimizer(OptimizerLimits(), enabled=False).optimize(source))
    assert result.path == source
    assert not result.was_optimized
    assert result.original_size == result.final_size == 128


def test_unreadable_video_falls_back_to_original(tmp_path):
    source = tmp_path / "broken.mp4"
    source.write_bytes(b"definitely not a video")
    result = asyncio.run(VideoOptimizer(OptimizerLimits()).optimize(source))
    assert result.path == source
    assert not result.was_optimized
    assert result.error
    assert not optimized_path_for(source).exists()


def test_missing_source_is_left_alone(tmp_path):
    result = asyncio.run(VideoOptimizer(OptimizerLimits()).optimize(tmp_path / "gone.mp4"))
    assert result.original_size == 0
    assert result.error is None


def test_limits_from_config(make_config):
    limits = OptimizerLimits.from_config(make_config(optimizer_max_width=640, max_file_size_mb=10))
    assert limits.max_width == 640
    assert limits.max_file_size == 10 * 1024 * 1024


def test_size_reduction_and_paths():
    assert OptimizationResult(Path("a.mp4"), True, 200, 50).size_reduction == 75.0
    assert OptimizationResult(Path("a.mp4"), False, 0, 0).size_reduction == 0.0
    assert optimized_path_for(Path("/tmp/clip.webm")) == Path("/tmp/clip_optimized.mp4")
