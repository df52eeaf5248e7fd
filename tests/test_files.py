"""Tests for temp file naming, validation and cleanup."""

import asyncio
import os
import time

import pytest

from mediabridge.errors import DownloadFailed, PolicyKind, PolicyViolation
from mediabridge.files import FileManager, format_duration, format_file_size, sanitize_title


def test_format_helpers():
    assert format_file_size(0) == "0 B"
    assert format_file_size(1536) == "1.5 KB"
    assert format_file_size(50 * 1024 * 1024) == "50 MB"
    assert format_duration(59) == "0:59"
    assert format_duration(700) == "11:40"
    assert format_duration(3725) == "1:02:05"


def test_sanitize_title():
    assert sanitize_title("Hello, World! (4K)") == "Hello_World_4K"
    assert sanitize_title(None) == "download"
    assert sanitize_title("???") == "download"
    assert len(sanitize_title("x" * 200)) == 50


def test_generated_names_are_unique(tmp_path):
    files = FileManager(tmp_path, 1024)
    names = {files.generate_filename("clip", "mp4") for _ in range(200)}
    assert len(names) == 200
    assert all(name.endswith("_clip.mp4") for name in names)


def test_validate_size_and_extension(tmp_path):
    files = FileManager(tmp_path, 100)
    small = tmp_path / "a.mp4"
    small.write_bytes(b"x" * 50)
    big = tmp_path / "b.mp4"
    big.write_bytes(b"x" * 500)
    odd = tmp_path / "c.exe"
    odd.write_bytes(b"x")

    info = asyncio.run(files.validate(small))
    assert info.is_video and info.mime_type == "video/mp4"
    with pytest.raises(PolicyViolation) as too_big:
        asyncio.run(files.validate(big))
    assert too_big.value.kind is PolicyKind.TOO_LARGE
    with pytest.raises(DownloadFailed):
        asyncio.run(files.validate(odd))
    with pytest.raises(DownloadFailed):
        asyncio.run(files.validate(tmp_path / "missing.mp4"))


def test_remove_takes_sidecars(tmp_path):
    files = FileManager(tmp_path, 1024)
    media = tmp_path / "123_abc_clip.mp4"
    for name in ("123_abc_clip.mp4", "123_abc_clip.info.json", "123_abc_clip.jpg", "123_abc_other.mp4"):
        (tmp_path / name).write_bytes(b"x")
    assert asyncio.run(files.remove(media)) == 3
    assert [p.name for p in tmp_path.iterdir()] == ["123_abc_other.mp4"]


def test_release_respects_cleanup_flag(tmp_path):
    keep = FileManager(tmp_path, 1024, cleanup_after_send=False)
    media = tmp_path / "x.mp4"
    media.write_bytes(b"x")
    asyncio.run(keep.release(media))
    assert media.exists()
    asyncio.run(FileManager(tmp_path, 1024).release(media))
    assert not media.exists()


def test_aging_sweep_and_stats(tmp_path):
    files = FileManager(tmp_path, 1024)
    old = tmp_path / "old.mp4"
    fresh = tmp_path / "fresh.mp4"
    old.write_bytes(b"x" * 10)
    fresh.write_bytes(b"x" * 20)
    stale = time.time() - 7200
    os.utime(old, (stale, stale))

    assert asyncio.run(files.cleanup_old_files(3600)) == 1
    stats = asyncio.run(files.directory_stats())
    assert (stats.file_count, stats.total_size) == (1, 20)
    assert asyncio.run(files.cleanup_all()) == 1
