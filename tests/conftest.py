"""Shared fixtures: a recording chat transport, a scripted extractor and config factories."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from mediabridge.config import AppConfig
from mediabridge.errors import DeliveryFailure
from mediabridge.http_client import ApiClient, RetryPolicy
from mediabridge.models import MediaKind
from mediabridge.transport import MessageLocator


# ============================================================================
# Configuration
# ============================================================================

@pytest.fixture(autouse=True)
def _restore_root_logging():
    """configure_logging replaces root handlers; put the test runner's back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., AppConfig]:
    """Build an AppConfig rooted in tmp_path without reading .env or the environment."""

    def _make(**overrides: Any) -> AppConfig:
        values: dict[str, Any] = {
            "temp_dir": tmp_path / "temp",
            "cache_dir": tmp_path / "cache",
            "image_dir": tmp_path / "images",
            "log_path": tmp_path / "logs" / "mediabridge.log",
            "telegram_token": "123456:TESTTOKEN",
            "retry_base_delay_ms": 0,
        }
        values.update(overrides)
        return AppConfig.model_validate(values)

    return _make


@pytest.fixture
def config(make_config) -> AppConfig:
    return make_config()


# ============================================================================
# HTTP
# ============================================================================

class Recorder:
    """Collects the delays tenacity would have slept."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.delays.append(seconds)


def json_response(payload: Any, status: int = 200, headers: dict[str, str] | None = None) -> httpx.Response:
    return httpx.Response(
        status,
        content=json.dumps(payload).encode(),
        headers={"content-type": "application/json", **(headers or {})},
    )


def make_api(handler: Callable[[httpx.Request], httpx.Response], *, attempts: int = 3) -> tuple[ApiClient, Recorder]:
    recorder = Recorder()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    policy = RetryPolicy(attempts=attempts, base_delay=0.01)
    return ApiClient(client, policy, sleep=recorder.sleep), recorder


# ============================================================================
# Chat transport
# ============================================================================

class FakeTransport:
    """In-memory chat transport that remembers every call and every live message."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.live: dict[str, dict[str, Any]] = {}
        self._next_id = 1000
        self.fail_media = False
        self.fail_html = False
        self.fail_text = False
        self.fail_delete = False
        self.member_status = "administrator"

    def _record(self, method: str, **params: Any) -> None:
        self.calls.append((method, params))

    def _new(self, chat_id: int | str, **content: Any) -> MessageLocator:
        self._next_id += 1
        locator = MessageLocator(chat_id, self._next_id)
        self.live[locator.encode()] = content
        return locator

    def named(self, method: str) -> list[dict[str, Any]]:
        return [params for name, params in self.calls if name == method]

    async def send_text(self, chat_id, text, *, reply_to=None, html=True) -> MessageLocator:
        self._record("send_text", chat_id=chat_id, text=text, reply_to=reply_to, html=html)
        if self.fail_text or (html and self.fail_html):
            raise DeliveryFailure("sendMessage", "rejected")
        return self._new(chat_id, text=text)

    async def send_media(self, chat_id, kind, media, *, caption=None, reply_to=None, thumbnail=None) -> MessageLocator:
        self._record("send_media", chat_id=chat_id, kind=kind, media=media, caption=caption, reply_to=reply_to)
        if self.fail_media:
            raise DeliveryFailure("sendVideo" if kind is MediaKind.VIDEO else "sendPhoto", "file too big")
        return self._new(chat_id, kind=kind, media=media, caption=caption)

    async def copy_message(self, source, chat_id, *, reply_to=None) -> MessageLocator:
        self._record("copy_message", source=source, chat_id=chat_id, reply_to=reply_to)
        original = self.live.get(source.encode())
        if original is None:
            raise DeliveryFailure("copyMessage", "message to copy not found")
        return self._new(chat_id, **original)

    async def edit_text(self, locator, text, *, html=True) -> None:
        self._record("edit_text", locator=locator, text=text)
        if locator.encode() not in self.live:
            raise DeliveryFailure("editMessageText", "message not found")
        self.live[locator.encode()] = {"text": text}

    async def delete_message(self, locator) -> None:
        self._record("delete_message", locator=locator)
        if self.fail_delete:
            raise DeliveryFailure("deleteMessage", "not enough rights")
        self.live.pop(locator.encode(), None)

    async def get_member_status(self, chat_id, user_id) -> str:
        return self.member_status

    async def get_updates(self, offset, timeout) -> list[dict[str, Any]]:
        self._record("get_updates", offset=offset, timeout=timeout)
        await asyncio.sleep(0)
        return []


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


# ============================================================================
# Extractor
# ============================================================================

class FakeRunner:
    """Scripted stand-in for yt-dlp; ``download`` writes a file matching the output template."""

    def __init__(self, info: dict[str, Any] | None = None, *, payload: bytes = b"\x00" * 2048, ext: str = "mp4") -> None:
        self.info = info or {"title": "Sample clip", "duration": 42, "extractor_key": "Vimeo", "uploader": "someone"}
        self.payload = payload
        self.ext = ext
        self.gate: threading.Event | None = None
        self.fail_with: Exception | None = None
        self.thumbnail = False
        self.extract_calls = 0
        self.download_calls = 0
        self.last_options: dict[str, Any] = {}
        self._lock = threading.Lock()

    def extract_info(self, url: str, options: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self.extract_calls += 1
        return dict(self.info)

    def download(self, url: str, options: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            self.download_calls += 1
            self.last_options = options
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail_with is not None:
            raise self.fail_with
        target = Path(str(options["outtmpl"]).replace("%(ext)s", self.ext))
        target.write_bytes(self.payload)
        if self.thumbnail:
            target.with_suffix(".jpg").write_bytes(b"\xff\xd8")
            target.with_suffix(".info.json").write_text("{}")
        return dict(self.info)

    def list_extractors(self) -> list[str]:
        return ["generic", "vimeo", "youtube"]
