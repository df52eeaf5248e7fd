"""Chat transport boundary and its Telegram Bot API implementation."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, Union

import httpx

from .config import AppConfig
from .errors import DeliveryFailure
from .files import MIME_TYPES
from .models import MediaKind
from .secrets import redact, secret_value

logger = logging.getLogger(__name__)

MediaSource = Union[str, Path]

_SEND_METHODS = {
    MediaKind.VIDEO: ("sendVideo", "video"),
    MediaKind.IMAGE: ("sendPhoto", "photo"),
    MediaKind.ANIMATED_IMAGE: ("sendAnimation", "animation"),
}


@dataclass(frozen=True, slots=True)
class MessageLocator:
    """Where a delivered message lives: ``(chat_id, message_id)``."""

    chat_id: int | str
    message_id: int

    def encode(self) -> str:
        return f"{self.chat_id}:{self.message_id}"

    @classmethod
    def decode(cls, value: str) -> "MessageLocator":
        chat, _, message = value.rpartition(":")
        if not chat or not message.lstrip("-").isdigit():
            raise ValueError(f"not a message locator: {value!r}")
        chat_id: int | str = int(chat) if chat.lstrip("-").isdigit() else chat
        return cls(chat_id, int(message))


class ChatTransport(Protocol):
    """Primitive chat operations the pipeline consumes; every call may raise DeliveryFailure."""

    async def send_text(
        self, chat_id: int | str, text: str, *, reply_to: int | None = None, html: bool = True
    ) -> MessageLocator: ...

    async def send_media(
        self,
        chat_id: int | str,
        kind: MediaKind,
        media: MediaSource,
        *,
        caption: str | None = None,
        reply_to: int | None = None,
        thumbnail: Path | None = None,
    ) -> MessageLocator: ...

    async def copy_message(
        self, source: MessageLocator, chat_id: int | str, *, reply_to: int | None = None
    ) -> MessageLocator: ...

    async def edit_text(self, locator: MessageLocator, text: str, *, html: bool = True) -> None: ...

    async def delete_message(self, locator: MessageLocator) -> None: ...

    async def get_member_status(self, chat_id: int | str, user_id: int) -> str: ...


class PollingTransport(ChatTransport, Protocol):
    """A transport the bot runner can also long-poll for new messages."""

    async def get_updates(self, offset: int | None, timeout: int) -> list[dict[str, Any]]: ...


class TelegramBotTransport:
    """Minimal Bot API client; file uploads go as multipart, URLs are passed through."""

    def __init__(self, client: httpx.AsyncClient, token: str, *, api_base: str = "https://api.telegram.org") -> None:
        if not token:
            raise ValueError("a bot token is required")
        self._client = client
        self._token = token
        self._base = f"{api_base.rstrip('/')}/bot{token}"

    @classmethod
    def from_config(cls, config: AppConfig, client: httpx.AsyncClient) -> "TelegramBotTransport":
        token = secret_value(config.telegram_token)
        if token is None:
            raise ValueError("APP_TELEGRAM_TOKEN is not configured")
        return cls(client, token, api_base=config.telegram_api_base)

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        files: dict[str, tuple[str, bytes, str]] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Invoke a Bot API method and return its ``result`` field."""
        url = f"{self._base}/{method}"
        extra: dict[str, Any] = {} if timeout is None else {"timeout": timeout}
        try:
            if files:
                data = {key: _form_value(value) for key, value in (params or {}).items() if value is not None}
                response = await self._client.post(url, data=data, files=files, **extra)
            else:
                payload = {key: value for key, value in (params or {}).items() if value is not None}
                response = await self._client.post(url, json=payload, **extra)
        except httpx.HTTPError as exc:
            detail = redact(f"{type(exc).__name__}: {exc}", self._token)
            raise DeliveryFailure(method, detail) from exc
        try:
            body = response.json()
        except ValueError as exc:
            raise DeliveryFailure(method, f"HTTP {response.status_code} with non-JSON body", status_code=response.status_code) from exc
        if not body.get("ok"):
            detail = body.get("description") or f"HTTP {response.status_code}"
            raise DeliveryFailure(method, redact(str(detail), self._token), status_code=body.get("error_code"))
        return body.get("result")

    @staticmethod
    def _locator(result: Any, method: str) -> MessageLocator:
        try:
            return MessageLocator(result["chat"]["id"], int(result["message_id"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise DeliveryFailure(method, "response carried no message locator") from exc

    @staticmethod
    def _reply(reply_to: int | None) -> dict[str, Any] | None:
        if reply_to is None:
            return None
        return {"message_id": reply_to, "allow_sending_without_reply": True}

    async def send_text(
        self, chat_id: int | str, text: str, *, reply_to: int | None = None, html: bool = True
    ) -> MessageLocator:
        result = await self.call(
            "sendMessage",
            {
                "chat_id": chat_id,
                "text": text,
                "parse_mode": "HTML" if html else None,
                "reply_parameters": self._reply(reply_to),
                "disable_notification": True,
                "link_preview_options": {"is_disabled": True},
            },
        )
        return self._locator(result, "sendMessage")

    async def send_media(
        self,
        chat_id: int | str,
        kind: MediaKind,
        media: MediaSource,
        *,
        caption: str | None = None,
        reply_to: int | None = None,
        thumbnail: Path | None = None,
    ) -> MessageLocator:
        method, field = _SEND_METHODS[kind]
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "caption": caption,
            "parse_mode": "HTML" if caption else None,
            "reply_parameters": self._reply(reply_to),
            "disable_notification": True,
        }
        if kind is MediaKind.VIDEO:
            params["supports_streaming"] = True
        files: dict[str, tuple[str, bytes, str]] | None = None
        if isinstance(media, Path):
            files = {field: await _read_upload(media)}
            if thumbnail is not None and thumbnail.exists():
                files["thumbnail"] = await _read_upload(thumbnail)
                params["thumbnail"] = "attach://thumbnail"
        else:
            params[field] = media
        result = await self.call(method, params, files=files, timeout=120.0 if files else 60.0)
        return self._locator(result, method)

    async def copy_message(
        self, source: MessageLocator, chat_id: int | str, *, reply_to: int | None = None
    ) -> MessageLocator:
        result = await self.call(
            "copyMessage",
            {
                "chat_id": chat_id,
                "from_chat_id": source.chat_id,
                "message_id": source.message_id,
                "reply_parameters": self._reply(reply_to),
                "disable_notification": True,
            },
        )
        # copyMessage answers with a bare MessageId.
        try:
            return MessageLocator(chat_id, int(result["message_id"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise DeliveryFailure("copyMessage", "response carried no message id") from exc

    async def edit_text(self, locator: MessageLocator, text: str, *, html: bool = True) -> None:
        await self.call(
            "editMessageText",
            {
                "chat_id": locator.chat_id,
                "message_id": locator.message_id,
                "text": text,
                "parse_mode": "HTML" if html else None,
            },
        )

    async def delete_message(self, locator: MessageLocator) -> None:
        await self.call("deleteMessage", {"chat_id": locator.chat_id, "message_id": locator.message_id})

    async def get_member_status(self, chat_id: int | str, user_id: int) -> str:
        result = await self.call("getChatMember", {"chat_id": chat_id, "user_id": user_id})
        return str((result or {}).get("status", "unknown"))

    async def get_updates(self, offset: int | None, timeout: int) -> list[dict[str, Any]]:
        result = await self.call(
            "getUpdates",
            {"offset": offset, "timeout": timeout, "allowed_updates": ["message"]},
            timeout=timeout + 10,
        )
        return list(result or [])

    async def get_me(self) -> dict[str, Any]:
        return dict(await self.call("getMe") or {})


def _form_value(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


async def _read_upload(path: Path) -> tuple[str, bytes, str]:
    try:
        content = await asyncio.to_thread(path.read_bytes)
    except OSError as exc:
        raise DeliveryFailure("upload", f"cannot read {path.name}: {exc}") from exc
    return path.name, content, MIME_TYPES.get(path.suffix.lower(), "application/octet-stream")
