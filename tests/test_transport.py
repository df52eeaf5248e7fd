"""Tests for the Telegram Bot API transport against a mock HTTP server."""

import asyncio
import json

import httpx
import pytest

from mediabridge.errors import DeliveryFailure
from mediabridge.models import MediaKind
from mediabridge.transport import MessageLocator, TelegramBotTransport

TOKEN = "123456:SECRETTOKEN"


class BotApi:
    """Records Bot API calls and answers from a method -> result table."""

    def __init__(self, results=None):
        self.results = results or {}
        self.requests: list[tuple[str, httpx.Request]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        self.requests.append((method, request))
        result = self.results.get(method, {"message_id": 9, "chat": {"id": -100}})
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json={"ok": True, "result": result})

    def json_body(self, index=-1):
        return json.loads(self.requests[index][1].content)


def _transport(api: BotApi) -> TelegramBotTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(api))
    return TelegramBotTransport(client, TOKEN, api_base="https://bot.example")


# ============================================================================
# Locators
# ============================================================================

def test_locator_round_trip_and_validation():
    assert MessageLocator.decode("-1001:77") == MessageLocator(-1001, 77)
    assert MessageLocator.decode("@channel:5") == MessageLocator("@channel", 5)
    with pytest.raises(ValueError):
        MessageLocator.decode("/tmp/file.jpg")


# ============================================================================
# Calls
# ============================================================================

def test_send_text_posts_json():
    api = BotApi()
    locator = asyncio.run(_transport(api).send_text(-100, "<b>hi</b>", reply_to=3))
    assert locator == MessageLocator(-100, 9)
    method, request = api.requests[0]
    assert method == "sendMessage"
    assert request.url.path.endswith("/sendMessage")
    assert request.url.host == "bot.example"
    body = api.json_body()
    assert body["parse_mode"] == "HTML"
    assert body["reply_parameters"]["message_id"] == 3


def test_plain_text_omits_parse_mode():
    api = BotApi()
    asyncio.run(_transport(api).send_text(-100, "hi", html=False))
    assert "parse_mode" not in api.json_body()


def test_send_media_by_url_and_by_upload(tmp_path):
    api = BotApi()
    transport = _transport(api)
    asyncio.run(transport.send_media(-100, MediaKind.IMAGE, "https://cdn.example/a.jpg", caption="c"))
    assert api.requests[-1][0] == "sendPhoto"
    assert api.json_body()["photo"] == "https://cdn.example/a.jpg"

    video = tmp_path / "clip.mp4"
    video.write_bytes(b"\x00" * 64)
    thumb = tmp_path / "clip.jpg"
    thumb.write_bytes(b"\xff\xd8")
    asyncio.run(transport.send_media(-100, MediaKind.VIDEO, video, thumbnail=thumb))
    method, request = api.requests[-1]
    assert method == "sendVideo"
    assert request.headers["content-type"].startswith("multipart/form-data")
    content = request.content
    assert b'name="video"; filename="clip.mp4"' in content
    assert b"attach://thumbnail" in content
    assert b'name="supports_streaming"\r\n\r\ntrue' in content


def test_copy_message_uses_bare_message_id():
    api = BotApi({"copyMessage": {"message_id": 44}})
    source = MessageLocator(-200, 1)
    locator = asyncio.run(_transport(api).copy_message(source, -100, reply_to=5))
    assert locator == MessageLocator(-100, 44)
    body = api.json_body()
    assert (body["from_chat_id"], body["message_id"], body["chat_id"]) == (-200, 1, -100)


def test_api_errors_become_delivery_failures_without_token():
    api = BotApi(
        {
            "copyMessage": httpx.Response(
                400, json={"ok": False, "error_code": 400, "description": "Bad Request: message to copy not found"}
            )
        }
    )
    with pytest.raises(DeliveryFailure) as info:
        asyncio.run(_transport(api).copy_message(MessageLocator(-1, 1), -1))
    assert info.value.status_code == 400
    assert "not found" in str(info.value)


def test_network_errors_are_redacted():
    def handler(request):
        raise httpx.ConnectError(f"cannot reach {request.url}", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    transport = TelegramBotTransport(client, TOKEN, api_base="https://bot.example")
    with pytest.raises(DeliveryFailure) as info:
        asyncio.run(transport.delete_message(MessageLocator(-1, 1)))
    assert "SECRETTOKEN" not in str(info.value)


def test_get_updates_and_member_status():
    api = BotApi(
        {
            "getUpdates": [{"update_id": 10, "message": {"message_id": 1, "chat": {"id": 5}, "text": "hi"}}],
            "getChatMember": {"status": "administrator"},
        }
    )
    transport = _transport(api)
    updates = asyncio.run(transport.get_updates(None, 5))
    assert updates[0]["update_id"] == 10
    assert "offset" not in api.json_body()
    assert asyncio.run(transport.get_member_status(5, 7)) == "administrator"


def test_missing_token_is_rejected():
    with pytest.raises(ValueError):
        TelegramBotTransport(httpx.AsyncClient(), "")
