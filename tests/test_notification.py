import json

import httpx
import pytest

from xiaoji_booking.errors import DeliveryError
from xiaoji_booking.models import Button
from xiaoji_booking.notification import TelegramNotifier, keyboard_markup


def _notifier(handler, retry_count=3):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramNotifier("123:ABC", retry_count=retry_count, retry_delay=0, client=client)


def _ok(result):
    return httpx.Response(200, json={"ok": True, "result": result})


def test_keyboard_markup():
    keyboard = [[Button("榜单", url="https://t.me/x")], [Button("出击", callback_data="attack_1")]]
    assert keyboard_markup(keyboard) == {
        "inline_keyboard": [[{"text": "榜单", "url": "https://t.me/x"}], [{"text": "出击", "callback_data": "attack_1"}]]
    }
    assert keyboard_markup(None) is None


def test_requires_token():
    with pytest.raises(DeliveryError):
        TelegramNotifier("")


async def test_send_message_payload():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.url.path, json.loads(request.content)))
        return _ok({"message_id": 7, "chat": {"id": -100}})

    notifier = _notifier(handler)
    sent = await notifier.send(-100, "*hi*", [[Button("a", callback_data="b")]], markdown=True)
    assert (sent.chat_id, sent.message_id) == (-100, 7)
    path, payload = calls[0]
    assert path == "/bot123:ABC/sendMessage"
    assert payload["parse_mode"] == "Markdown"
    assert payload["reply_markup"]["inline_keyboard"][0][0]["callback_data"] == "b"
    await notifier.close()


async def test_send_photo_uses_caption():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.url.path, json.loads(request.content)))
        return _ok({"message_id": 8, "chat": {"id": 5}})

    notifier = _notifier(handler)
    await notifier.send(5, "图文", photo="https://img/1.png")
    path, payload = calls[0]
    assert path.endswith("/sendPhoto")
    assert payload == {"chat_id": 5, "photo": "https://img/1.png", "caption": "图文"}
    await notifier.close()


async def test_client_error_is_not_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(400, json={"ok": False, "description": "Bad Request: chat not found"})

    notifier = _notifier(handler)
    with pytest.raises(DeliveryError, match="chat not found"):
        await notifier.send(1, "x")
    assert len(attempts) == 1
    await notifier.close()


async def test_server_error_is_retried():
    responses = [
        httpx.Response(502, json={"ok": False, "description": "Bad Gateway"}),
        _ok({"message_id": 1, "chat": {"id": 1}}),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    notifier = _notifier(handler)
    sent = await notifier.send(1, "x")
    assert sent.message_id == 1
    await notifier.close()


async def test_retries_exhausted():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("boom")

    notifier = _notifier(handler, retry_count=2)
    with pytest.raises(DeliveryError, match="boom"):
        await notifier.delete(1, 2)
    await notifier.close()


async def test_broadcast_collects_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if payload["chat_id"] == "-2":
            return httpx.Response(403, json={"ok": False, "description": "Forbidden: bot was blocked by the user"})
        return _ok({"message_id": 1, "chat": {"id": payload["chat_id"]}})

    notifier = _notifier(handler)
    result = await notifier.broadcast("公告", ["-1", "-2", "-1", " "])
    assert result["sent"] == ["-1"]
    assert result["failed"] == [{"chatId": "-2", "error": "Forbidden: bot was blocked by the user"}]
    assert await notifier.broadcast("公告", []) == {"sent": [], "failed": []}
    await notifier.close()
