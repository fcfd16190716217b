"""Telegram Bot HTTP API 客户端，供管理后台与定时任务在 bot 进程之外发送消息。"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

import httpx

import config as CFG

from .errors import DeliveryError
from .models import Keyboard, SentMessage

logger = logging.getLogger(__name__)

ChatId = Union[int, str]


def keyboard_markup(keyboard: Optional[Keyboard]) -> Optional[Dict[str, Any]]:
    if not keyboard:
        return None
    return {"inline_keyboard": [[button.to_dict() for button in row] for row in keyboard]}


def _unique(values: Optional[Iterable[Any]]) -> List[str]:
    if not values:
        return []
    seen: set[str] = set()
    result: List[str] = []
    for item in values:
        text = str(item).strip()
        if text and text not in seen:
            seen.add(text)
            result.append(text)
    return result


class TelegramNotifier:
    """对 Bot API 的薄封装，实现对话流程使用的 Messenger 接口"""

    def __init__(
        self,
        token: str,
        *,
        api_base: str = "https://api.telegram.org",
        retry_count: int = 3,
        retry_delay: float = 2,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not token:
            raise DeliveryError("未配置 BOT_TOKEN，无法发送 Telegram 消息")
        self.base_url = f"{api_base.rstrip('/')}/bot{token}"
        self.retry_count = max(1, int(retry_count))
        self.retry_delay = max(0.0, float(retry_delay))
        self.client = client or httpx.AsyncClient(timeout=15.0)

    async def _post_with_retry(self, method: str, payload: Dict[str, Any]) -> Any:
        """调用 Bot API；4xx 业务错误直接抛出，网络错误与 5xx 重试"""
        url = f"{self.base_url}/{method}"
        payload = {key: value for key, value in payload.items() if value is not None}
        last_error = "未知错误"
        for attempt in range(1, self.retry_count + 1):
            delay = self.retry_delay
            try:
                response = await self.client.post(url, json=payload)
                data = response.json()
                if data.get("ok"):
                    return data.get("result")
                last_error = data.get("description") or f"HTTP {response.status_code}"
                if response.status_code == 429:
                    delay = float((data.get("parameters") or {}).get("retry_after", delay))
                    logger.warning("Telegram 接口 %s 触发限流，%s 秒后重试", method, delay)
                elif response.status_code < 500:
                    raise DeliveryError(last_error)
                else:
                    logger.error("Telegram 接口 %s 返回 HTTP %s: %s", method, response.status_code, last_error)
            except (httpx.HTTPError, ValueError) as exc:
                last_error = str(exc) or exc.__class__.__name__
                logger.error(
                    "Telegram 接口 %s 请求异常（第 %s/%s 次尝试）: %s",
                    method,
                    attempt,
                    self.retry_count,
                    last_error,
                )
            if attempt < self.retry_count:
                await asyncio.sleep(delay)
        raise DeliveryError(last_error)

    async def send(
        self,
        chat_id: ChatId,
        text: str,
        keyboard: Optional[Keyboard] = None,
        markdown: bool = False,
        photo: Optional[str] = None,
    ) -> SentMessage:
        if photo:
            result = await self._post_with_retry(
                "sendPhoto",
                {
                    "chat_id": chat_id,
                    "photo": photo,
                    "caption": text,
                    "parse_mode": "Markdown" if markdown else None,
                    "reply_markup": keyboard_markup(keyboard),
                },
            )
        else:
            result = await self._post_with_retry(
                "sendMessage",
                {
                    "chat_id": chat_id,
                    "text": text,
                    "parse_mode": "Markdown" if markdown else None,
                    "reply_markup": keyboard_markup(keyboard),
                },
            )
        return SentMessage(chat_id=result["chat"]["id"], message_id=result["message_id"])

    async def edit(self, chat_id: ChatId, message_id: int, text: str, keyboard: Optional[Keyboard] = None) -> None:
        await self._post_with_retry(
            "editMessageText",
            {
                "chat_id": chat_id,
                "message_id": message_id,
                "text": text,
                "reply_markup": keyboard_markup(keyboard),
            },
        )

    async def delete(self, chat_id: ChatId, message_id: int) -> None:
        await self._post_with_retry("deleteMessage", {"chat_id": chat_id, "message_id": message_id})

    async def pin(self, chat_id: ChatId, message_id: int) -> None:
        await self._post_with_retry(
            "pinChatMessage",
            {"chat_id": chat_id, "message_id": message_id, "disable_notification": True},
        )

    async def answer(self, callback_id: str, text: Optional[str] = None, alert: bool = False) -> None:
        await self._post_with_retry(
            "answerCallbackQuery",
            {"callback_query_id": callback_id, "text": text, "show_alert": alert or None},
        )

    async def get_me(self) -> Dict[str, Any]:
        return await self._post_with_retry("getMe", {})

    async def broadcast(self, message: str, chat_ids: Iterable[ChatId]) -> Dict[str, Any]:
        """向多个聊天发送同一条文字消息，返回成功与失败的明细"""
        targets = _unique(chat_ids)
        if not targets:
            logger.warning("通知未发送：未指定任何目标聊天。")
            return {"sent": [], "failed": []}
        sent: List[str] = []
        failed: List[Dict[str, str]] = []
        for chat_id in targets:
            try:
                await self.send(chat_id, message)
                sent.append(chat_id)
            except DeliveryError as exc:
                logger.error("发送到 %s 失败: %s", chat_id, exc)
                failed.append({"chatId": chat_id, "error": str(exc)})
        return {"sent": sent, "failed": failed}

    async def close(self) -> None:
        await self.client.aclose()


# 全局实例 ----------------------------------------------------------------------
_notifier: Optional[TelegramNotifier] = None


def get_notifier() -> TelegramNotifier:
    """返回全局 TelegramNotifier"""
    global _notifier
    if _notifier is None:
        _notifier = TelegramNotifier(
            CFG.BOT_TOKEN,
            api_base=CFG.TELEGRAM_API_BASE,
            retry_count=CFG.NOTIFICATION_RETRY_COUNT,
            retry_delay=CFG.NOTIFICATION_RETRY_DELAY,
        )
    return _notifier


async def close_notifier() -> None:
    global _notifier
    if _notifier is not None:
        await _notifier.close()
        _notifier = None
