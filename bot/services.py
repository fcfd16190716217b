"""Helper utilities for bot plugins to interact with the booking flow."""

from __future__ import annotations

from typing import Any, Dict, Optional, Union

from nonebot.adapters.telegram import Bot
from nonebot.adapters.telegram.model import InlineKeyboardButton, InlineKeyboardMarkup
from nonebot.exception import ActionFailed, NetworkError

from xiaoji_booking.errors import DeliveryError
from xiaoji_booking.flow import BookingFlow
from xiaoji_booking.models import CallbackContext, Keyboard, SentMessage, TelegramUser

ChatId = Union[int, str]


def build_markup(keyboard: Optional[Keyboard]) -> Optional[InlineKeyboardMarkup]:
    if not keyboard:
        return None
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text=button.text, url=button.url, callback_data=button.callback_data) for button in row]
            for row in keyboard
        ]
    )


def to_user(sender: Any) -> TelegramUser:
    return TelegramUser(
        id=sender.id,
        username=getattr(sender, "username", None),
        first_name=getattr(sender, "first_name", None),
        last_name=getattr(sender, "last_name", None),
    )


def to_callback(event: Any) -> CallbackContext:
    """CallbackQueryEvent 转成流程使用的回调上下文"""
    message = getattr(event, "message", None)
    chat = getattr(message, "chat", None)
    return CallbackContext(
        callback_id=event.id,
        user=to_user(event.from_),
        chat_id=chat.id if chat is not None else event.from_.id,
        message_id=getattr(message, "message_id", None),
        data=event.data or "",
    )


class TelegramMessenger:
    """用 nonebot 的 Telegram Bot 实现 Messenger，接口失败统一抛出 DeliveryError"""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send(
        self,
        chat_id: ChatId,
        text: str,
        keyboard: Optional[Keyboard] = None,
        markdown: bool = False,
        photo: Optional[str] = None,
    ) -> SentMessage:
        parse_mode = "Markdown" if markdown else None
        try:
            if photo:
                result = await self.bot.send_photo(
                    chat_id=chat_id,
                    photo=photo,
                    caption=text,
                    parse_mode=parse_mode,
                    reply_markup=build_markup(keyboard),
                )
            else:
                result = await self.bot.send_message(
                    chat_id=chat_id,
                    text=text,
                    parse_mode=parse_mode,
                    reply_markup=build_markup(keyboard),
                )
        except (ActionFailed, NetworkError) as exc:
            raise DeliveryError(str(exc)) from exc
        return SentMessage(chat_id=result.chat.id, message_id=result.message_id)

    async def edit(self, chat_id: ChatId, message_id: int, text: str, keyboard: Optional[Keyboard] = None) -> None:
        try:
            await self.bot.edit_message_text(
                chat_id=chat_id,
                message_id=message_id,
                text=text,
                reply_markup=build_markup(keyboard),
            )
        except (ActionFailed, NetworkError) as exc:
            raise DeliveryError(str(exc)) from exc

    async def delete(self, chat_id: ChatId, message_id: int) -> None:
        try:
            await self.bot.delete_message(chat_id=chat_id, message_id=message_id)
        except (ActionFailed, NetworkError) as exc:
            raise DeliveryError(str(exc)) from exc

    async def pin(self, chat_id: ChatId, message_id: int) -> None:
        try:
            await self.bot.pin_chat_message(chat_id=chat_id, message_id=message_id, disable_notification=True)
        except (ActionFailed, NetworkError) as exc:
            raise DeliveryError(str(exc)) from exc

    async def answer(self, callback_id: str, text: Optional[str] = None, alert: bool = False) -> None:
        try:
            await self.bot.answer_callback_query(callback_query_id=callback_id, text=text, show_alert=alert)
        except (ActionFailed, NetworkError) as exc:
            raise DeliveryError(str(exc)) from exc


# 每个 bot 账号一个流程对象 -----------------------------------------------------
_flows: Dict[str, BookingFlow] = {}


def get_flow(bot: Bot) -> BookingFlow:
    flow = _flows.get(bot.self_id)
    if flow is None:
        flow = BookingFlow(TelegramMessenger(bot))
        _flows[bot.self_id] = flow
    return flow


def all_flows() -> Dict[str, BookingFlow]:
    return dict(_flows)


async def shutdown_flows() -> None:
    for flow in list(_flows.values()):
        await flow.shutdown()
    _flows.clear()
