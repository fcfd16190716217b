"""
事件预处理：过滤其他机器人的消息与空回调。
"""

from __future__ import annotations

from nonebot import logger
from nonebot.adapters import Event
from nonebot.adapters.telegram.event import CallbackQueryEvent, MessageEvent
from nonebot.message import IgnoredException, event_preprocessor


@event_preprocessor
async def ignore_bot_senders(event: Event) -> None:
    """机器人账号发出的消息和按钮点击一律不处理"""
    if not isinstance(event, (MessageEvent, CallbackQueryEvent)):
        return
    sender = getattr(event, "from_", None)
    if sender is not None and getattr(sender, "is_bot", False):
        logger.debug(f"忽略机器人账号的事件: user={sender.id}")
        raise IgnoredException("Event from bot account ignored")


@event_preprocessor
async def ignore_empty_callback(event: Event) -> None:
    if isinstance(event, CallbackQueryEvent) and not event.data:
        logger.debug(f"忽略空回调: id={event.id}")
        raise IgnoredException("Callback without data ignored")
