"""
文字消息插件
评价文字输入与触发词，优先级最低，命令消息不处理
"""

from nonebot import on_message
from nonebot.adapters.telegram import Bot
from nonebot.adapters.telegram.event import MessageEvent
from nonebot.log import logger

from bot.services import get_flow, to_user

text_handler = on_message(priority=99, block=False)


@text_handler.handle()
async def handle_text(bot: Bot, event: MessageEvent):
    sender = getattr(event, "from_", None)
    if sender is None:
        return
    text = event.get_plaintext().strip()
    if not text or text.startswith("/"):
        return
    try:
        consumed = await get_flow(bot).handle_text(to_user(sender), event.chat.id, text)
    except Exception as e:
        logger.error(f"处理文字消息失败: user={sender.id} error={e}")
        return
    if consumed:
        logger.debug(f"文字消息已处理: user={sender.id} chat={event.chat.id}")
