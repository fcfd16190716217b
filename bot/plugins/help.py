from nonebot import on_command
from nonebot.adapters.telegram import Bot
from nonebot.adapters.telegram.event import MessageEvent
from nonebot.log import logger

from bot.services import get_flow

help_cmd = on_command("help", aliases={"帮助"}, priority=5, block=True)


@help_cmd.handle()
async def handle_help(bot: Bot, event: MessageEvent):
    """显示帮助信息"""
    try:
        await get_flow(bot).handle_help(event.chat.id)
    except Exception as e:
        logger.error(f"发送帮助信息失败: {e}")
