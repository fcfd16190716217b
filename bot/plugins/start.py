"""
/start 插件
普通用户进入欢迎页，带 merchant_<id> 参数时直接展示商家信息
"""

from nonebot import on_command
from nonebot.adapters.telegram import Bot, Message
from nonebot.adapters.telegram.event import MessageEvent
from nonebot.log import logger
from nonebot.params import CommandArg

from bot.services import get_flow, to_user

start_cmd = on_command("start", priority=5, block=True)


@start_cmd.handle()
async def handle_start(bot: Bot, event: MessageEvent, args: Message = CommandArg()):
    sender = getattr(event, "from_", None)
    if sender is None:
        return
    payload = args.extract_plain_text().strip()
    try:
        await get_flow(bot).handle_start(to_user(sender), event.chat.id, payload or None)
    except Exception as e:
        logger.error(f"处理 /start 失败: user={sender.id} payload={payload} error={e}")
