"""
商家绑定插件
/bind <绑定码> 把当前 Telegram 账号绑定为商家
"""

from nonebot import on_command
from nonebot.adapters.telegram import Bot, Message
from nonebot.adapters.telegram.event import MessageEvent
from nonebot.log import logger
from nonebot.params import CommandArg

from bot.services import get_flow, to_user

bind_cmd = on_command("bind", aliases={"绑定"}, priority=5, block=True)


@bind_cmd.handle()
async def handle_bind(bot: Bot, event: MessageEvent, args: Message = CommandArg()):
    sender = getattr(event, "from_", None)
    if sender is None:
        return
    code = args.extract_plain_text().strip()
    try:
        merchant = await get_flow(bot).handle_bind(to_user(sender), event.chat.id, code)
    except Exception as e:
        logger.error(f"商家绑定失败: user={sender.id} code={code} error={e}")
        return
    if merchant is not None:
        logger.success(f"商家绑定成功: user={sender.id} merchant={merchant['id']}")
