"""
按钮回调插件
所有内联键盘点击交给对话流程分发
"""

from nonebot import on_type
from nonebot.adapters.telegram import Bot
from nonebot.adapters.telegram.event import CallbackQueryEvent
from nonebot.log import logger

from bot.services import get_flow, to_callback

callback_handler = on_type(CallbackQueryEvent, priority=1, block=True)


@callback_handler.handle()
async def handle_callback(bot: Bot, event: CallbackQueryEvent):
    callback = to_callback(event)
    logger.debug(f"收到回调: user={callback.user.id} data={callback.data}")
    try:
        await get_flow(bot).handle_callback(callback)
    except Exception as e:
        logger.error(f"处理回调失败: data={callback.data} error={e}")
