"""
小鸡管家 Telegram Bot entrypoint.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

import nonebot
from nonebot import get_driver, logger
from nonebot.adapters.telegram import Adapter as TelegramAdapter, Bot
from nonebot.log import LoguruHandler, default_format

# add project root to sys.path for xiaoji_booking imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import config as CFG
from bot.nb_config import configure_driver, load_env
from bot.services import TelegramMessenger, all_flows, shutdown_flows
from xiaoji_booking.scheduler import TemplateScheduler

driver = None
scheduler: Optional[TemplateScheduler] = None


def setup_logging(active_driver) -> None:
    log_level = getattr(active_driver.config, "log_level", "INFO")
    log_dir = Path(getattr(active_driver.config, "log_dir", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)

    console_format = (
        "<g>{time:MM-DD HH:mm:ss}</g> "
        "[<lvl>{level}</lvl>] "
        "<c><u>{name}</u></c> | "
        "{message}"
    )

    logger.remove()
    logger.add(
        sys.stderr,
        format=console_format,
        level=log_level,
        colorize=True,
    )
    logger.add(
        str(log_dir / "bot_{time:YYYY-MM-DD}.log"),
        format=default_format,
        level=log_level,
        rotation="1 day",
        retention="7 days",
        compression="zip",
    )
    # xiaoji_booking 使用标准 logging，统一转交给 loguru 输出
    logging.basicConfig(handlers=[LoguruHandler()], level=log_level, force=True)


async def purge_flow_state() -> None:
    for self_id, flow in all_flows().items():
        removed = flow.state.purge()
        if any(removed.values()):
            logger.debug(f"清理过期状态 bot={self_id}: {removed}")


def init_bot() -> None:
    global driver

    load_env()

    driver_type = os.getenv("DRIVER", "~fastapi+~httpx")
    nonebot.init(driver=driver_type, telegram_bots=CFG.TELEGRAM_BOTS)

    driver = get_driver()
    configure_driver(driver)
    setup_logging(driver)

    if not driver.config.telegram_bots:
        logger.warning("未配置 BOT_TOKEN / TELEGRAM_BOTS，机器人将不会连接 Telegram")

    driver.register_adapter(TelegramAdapter)

    @driver.on_bot_connect
    async def _(bot: Bot) -> None:
        global scheduler
        logger.success(f"Telegram Bot 连接成功: {bot.self_id}")
        if scheduler is not None or not driver.config.scheduler_enabled:
            return
        scheduler = TemplateScheduler(TelegramMessenger(bot))
        scheduler.add_interval_job(purge_flow_state, driver.config.purge_interval, "purge_flow_state")
        scheduler.start()

    @driver.on_bot_disconnect
    async def _(bot: Bot) -> None:
        logger.warning(f"Telegram Bot 连接断开: {bot.self_id}")

    @driver.on_shutdown
    async def _() -> None:
        global scheduler
        if scheduler is not None:
            scheduler.shutdown()
            scheduler = None
        await shutdown_flows()

    plugins_dir = Path(__file__).parent / "plugins"
    nonebot.load_plugins(str(plugins_dir.resolve()))

    # Ensure hooks are registered (filters, preprocessors, etc.)
    from bot import hooks  # noqa: F401  pylint: disable=unused-import

    from nonebot.matcher import matchers
    from nonebot.plugin import get_loaded_plugins

    total_matchers = sum(len(group) for group in matchers.values())
    plugin_names = ", ".join(
        sorted(plugin.id_ for plugin in get_loaded_plugins())
    ) or "无"

    logger.debug(f"插件加载完成: {plugin_names} (匹配器={total_matchers})")
    logger.info("小鸡管家 Bot 初始化完成")
    logger.info(f"机器人用户名: @{CFG.BOT_USERNAME}")
    logger.info(f"播报群组: {CFG.GROUP_CHAT_ID or '未配置'}")


def main() -> None:
    """主函数"""
    try:
        init_bot()
        logger.info("正在启动机器人…")
        nonebot.run()
    except KeyboardInterrupt:
        logger.info("收到停止信号，正在关闭机器人…")
    except Exception as exc:  # pylint: disable=broad-except
        logger.error(f"机器人运行出错: {exc}")
        raise


if __name__ == "__main__":
    main()
