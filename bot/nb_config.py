"""
NoneBot configuration helpers.
"""

import os
from pathlib import Path

import config as CFG

BASE_DIR = Path(__file__).parent


def load_env() -> None:
    """Load environment variables from .env/ env.example."""
    env_file = BASE_DIR / ".env"
    if not env_file.exists():
        env_file = BASE_DIR / "env.example"
    if not env_file.exists():
        return
    with env_file.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            os.environ.setdefault(key.strip(), value.strip())


def configure_driver(driver) -> None:
    """Apply configuration values to the initialized NoneBot driver."""
    driver.config.nickname = {os.getenv("BOT_NICKNAME", "小鸡管家")}
    driver.config.command_start = {"/"}
    driver.config.command_sep = {" "}

    driver.config.log_level = CFG.LOG_LEVEL
    driver.config.log_dir = CFG.LOG_DIR

    # Telegram 适配器读取 telegram_bots；未配置时使用 BOT_TOKEN
    if not getattr(driver.config, "telegram_bots", None):
        driver.config.telegram_bots = CFG.TELEGRAM_BOTS

    driver.config.purge_interval = int(os.getenv("STATE_PURGE_INTERVAL", "300"))
    driver.config.scheduler_enabled = CFG.SCHEDULER_ENABLED

    superusers = os.getenv("SUPERUSERS", "")
    driver.config.superusers = {ident.strip() for ident in superusers.split(",") if ident.strip()}
