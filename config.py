"""Runtime configuration for the 小鸡预约系统 bot, admin API and CLI.

Configuration is loaded from environment variables so the same codebase can
run in different environments (development, test, production) without
modifying source files."""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional


ENVIRONMENT = os.getenv("APP_ENV", "development").lower()
CONFIG_ROOT = Path(os.getenv("XIAOJI_CONFIG_ROOT", Path(__file__).resolve().parent / "data")).resolve()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise RuntimeError(f"环境变量 {name} 不是有效的整数") from None


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise RuntimeError(f"环境变量 {name} 不是有效的数字") from None


def _split_env_list(name: str, default: str = "") -> List[str]:
    value = os.getenv(name, default)
    if not value:
        return []
    return [item.strip() for item in value.replace(";", ",").split(",") if item.strip()]


def _load_json_from_env(env_key: str) -> Optional[Any]:
    raw = os.getenv(env_key)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        raise RuntimeError(f"环境变量 {env_key} 不是有效的 JSON") from None


def _default_db_path() -> str:
    if ENVIRONMENT == "test":
        return str(CONFIG_ROOT / "xiaoji_test.db")
    return str(CONFIG_ROOT / "xiaoji.db")


def _load_telegram_bots() -> List[Dict[str, Any]]:
    data = _load_json_from_env("TELEGRAM_BOTS")
    if isinstance(data, list):
        return [entry for entry in data if isinstance(entry, dict) and entry.get("token")]
    token = os.getenv("BOT_TOKEN", "").strip()
    if token:
        return [{"token": token}]
    return []


# 存储 ---------------------------------------------------------------------------
DB_PATH = os.getenv("DB_PATH", _default_db_path())
EXPORT_DIR = os.getenv("EXPORT_DIR", str(Path(__file__).resolve().parent / "exports"))

# 日志 ---------------------------------------------------------------------------
LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Telegram -----------------------------------------------------------------------
BOT_TOKEN = os.getenv("BOT_TOKEN", "").strip()
TELEGRAM_BOTS = _load_telegram_bots()
BOT_USERNAME = os.getenv("BOT_USERNAME", "xiaoji_daniao_bot").lstrip("@")
GROUP_CHAT_ID = os.getenv("GROUP_CHAT_ID", "").strip()
RANKING_URL = os.getenv("RANKING_URL", "https://t.me/xiaoji233")
SUPPORT_CONTACT = os.getenv("SUPPORT_CONTACT", "@xiaoji57")
TELEGRAM_API_BASE = os.getenv("TELEGRAM_API_BASE", "https://api.telegram.org").rstrip("/")

# 管理后台 -----------------------------------------------------------------------
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = _env_int("API_PORT", 8000)
CORS_ORIGINS = _split_env_list("CORS_ORIGINS", "*")

# 通知 ---------------------------------------------------------------------------
NOTIFICATION_RETRY_COUNT = _env_int("NOTIFICATION_RETRY_COUNT", 3)
NOTIFICATION_RETRY_DELAY = _env_float("NOTIFICATION_RETRY_DELAY", 2)

# 对话流程延迟（秒）--------------------------------------------------------------
FLOW_DELAYS: Dict[str, float] = {
    "booking_check_delay": _env_float("FLOW_BOOKING_CHECK_DELAY", 2),
    "completion_check_delay": _env_float("FLOW_COMPLETION_CHECK_DELAY", 10 * 60),
    "broadcast_timeout": _env_float("FLOW_BROADCAST_TIMEOUT", 5 * 60),
    "bind_followup_delay": _env_float("FLOW_BIND_FOLLOWUP_DELAY", 0.5),
    "merchant_thanks_delay": _env_float("FLOW_MERCHANT_THANKS_DELAY", 1),
}

# 调度 ---------------------------------------------------------------------------
SCHEDULE_DEBUG = _env_bool("SCHEDULE_DEBUG", False)
SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", True)
