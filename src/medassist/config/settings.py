import os
from dotenv import load_dotenv
from medassist.logger import logger
load_dotenv()

__all__ = [
    "ENABLE_TELEGRAM_BOT_POLLING", "TELEGRAM_BOT_TOKEN",
    "DB_PATH", "DEFAULT_TIMEZONE",
    "REMINDER_TICK_SECONDS", "MATCH_TOLERANCE_MINUTES", "NOTIFY_TIMEOUT_SECONDS",
    "RESEND_SWEEP_SECONDS", "RESEND_INTERVAL_MINUTES",
    "SESSION_SWEEP_SECONDS", "SESSION_INACTIVITY_HOURS",
    "ADMIN_HTTP_HOST", "ADMIN_HTTP_PORT", "ADMIN_AUTH_TOKEN",
    "LOG_FILE", "LOG_LEVEL",
]


def _parse_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on", "y")


def _parse_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"{name} 非法: {raw}, 已回退到 {default}")
        return default
    if value <= 0:
        logger.warning(f"{name} 必须为正数: {raw}, 已回退到 {default}")
        return default
    return value


# Telegram Bot
# Token 缺失只在真正启动 Telegram 通道时视为致命错误，见 channels/telegram_polling.py
ENABLE_TELEGRAM_BOT_POLLING = _parse_bool("ENABLE_TELEGRAM_BOT_POLLING", True)
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
if ENABLE_TELEGRAM_BOT_POLLING and TELEGRAM_BOT_TOKEN == "":
    logger.warning("已启用 Telegram Bot Polling, 但 TELEGRAM_BOT_TOKEN 未设置")


# 存储
DB_PATH = os.getenv("DB_PATH", "data/medassist.db")

# 新用户默认时区 (IANA)
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "Europe/Moscow")


# 提醒调度
REMINDER_TICK_SECONDS = _parse_float("REMINDER_TICK_SECONDS", 60.0)
MATCH_TOLERANCE_MINUTES = _parse_float("MATCH_TOLERANCE_MINUTES", 1.0)
NOTIFY_TIMEOUT_SECONDS = _parse_float("NOTIFY_TIMEOUT_SECONDS", 15.0)

# 未确认提醒的重发
RESEND_SWEEP_SECONDS = _parse_float("RESEND_SWEEP_SECONDS", 300.0)
RESEND_INTERVAL_MINUTES = _parse_float("RESEND_INTERVAL_MINUTES", 15.0)
if RESEND_SWEEP_SECONDS <= REMINDER_TICK_SECONDS:
    logger.warning("RESEND_SWEEP_SECONDS 不大于 REMINDER_TICK_SECONDS, 重发扫描会比提醒 tick 更频繁")


# 会话清理
SESSION_SWEEP_SECONDS = _parse_float("SESSION_SWEEP_SECONDS", 3600.0)
SESSION_INACTIVITY_HOURS = _parse_float("SESSION_INACTIVITY_HOURS", 24.0)


# Admin API
ADMIN_HTTP_HOST = os.getenv("ADMIN_HTTP_HOST", "127.0.0.1")
ADMIN_HTTP_PORT = int(os.getenv("ADMIN_HTTP_PORT", "18080"))
ADMIN_AUTH_TOKEN = os.getenv("ADMIN_AUTH_TOKEN", "")


# 日志
LOG_FILE = os.getenv("LOG_FILE", "logs/medassist.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG").strip().upper()
