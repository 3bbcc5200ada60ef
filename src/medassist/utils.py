import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo

from medassist.logger import logger

__all__ = ["now_utc", "to_utc_str", "parse_utc_str", "utc_to_user_local",
           "user_local_str", "run_periodic"]

_DB_FORMAT = "%Y-%m-%d %H:%M:%S"


def now_utc() -> datetime:
    """获取当前 UTC 时间"""
    return datetime.now(timezone.utc)


def to_utc_str(dt: datetime) -> str:
    """datetime -> 数据库存储格式 'YYYY-MM-DD HH:MM:SS' (UTC)"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_DB_FORMAT)


def parse_utc_str(raw: str | None) -> datetime | None:
    """数据库存储格式 -> 带 tzinfo 的 UTC datetime"""
    if raw is None or raw.strip() == "":
        return None
    return datetime.strptime(raw, _DB_FORMAT).replace(tzinfo=timezone.utc)


def utc_to_user_local(utc_dt: datetime, user_tz: str) -> datetime:
    if utc_dt.tzinfo is None:
        utc_dt = utc_dt.replace(tzinfo=timezone.utc)
    return utc_dt.astimezone(ZoneInfo(user_tz))


def user_local_str(utc_dt: datetime, user_tz: str, fmt: str = "%d.%m.%Y %H:%M") -> str:
    return utc_to_user_local(utc_dt, user_tz).strftime(fmt)


async def run_periodic(
    name: str,
    interval_seconds: float,
    job: Callable[[], Awaitable[object]],
    shutdown_event: asyncio.Event,
) -> None:
    """按固定间隔执行 job，直到 shutdown_event 被设置

    - 先等待一个间隔再执行第一次
    - 单次执行抛出的异常只记录，不会终止循环
    - 只在两次执行之间检查 shutdown_event，正在执行的 job 会跑完
    """
    logger.info(f"{name} 循环已启动, 间隔 {interval_seconds:g} 秒")
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
        if shutdown_event.is_set():
            break

        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{name} 单次执行失败: {e}", exc_info=e)

    logger.info(f"{name} 循环已关闭")
