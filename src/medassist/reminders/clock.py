"""提醒时间匹配

纯函数，无状态。提醒只保存用户本地的墙上时间 (时:分)，每次 tick 时把当前 UTC 时间换算到
用户时区后再比较，比较结果跨午夜回绕 (23:59 与 00:00 相差 1 分钟)。
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from medassist.errors import InvalidTimeZoneError

__all__ = [
    "DEFAULT_TOLERANCE", "resolve_zone", "is_valid_timezone", "local_now", "local_date",
    "minutes_apart", "is_due", "occurrence_date", "sent_today", "parse_time_of_day", "format_time_of_day",
]

DEFAULT_TOLERANCE = timedelta(minutes=1)  # 与调度 tick 间隔一致
_SECONDS_PER_DAY = 24 * 60 * 60

# 接受四种写法: HH:mm, H:mm, HH.mm, H.mm
_TIME_OF_DAY_RE = re.compile(r"^(\d{1,2})[:.](\d{2})$")


@lru_cache(maxsize=256)
def resolve_zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidTimeZoneError(tz_name) from e


def is_valid_timezone(tz_name: str) -> bool:
    try:
        resolve_zone(tz_name)
    except InvalidTimeZoneError:
        return False
    return True


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant


def local_now(now_utc: datetime, tz_name: str) -> datetime:
    return _as_utc(now_utc).astimezone(resolve_zone(tz_name))


def local_date(instant: datetime, tz_name: str) -> date:
    return local_now(instant, tz_name).date()


def _seconds_of_day(t: time) -> int:
    return t.hour * 3600 + t.minute * 60 + t.second


def minutes_apart(a: time, b: time) -> float:
    """两个一天内时刻的最短距离 (分钟)，跨午夜回绕"""
    diff = abs(_seconds_of_day(a) - _seconds_of_day(b)) % _SECONDS_PER_DAY
    return min(diff, _SECONDS_PER_DAY - diff) / 60


def is_due(
    target: time,
    tz_name: str,
    now_utc: datetime,
    tolerance: timedelta = DEFAULT_TOLERANCE,
) -> bool:
    """用户本地当前时刻与 target 的距离不超过 tolerance 时返回 True"""
    current = local_now(now_utc, tz_name).time()
    return minutes_apart(current, target) * 60 <= tolerance.total_seconds()


def occurrence_date(target: time, tz_name: str, instant: datetime) -> date:
    """离 instant 最近 (前后半天内) 的那一次 target 时刻所在的用户本地日期

    例如 target 为 00:00 时，本地 23:59:30 与次日 00:00:30 对应同一次提醒。
    """
    local = local_now(instant, tz_name)
    offset = (_seconds_of_day(target) - _seconds_of_day(local.time())) % _SECONDS_PER_DAY
    if offset > _SECONDS_PER_DAY // 2:
        offset -= _SECONDS_PER_DAY
    return (local.replace(tzinfo=None) + timedelta(seconds=offset)).date()


def sent_today(
    last_sent_at: datetime | None,
    tz_name: str,
    now_utc: datetime,
    target: time | None = None,
) -> bool:
    """last_sent_at 按 *当前* 用户时区换算后是否与今天同一天

    给出 target 时按 occurrence_date 比较，跨午夜匹配的同一次提醒不会在相邻两次 tick 各发一次。
    注意: 用户在两次发送之间修改时区时，去重日期按新时区计算。
    """
    if last_sent_at is None:
        return False
    if target is not None:
        return occurrence_date(target, tz_name, last_sent_at) == occurrence_date(target, tz_name, now_utc)
    return local_date(last_sent_at, tz_name) == local_date(now_utc, tz_name)


def parse_time_of_day(text: str) -> time | None:
    match = _TIME_OF_DAY_RE.fullmatch(text.strip())
    if match is None:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return time(hour, minute)


def format_time_of_day(t: time) -> str:
    return t.strftime("%H:%M")
