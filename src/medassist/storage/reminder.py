"""提醒仓储

函数名即调度器依赖的仓储接口 (list_active / mark_sent / set_pending ...)，
调度器直接以本模块作为仓储对象使用。
"""

from datetime import datetime, time

from ulid import ULID

import medassist.storage.db_config as db_config
from medassist.datamodel import ReminderSpec
from medassist.logger import logger
from medassist.reminders.clock import format_time_of_day
from medassist.utils import parse_utc_str, to_utc_str

_REMINDER_SELECT = (
    "SELECT r.reminder_id, r.user_id, r.telegram_user_id, r.medication_id, m.name, m.dosage, "
    "r.time_of_day, r.is_active, r.last_sent_at_utc, r.pending_first_sent_at_utc, "
    "r.pending_last_sent_at_utc, r.pending_message_id, r.pending_resend_count "
    "FROM reminders r JOIN medications m ON m.medication_id = r.medication_id"
)


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


def _row_to_reminder(row) -> ReminderSpec:
    return ReminderSpec(
        reminder_id=row[0],
        user_id=row[1],
        channel_user_id=row[2],
        medication_id=row[3],
        medication_name=row[4],
        dosage=row[5],
        time_of_day=time.fromisoformat(row[6]),
        is_active=bool(row[7]),
        last_sent_at=parse_utc_str(row[8]),
        pending_first_sent_at=parse_utc_str(row[9]),
        pending_last_sent_at=parse_utc_str(row[10]),
        pending_message_id=row[11],
        pending_resend_count=row[12] or 0,
    )


async def _fetch(where: str = "", params: tuple = ()) -> list[ReminderSpec]:
    async with db_config.conn.execute(f"{_REMINDER_SELECT} {where}", params) as cursor:
        rows = await cursor.fetchall()
        return [_row_to_reminder(row) for row in rows]


async def create(user_id: int, medication_id: str, channel_user_id: int, time_of_day: time) -> ReminderSpec:
    """创建提醒"""
    _ensure_conn()
    reminder_id = str(ULID())
    await db_config.conn.execute(
        "INSERT INTO reminders (reminder_id, user_id, medication_id, telegram_user_id, time_of_day) "
        "VALUES (?, ?, ?, ?, ?)",
        (reminder_id, user_id, medication_id, channel_user_id, format_time_of_day(time_of_day)),
    )
    await db_config.conn.commit()
    logger.trace(
        f"创建提醒: user_id={user_id}, medication_id={medication_id}, "
        f"time_of_day={format_time_of_day(time_of_day)}, reminder_id={reminder_id}"
    )
    return await get_by_id(reminder_id)


async def get_by_id(reminder_id: str) -> ReminderSpec | None:
    _ensure_conn()
    reminders = await _fetch("WHERE r.reminder_id = ?", (reminder_id,))
    return reminders[0] if reminders else None


async def list_active() -> list[ReminderSpec]:
    """获取所有启用中的提醒"""
    _ensure_conn()
    return await _fetch("WHERE r.is_active = 1 ORDER BY r.time_of_day, r.reminder_id")


async def list_by_user(user_id: int) -> list[ReminderSpec]:
    _ensure_conn()
    return await _fetch("WHERE r.user_id = ? ORDER BY r.time_of_day, r.reminder_id", (user_id,))


async def list_pending() -> list[ReminderSpec]:
    """获取所有已发送但未确认的提醒"""
    _ensure_conn()
    return await _fetch("WHERE r.pending_last_sent_at_utc IS NOT NULL")


async def delete(reminder_id: str) -> bool:
    _ensure_conn()
    async with db_config.conn.execute("DELETE FROM reminders WHERE reminder_id = ?", (reminder_id,)) as cursor:
        deleted = cursor.rowcount > 0
    await db_config.conn.commit()
    logger.trace(f"删除提醒: reminder_id={reminder_id}, deleted={deleted}")
    return deleted


async def mark_sent(reminder_id: str, sent_at: datetime) -> None:
    """记录最后一次成功发送时间，按用户时区换算出的日期即去重键"""
    _ensure_conn()
    await db_config.conn.execute(
        "UPDATE reminders SET last_sent_at_utc = ?, updated_at_utc = CURRENT_TIMESTAMP WHERE reminder_id = ?",
        (to_utc_str(sent_at), reminder_id),
    )
    await db_config.conn.commit()
    logger.trace(f"提醒已发送: reminder_id={reminder_id}, sent_at={to_utc_str(sent_at)}")


async def set_pending(
    reminder_id: str,
    first_sent_at: datetime,
    last_sent_at: datetime,
    message_id: int | None,
) -> None:
    _ensure_conn()
    await db_config.conn.execute(
        "UPDATE reminders SET pending_first_sent_at_utc = ?, pending_last_sent_at_utc = ?, "
        "pending_message_id = ?, pending_resend_count = 0, updated_at_utc = CURRENT_TIMESTAMP "
        "WHERE reminder_id = ?",
        (to_utc_str(first_sent_at), to_utc_str(last_sent_at), message_id, reminder_id),
    )
    await db_config.conn.commit()


async def update_pending_sent(
    reminder_id: str,
    last_sent_at: datetime,
    message_id: int | None,
    resend_count: int,
) -> None:
    _ensure_conn()
    await db_config.conn.execute(
        "UPDATE reminders SET pending_last_sent_at_utc = ?, pending_message_id = ?, "
        "pending_resend_count = ?, updated_at_utc = CURRENT_TIMESTAMP WHERE reminder_id = ?",
        (to_utc_str(last_sent_at), message_id, resend_count, reminder_id),
    )
    await db_config.conn.commit()


async def clear_pending(reminder_id: str) -> None:
    _ensure_conn()
    await db_config.conn.execute(
        "UPDATE reminders SET pending_first_sent_at_utc = NULL, pending_last_sent_at_utc = NULL, "
        "pending_message_id = NULL, pending_resend_count = 0, updated_at_utc = CURRENT_TIMESTAMP "
        "WHERE reminder_id = ?",
        (reminder_id,),
    )
    await db_config.conn.commit()


__all__ = [
    "create", "get_by_id", "list_active", "list_by_user", "list_pending", "delete",
    "mark_sent", "set_pending", "update_pending_sent", "clear_pending",
]
