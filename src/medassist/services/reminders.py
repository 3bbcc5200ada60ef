"""提醒的配置服务 (增删查)，发送与重发由 reminders/scheduler.py 负责"""

from datetime import time

import medassist.storage.reminder as reminder_store
from medassist.config import messages
from medassist.datamodel import ReminderSpec
from medassist.errors import NotFoundError, OwnershipError
from medassist.logger import logger
from medassist.reminders.clock import format_time_of_day
from medassist.services import medications


async def create(user_id: int, medication_id: str, channel_user_id: int, time_of_day: time) -> ReminderSpec:
    # 校验药品存在且属于该用户
    medication = await medications.get(user_id, medication_id)
    reminder = await reminder_store.create(user_id, medication.medication_id, channel_user_id, time_of_day)
    logger.info(f"用户 {user_id} 为 {medication.name} 添加提醒: {format_time_of_day(time_of_day)}")
    return reminder


async def get(user_id: int, reminder_id: str) -> ReminderSpec:
    reminder = await reminder_store.get_by_id(reminder_id)
    if reminder is None:
        raise NotFoundError(messages.REMINDER_NOT_FOUND)
    if reminder.user_id != user_id:
        logger.warning(f"用户 {user_id} 试图访问不属于自己的提醒 {reminder_id}")
        raise OwnershipError(messages.REMINDER_NOT_FOUND)
    return reminder


async def list_by_user(user_id: int) -> list[ReminderSpec]:
    return await reminder_store.list_by_user(user_id)


async def delete(user_id: int, reminder_id: str) -> ReminderSpec:
    reminder = await get(user_id, reminder_id)
    await reminder_store.delete(reminder_id)
    logger.info(f"用户 {user_id} 删除提醒: {reminder_id}")
    return reminder


async def clear_pending(reminder_id: str) -> None:
    await reminder_store.clear_pending(reminder_id)


__all__ = ["create", "get", "list_by_user", "delete", "clear_pending"]
