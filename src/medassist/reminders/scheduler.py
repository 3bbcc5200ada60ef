"""
提醒调度器

两个相互独立的周期任务，只通过 PendingAcknowledgmentTracker 共享状态:
- tick: 每分钟检查一次所有启用的提醒，按用户时区匹配时刻，发送带 已服用/跳过 按钮的消息
- sweep_resends: 对超过重发间隔仍未确认的提醒，编辑原消息 (失败则发新消息) 再次提醒

注意: 提醒时刻只精确到分钟，同一提醒每个用户本地自然日最多成功发送一次
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta
from typing import Any, Callable

from medassist.config import messages, settings
from medassist.core import keyboards
from medassist.datamodel import PendingAcknowledgment, ReminderSpec
from medassist.errors import InvalidTimeZoneError
from medassist.events import E, bus
from medassist.logger import logger
from medassist.metrics import runtime_metrics
from medassist.reminders import clock
from medassist.reminders.pending import PendingAcknowledgmentTracker
from medassist.utils import now_utc, run_periodic

__all__ = ["ReminderScheduler", "render_notification", "render_resend"]


def _dosage_text(dosage: str | None) -> str:
    return dosage or messages.NOT_SPECIFIED


def render_notification(medication_name: str, dosage: str | None) -> str:
    return messages.REMINDER_NOTIFICATION.format(name=medication_name, dosage=_dosage_text(dosage))


def render_resend(medication_name: str, dosage: str | None, attempt: int) -> str:
    """每次重发的文本都带序号，保证编辑消息时内容确实发生变化"""
    return messages.REMINDER_NOTIFICATION_RESEND.format(
        attempt=attempt, name=medication_name, dosage=_dosage_text(dosage)
    )


class ReminderScheduler:
    """
    repository 需要提供: list_active / mark_sent / set_pending / clear_pending / update_pending_sent / list_pending
    users 需要提供: get_by_id
    notifier 需要提供: send_text(chat_id, text, actions) -> message_id, edit_text(chat_id, message_id, text, actions)
    """

    def __init__(
        self,
        repository: Any,
        users: Any,
        notifier: Any,
        tracker: PendingAcknowledgmentTracker,
        *,
        tick_seconds: float = settings.REMINDER_TICK_SECONDS,
        resend_sweep_seconds: float = settings.RESEND_SWEEP_SECONDS,
        resend_interval: timedelta = timedelta(minutes=settings.RESEND_INTERVAL_MINUTES),
        tolerance: timedelta = timedelta(minutes=settings.MATCH_TOLERANCE_MINUTES),
        notify_timeout: float = settings.NOTIFY_TIMEOUT_SECONDS,
        default_timezone: str = settings.DEFAULT_TIMEZONE,
        clock_fn: Callable[[], datetime] = now_utc,
    ):
        self.repository = repository
        self.users = users
        self.notifier = notifier
        self.tracker = tracker
        self.tick_seconds = tick_seconds
        self.resend_sweep_seconds = resend_sweep_seconds
        self.resend_interval = resend_interval
        self.tolerance = tolerance
        self.notify_timeout = notify_timeout
        self.default_timezone = default_timezone
        self._clock = clock_fn

        self._shutdown_event: asyncio.Event | None = None
        self._last_tick_at_epoch: float | None = None
        self._last_sweep_at_epoch: float | None = None

    def get_status(self) -> dict[str, object]:
        running = self._shutdown_event is not None and not self._shutdown_event.is_set()
        return {
            "running": running,
            "last_tick_at_epoch": self._last_tick_at_epoch,
            "last_sweep_at_epoch": self._last_sweep_at_epoch,
            "pending_count": len(self.tracker),
            "tick_seconds": self.tick_seconds,
            "resend_sweep_seconds": self.resend_sweep_seconds,
            "resend_interval_minutes": self.resend_interval.total_seconds() / 60,
        }

    # ----------------- tick ----------------

    async def _resolve_timezone(self, user_id: int, cache: dict[int, str | None]) -> str | None:
        if user_id not in cache:
            user = await self.users.get_by_id(user_id)
            if user is None:
                cache[user_id] = None
            else:
                cache[user_id] = user.timezone or self.default_timezone
        return cache[user_id]

    async def tick(self, now: datetime | None = None) -> int:
        """执行一次提醒检查，返回本次尝试发送的提醒数"""
        now = now or self._clock()
        self._last_tick_at_epoch = time.time()

        try:
            reminders: list[ReminderSpec] = await self.repository.list_active()
        except Exception as e:
            # 读取失败时跳过整个 tick
            logger.error(f"读取启用的提醒失败, 跳过本次 tick: {e}", exc_info=e)
            runtime_metrics.record_tick(skipped=True)
            return 0
        runtime_metrics.record_tick()

        timezones: dict[int, str | None] = {}
        due: list[ReminderSpec] = []
        for reminder in reminders:
            if not reminder.is_active:
                continue
            try:
                tz_name = await self._resolve_timezone(reminder.user_id, timezones)
            except Exception as e:
                logger.error(f"读取用户 {reminder.user_id} 失败, 跳过提醒 {reminder.reminder_id}: {e}", exc_info=e)
                continue
            if tz_name is None:
                logger.warning(f"提醒 {reminder.reminder_id} 的用户 {reminder.user_id} 不存在, 已跳过")
                continue

            try:
                if clock.sent_today(reminder.last_sent_at, tz_name, now, reminder.time_of_day):
                    continue
                if not clock.is_due(reminder.time_of_day, tz_name, now, self.tolerance):
                    continue
            except InvalidTimeZoneError as e:
                logger.critical(
                    f"用户 {reminder.user_id} 的时区配置非法: {e.tz_name}, 提醒 {reminder.reminder_id} 无法调度"
                )
                continue
            due.append(reminder)

        if due:
            logger.debug(f"本次 tick 有 {len(due)} 条提醒需要发送")
            await asyncio.gather(*(self._deliver(reminder, now) for reminder in due))
        return len(due)

    async def _deliver(self, reminder: ReminderSpec, now: datetime) -> None:
        """发送一条提醒，失败只记录，不影响同一 tick 的其他提醒"""
        try:
            message_id = await asyncio.wait_for(
                self.notifier.send_text(
                    reminder.channel_user_id,
                    render_notification(reminder.medication_name, reminder.dosage),
                    keyboards.reminder_actions(reminder.reminder_id),
                ),
                timeout=self.notify_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"发送提醒超时 ({self.notify_timeout:g} 秒): reminder_id={reminder.reminder_id}, "
                f"user_id={reminder.user_id}"
            )
            bus.emit(E.REMINDER_SEND_FAILED, reminder_id=reminder.reminder_id, user_id=reminder.user_id)
            return
        except Exception as e:
            logger.error(
                f"发送提醒失败: reminder_id={reminder.reminder_id}, user_id={reminder.user_id}, error={e}",
                exc_info=e,
            )
            bus.emit(E.REMINDER_SEND_FAILED, reminder_id=reminder.reminder_id, user_id=reminder.user_id)
            return

        self.tracker.upsert(PendingAcknowledgment(
            reminder_id=reminder.reminder_id,
            channel_user_id=reminder.channel_user_id,
            user_id=reminder.user_id,
            medication_id=reminder.medication_id,
            medication_name=reminder.medication_name,
            dosage=reminder.dosage,
            first_sent_at=now,
            last_sent_at=now,
            message_id=message_id,
        ))

        try:
            await self.repository.mark_sent(reminder.reminder_id, now)
            await self.repository.set_pending(reminder.reminder_id, now, now, message_id)
            if self.tracker.get(reminder.reminder_id) is None:
                # 保存期间用户已经确认或跳过，不能把待确认状态写回数据库
                logger.debug(f"提醒 {reminder.reminder_id} 在保存发送状态期间已被处理")
                await self.repository.clear_pending(reminder.reminder_id)
        except Exception as e:
            # 消息已经送达，去重日期未能落库时下一次 tick 可能重复发送
            logger.error(f"保存提醒发送状态失败: reminder_id={reminder.reminder_id}, error={e}", exc_info=e)

        logger.info(f"已发送提醒 {reminder.reminder_id} 给用户 {reminder.user_id} ({reminder.medication_name})")
        bus.emit(E.REMINDER_SENT, reminder_id=reminder.reminder_id, user_id=reminder.user_id)

    # ----------------- 重发 ----------------

    async def sweep_resends(self, now: datetime | None = None) -> int:
        """重发所有超过重发间隔仍未确认的提醒，返回尝试重发的条数"""
        now = now or self._clock()
        self._last_sweep_at_epoch = time.time()

        due = self.tracker.due_for_resend(self.resend_interval, now)
        if due:
            logger.debug(f"有 {len(due)} 条未确认的提醒需要重发")
            await asyncio.gather(*(self._resend(entry, now) for entry in due))
        return len(due)

    async def _resend(self, entry: PendingAcknowledgment, now: datetime) -> None:
        text = render_resend(entry.medication_name, entry.dosage, entry.resend_count + 1)
        actions = keyboards.reminder_actions(entry.reminder_id)
        message_id = entry.message_id

        try:
            edited = False
            if message_id is not None:
                try:
                    await asyncio.wait_for(
                        self.notifier.edit_text(entry.channel_user_id, message_id, text, actions),
                        timeout=self.notify_timeout,
                    )
                    edited = True
                except Exception as e:
                    logger.warning(f"编辑提醒消息失败, 改为发送新消息: reminder_id={entry.reminder_id}, error={e}")
            if not edited:
                message_id = await asyncio.wait_for(
                    self.notifier.send_text(entry.channel_user_id, text, actions),
                    timeout=self.notify_timeout,
                )
        except Exception as e:
            logger.error(f"重发提醒失败: reminder_id={entry.reminder_id}, error={e}", exc_info=e)
            bus.emit(E.REMINDER_SEND_FAILED, reminder_id=entry.reminder_id, user_id=entry.user_id)
            return

        updated = self.tracker.mark_resent(entry.reminder_id, now, message_id)
        if updated is None:
            # 重发期间用户已经确认
            logger.debug(f"提醒 {entry.reminder_id} 在重发期间已被确认")
            return

        try:
            await self.repository.update_pending_sent(
                entry.reminder_id, now, updated.message_id, updated.resend_count
            )
        except Exception as e:
            logger.error(f"保存重发状态失败: reminder_id={entry.reminder_id}, error={e}", exc_info=e)

        logger.info(f"已重发提醒 {entry.reminder_id} (第 {updated.resend_count} 次)")
        bus.emit(E.REMINDER_RESENT, reminder_id=entry.reminder_id, user_id=entry.user_id,
                 resend_count=updated.resend_count)

    # ----------------- 启动与主循环 ----------------

    async def restore_pending(self) -> int:
        """从数据库恢复进程重启前尚未确认的提醒"""
        try:
            rows: list[ReminderSpec] = await self.repository.list_pending()
        except Exception as e:
            logger.error(f"恢复未确认的提醒失败: {e}", exc_info=e)
            return 0

        for row in rows:
            last_sent_at = row.pending_last_sent_at or self._clock()
            self.tracker.upsert(PendingAcknowledgment(
                reminder_id=row.reminder_id,
                channel_user_id=row.channel_user_id,
                user_id=row.user_id,
                medication_id=row.medication_id,
                medication_name=row.medication_name,
                dosage=row.dosage,
                first_sent_at=row.pending_first_sent_at or last_sent_at,
                last_sent_at=last_sent_at,
                message_id=row.pending_message_id,
                resend_count=row.pending_resend_count,
            ))
        logger.info(f"已从数据库恢复 {len(rows)} 条未确认的提醒")
        return len(rows)

    async def main_loop(self, shutdown_event: asyncio.Event) -> None:
        self._shutdown_event = shutdown_event
        logger.info("Reminder 主循环已启动")
        await self.restore_pending()
        await asyncio.gather(
            run_periodic("提醒 tick", self.tick_seconds, self.tick, shutdown_event),
            run_periodic("未确认提醒重发", self.resend_sweep_seconds, self.sweep_resends, shutdown_event),
        )
        logger.info("Reminder 主循环已关闭")
