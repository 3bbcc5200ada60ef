"""待确认提醒追踪器

记录"已发送、尚未被用户点 已服用/跳过"的提醒，键为 reminder_id。
条目只会被显式确认或跳过移除，不会因为时间过长被自动淘汰。
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta

from medassist.datamodel import PendingAcknowledgment
from medassist.utils import now_utc

__all__ = ["PendingAcknowledgmentTracker"]


class PendingAcknowledgmentTracker:
    def __init__(self) -> None:
        self._entries: dict[str, PendingAcknowledgment] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def upsert(self, entry: PendingAcknowledgment) -> None:
        """按 reminder_id 插入或整体替换"""
        with self._lock:
            self._entries[entry.reminder_id] = entry

    def get(self, reminder_id: str) -> PendingAcknowledgment | None:
        with self._lock:
            return self._entries.get(reminder_id)

    def remove(self, reminder_id: str) -> bool:
        """移除条目，返回此前是否存在；重复点击的第二次会得到 False"""
        with self._lock:
            return self._entries.pop(reminder_id, None) is not None

    def mark_resent(
        self,
        reminder_id: str,
        sent_at: datetime,
        message_id: int | None = None,
    ) -> PendingAcknowledgment | None:
        """更新最后发送时间并累加重发次数；条目已被确认时返回 None"""
        with self._lock:
            entry = self._entries.get(reminder_id)
            if entry is None:
                return None
            updated = replace(
                entry,
                last_sent_at=sent_at,
                message_id=message_id if message_id is not None else entry.message_id,
                resend_count=entry.resend_count + 1,
            )
            self._entries[reminder_id] = updated
            return updated

    def due_for_resend(
        self,
        interval: timedelta,
        now: datetime | None = None,
    ) -> list[PendingAcknowledgment]:
        now = now or now_utc()
        with self._lock:
            return [e for e in self._entries.values() if now - e.last_sent_at >= interval]

    def all(self) -> list[PendingAcknowledgment]:
        with self._lock:
            return list(self._entries.values())
