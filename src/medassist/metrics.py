"""
简单的运行时指标，统计入站 update、提醒发送/重发/失败与用户确认次数，供 Admin API 展示。
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from medassist.events import E, bus


@dataclass
class RuntimeMetrics:
    update_in_count: int = 0
    callback_in_count: int = 0
    tick_count: int = 0
    tick_skipped_count: int = 0
    reminder_sent_count: int = 0
    reminder_resent_count: int = 0
    reminder_failed_count: int = 0
    reminder_acknowledged_count: int = 0
    reminder_skipped_count: int = 0
    last_tick_at: float | None = None

    def record_update_in(self, is_callback: bool = False) -> None:
        self.update_in_count += 1
        if is_callback:
            self.callback_in_count += 1

    def record_tick(self, skipped: bool = False) -> None:
        self.tick_count += 1
        self.last_tick_at = time.time()
        if skipped:
            self.tick_skipped_count += 1

    def record_reminder_sent(self) -> None:
        self.reminder_sent_count += 1

    def record_reminder_resent(self) -> None:
        self.reminder_resent_count += 1

    def record_reminder_failed(self) -> None:
        self.reminder_failed_count += 1

    def record_reminder_acknowledged(self) -> None:
        self.reminder_acknowledged_count += 1

    def record_reminder_skipped(self) -> None:
        self.reminder_skipped_count += 1

    def snapshot(self) -> dict:
        return {
            "update_in_count": self.update_in_count,
            "callback_in_count": self.callback_in_count,
            "tick_count": self.tick_count,
            "tick_skipped_count": self.tick_skipped_count,
            "reminder_sent_count": self.reminder_sent_count,
            "reminder_resent_count": self.reminder_resent_count,
            "reminder_failed_count": self.reminder_failed_count,
            "reminder_acknowledged_count": self.reminder_acknowledged_count,
            "reminder_skipped_count": self.reminder_skipped_count,
            "last_tick_at_epoch": self.last_tick_at,
            "last_tick_at_utc": (
                time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.last_tick_at))
                if self.last_tick_at is not None
                else None
            ),
        }


runtime_metrics = RuntimeMetrics()


@bus.on(E.REMINDER_SENT)
async def _on_reminder_sent(**_: object) -> None:
    runtime_metrics.record_reminder_sent()


@bus.on(E.REMINDER_RESENT)
async def _on_reminder_resent(**_: object) -> None:
    runtime_metrics.record_reminder_resent()


@bus.on(E.REMINDER_SEND_FAILED)
async def _on_reminder_failed(**_: object) -> None:
    runtime_metrics.record_reminder_failed()


@bus.on(E.REMINDER_ACKNOWLEDGED)
async def _on_reminder_acknowledged(**_: object) -> None:
    runtime_metrics.record_reminder_acknowledged()


@bus.on(E.REMINDER_SKIPPED)
async def _on_reminder_skipped(**_: object) -> None:
    runtime_metrics.record_reminder_skipped()


__all__ = ["RuntimeMetrics", "runtime_metrics"]
