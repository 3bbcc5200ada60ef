from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


@dataclass
class RuntimeControl:
    shutdown_event: asyncio.Event
    restart_event: asyncio.Event
    started_at: float
    scheduler: Any  # ReminderScheduler
    sessions: Any  # SessionStore


class ShutdownRequest(BaseModel):
    reason: str = Field(default="manual")


class SchedulerRunRequest(BaseModel):
    """手动触发 tick / 重发扫描；now_utc 为空时使用当前时间"""
    now_utc: datetime | None = None


class PendingItem(BaseModel):
    reminder_id: str
    user_id: int
    channel_user_id: int
    medication_name: str
    dosage: str | None = None
    first_sent_at: datetime
    last_sent_at: datetime
    message_id: int | None = None
    resend_count: int = 0
