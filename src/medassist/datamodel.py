from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
from datetime import datetime, time

__all__ = [
    "ReminderSpec", "PendingAcknowledgment",
    "ConversationState",
    "UpdateKind", "IncomingUpdate", "InlineButton", "InlineKeyboard",
    "UserInfo", "MedicationInfo", "IntakeRecord",
]

# 约定: 所有 datetime 均为带 tzinfo 的 UTC 时间；time_of_day 为用户本地时区下的墙上时间


# ----------------- Reminder 数据模型 ----------------
@dataclass
class ReminderSpec:
    reminder_id: str
    user_id: int
    channel_user_id: int  # 接收提醒的 Telegram chat
    medication_id: str
    medication_name: str
    time_of_day: time  # 只有时分，按用户配置的时区解释
    dosage: Optional[str] = None
    is_active: bool = True
    last_sent_at: Optional[datetime] = None  # 按用户时区换算出的日期即去重键
    pending_first_sent_at: Optional[datetime] = None
    pending_last_sent_at: Optional[datetime] = None
    pending_message_id: Optional[int] = None
    pending_resend_count: int = 0


@dataclass
class PendingAcknowledgment:
    """已发送但尚未被用户确认的提醒，药品信息为发送时的快照"""
    reminder_id: str
    channel_user_id: int
    user_id: int
    medication_id: str
    medication_name: str
    dosage: Optional[str]
    first_sent_at: datetime
    last_sent_at: datetime
    message_id: Optional[int] = None
    resend_count: int = 0


# ----------------- 对话状态 ----------------
class ConversationState(str, Enum):
    IDLE = "idle"

    # 登录
    AWAITING_EMAIL = "awaiting_email"
    AWAITING_PASSWORD = "awaiting_password"

    # 注册
    AWAITING_REGISTER_NAME = "awaiting_register_name"
    AWAITING_REGISTER_EMAIL = "awaiting_register_email"
    AWAITING_REGISTER_PASSWORD = "awaiting_register_password"

    # 药品
    AWAITING_MEDICATION_NAME = "awaiting_medication_name"
    AWAITING_MEDICATION_DOSAGE = "awaiting_medication_dosage"
    AWAITING_MEDICATION_DESCRIPTION = "awaiting_medication_description"

    # 服药记录
    AWAITING_INTAKE_NOTES = "awaiting_intake_notes"

    # 提醒
    AWAITING_REMINDER_TIME = "awaiting_reminder_time"


# ----------------- Channel 数据模型 ----------------
class UpdateKind(str, Enum):
    TEXT = "text"
    CALLBACK = "callback"


@dataclass
class IncomingUpdate:
    kind: UpdateKind
    channel_user_id: int  # 平台侧 (Telegram) 用户 ID
    chat_id: int
    payload: str  # 文本内容或按钮的 callback data
    message_id: Optional[int] = None  # 按钮所在消息，用于原地编辑
    user_name: Optional[str] = None


@dataclass(frozen=True)
class InlineButton:
    label: str
    action: str  # callback data, 格式 "action" 或 "action:param"


# 一组按钮行
InlineKeyboard = List[List[InlineButton]]


# ----------------- User / Medication 数据模型 ----------------
@dataclass
class UserInfo:
    user_id: int
    user_name: Optional[str] = None
    timezone: Optional[str] = None  # IANA时区字符串，例如 "Europe/Moscow"
    email: Optional[str] = None
    telegram_user_id: Optional[int] = None


@dataclass
class MedicationInfo:
    medication_id: str
    user_id: int
    name: str
    dosage: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class IntakeRecord:
    intake_id: str
    user_id: int
    medication_id: str
    medication_name: str
    intake_at: datetime
    notes: Optional[str] = None
