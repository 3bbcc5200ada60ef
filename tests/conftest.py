"""测试用的内存替身

调度器与分发器依赖的协作者都是鸭子类型，这里用内存实现替代数据库与 Telegram。
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timezone
from typing import Any

import pytest

from medassist.config import messages
from medassist.core.dispatch import Dispatcher
from medassist.core.session_store import SessionStore
from medassist.datamodel import (
    IncomingUpdate, IntakeRecord, MedicationInfo, ReminderSpec, UpdateKind, UserInfo,
)
from medassist.errors import AuthenticationError, ConflictError, NotFoundError, OwnershipError, ValidationError
from medassist.reminders.clock import is_valid_timezone
from medassist.reminders.pending import PendingAcknowledgmentTracker


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@dataclass
class SentMessage:
    chat_id: int
    text: str
    actions: Any
    message_id: int


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[SentMessage] = []
        self.edited: list[SentMessage] = []
        self.fail_send_for: set[int] = set()
        self.hang_send_for: set[int] = set()
        self.fail_edit = False
        self.log: list[SentMessage] = []  # sent 与 edited 按发生顺序
        self._ids = itertools.count(100)

    async def send_text(self, chat_id: int, text: str, actions=None) -> int:
        if chat_id in self.hang_send_for:
            await asyncio.sleep(3600)
        if chat_id in self.fail_send_for:
            raise ConnectionError("telegram unreachable")
        message = SentMessage(chat_id, text, actions, next(self._ids))
        self.sent.append(message)
        self.log.append(message)
        return message.message_id

    async def edit_text(self, chat_id: int, message_id: int, text: str, actions=None) -> None:
        if self.fail_edit:
            raise RuntimeError("message to edit not found")
        message = SentMessage(chat_id, text, actions, message_id)
        self.edited.append(message)
        self.log.append(message)

    @property
    def last(self) -> SentMessage:
        return self.log[-1]

    def texts(self) -> list[str]:
        return [m.text for m in self.log]


class FakeReminderRepository:
    def __init__(self, reminders: list[ReminderSpec] | None = None) -> None:
        self.reminders: dict[str, ReminderSpec] = {r.reminder_id: r for r in reminders or []}
        self.fail_list_active = False
        self.calls: list[tuple] = []

    async def list_active(self) -> list[ReminderSpec]:
        if self.fail_list_active:
            raise RuntimeError("database is locked")
        return [replace(r) for r in self.reminders.values() if r.is_active]

    async def mark_sent(self, reminder_id: str, sent_at: datetime) -> None:
        self.calls.append(("mark_sent", reminder_id, sent_at))
        self.reminders[reminder_id].last_sent_at = sent_at

    async def set_pending(self, reminder_id, first_sent_at, last_sent_at, message_id) -> None:
        self.calls.append(("set_pending", reminder_id, message_id))
        r = self.reminders[reminder_id]
        r.pending_first_sent_at = first_sent_at
        r.pending_last_sent_at = last_sent_at
        r.pending_message_id = message_id
        r.pending_resend_count = 0

    async def update_pending_sent(self, reminder_id, last_sent_at, message_id, resend_count) -> None:
        self.calls.append(("update_pending_sent", reminder_id, message_id, resend_count))
        r = self.reminders[reminder_id]
        r.pending_last_sent_at = last_sent_at
        r.pending_message_id = message_id
        r.pending_resend_count = resend_count

    async def clear_pending(self, reminder_id: str) -> None:
        self.calls.append(("clear_pending", reminder_id))
        r = self.reminders.get(reminder_id)
        if r is not None:
            r.pending_first_sent_at = r.pending_last_sent_at = r.pending_message_id = None
            r.pending_resend_count = 0

    async def list_pending(self) -> list[ReminderSpec]:
        return [replace(r) for r in self.reminders.values() if r.pending_last_sent_at is not None]


class FakeUsers:
    def __init__(self, users: list[UserInfo] | None = None) -> None:
        self.users: dict[int, UserInfo] = {u.user_id: u for u in users or []}

    async def get_by_id(self, user_id: int) -> UserInfo | None:
        return self.users.get(user_id)

    async def get_by_channel_id(self, channel_user_id: int) -> UserInfo | None:
        for user in self.users.values():
            if user.telegram_user_id == channel_user_id:
                return user
        return None

    async def set_timezone(self, user_id: int, tz_name: str) -> UserInfo:
        if not is_valid_timezone(tz_name):
            raise ValidationError(messages.INVALID_TIMEZONE)
        user = self.users[user_id]
        user.timezone = tz_name
        return user


class FakeAccounts:
    def __init__(self, users: FakeUsers) -> None:
        self.users = users
        self.passwords: dict[str, str] = {}
        self.calls: list[tuple] = []

    async def register(self, name: str, email: str, password: str, channel_user_id: int) -> UserInfo:
        self.calls.append(("register", name, email, channel_user_id))
        if email in self.passwords:
            raise ConflictError(messages.EMAIL_TAKEN)
        user = UserInfo(
            user_id=len(self.users.users) + 1, user_name=name, timezone="Europe/Moscow",
            email=email, telegram_user_id=channel_user_id,
        )
        self.users.users[user.user_id] = user
        self.passwords[email] = password
        return user

    async def login(self, email: str, password: str, channel_user_id: int) -> UserInfo:
        self.calls.append(("login", email, channel_user_id))
        if self.passwords.get(email) != password:
            raise AuthenticationError(messages.LOGIN_FAILED)
        user = next(u for u in self.users.users.values() if u.email == email)
        user.telegram_user_id = channel_user_id
        return user

    async def quick_start(self, channel_user_id: int, user_name: str | None) -> UserInfo:
        self.calls.append(("quick_start", channel_user_id))
        existing = await self.users.get_by_channel_id(channel_user_id)
        if existing is not None:
            return existing
        user = UserInfo(
            user_id=len(self.users.users) + 1, user_name=user_name or f"User {channel_user_id}",
            timezone="Europe/Moscow", telegram_user_id=channel_user_id,
        )
        self.users.users[user.user_id] = user
        return user


class FakeMedications:
    def __init__(self, medications: list[MedicationInfo] | None = None) -> None:
        self.medications: dict[str, MedicationInfo] = {m.medication_id: m for m in medications or []}
        self.created: list[MedicationInfo] = []
        self._ids = itertools.count(1)

    async def get(self, user_id: int, medication_id: str) -> MedicationInfo:
        medication = self.medications.get(medication_id)
        if medication is None:
            raise NotFoundError(messages.MEDICATION_NOT_FOUND)
        if medication.user_id != user_id:
            raise OwnershipError(messages.MEDICATION_NOT_FOUND)
        return medication

    async def list_by_user(self, user_id: int) -> list[MedicationInfo]:
        return [m for m in self.medications.values() if m.user_id == user_id]

    async def create(self, user_id: int, name: str, dosage=None, description=None) -> MedicationInfo:
        medication = MedicationInfo(
            medication_id=f"med-new-{next(self._ids)}", user_id=user_id, name=name,
            dosage=dosage, description=description,
        )
        self.medications[medication.medication_id] = medication
        self.created.append(medication)
        return medication

    async def delete(self, user_id: int, medication_id: str) -> MedicationInfo:
        medication = await self.get(user_id, medication_id)
        del self.medications[medication_id]
        return medication


class FakeReminderService:
    def __init__(self, medications: FakeMedications, repository: FakeReminderRepository) -> None:
        self.medications = medications
        self.repository = repository
        self.created: list[tuple[int, str, int, time]] = []
        self.fail_clear_pending = False

    async def create(self, user_id: int, medication_id: str, channel_user_id: int, time_of_day: time) -> ReminderSpec:
        medication = await self.medications.get(user_id, medication_id)
        self.created.append((user_id, medication_id, channel_user_id, time_of_day))
        reminder = ReminderSpec(
            reminder_id=f"rem-new-{len(self.created)}", user_id=user_id, channel_user_id=channel_user_id,
            medication_id=medication_id, medication_name=medication.name, time_of_day=time_of_day,
            dosage=medication.dosage,
        )
        self.repository.reminders[reminder.reminder_id] = reminder
        return reminder

    async def get(self, user_id: int, reminder_id: str) -> ReminderSpec:
        reminder = self.repository.reminders.get(reminder_id)
        if reminder is None:
            raise NotFoundError(messages.REMINDER_NOT_FOUND)
        if reminder.user_id != user_id:
            raise OwnershipError(messages.REMINDER_NOT_FOUND)
        return reminder

    async def list_by_user(self, user_id: int) -> list[ReminderSpec]:
        return [r for r in self.repository.reminders.values() if r.user_id == user_id]

    async def delete(self, user_id: int, reminder_id: str) -> ReminderSpec:
        reminder = await self.get(user_id, reminder_id)
        del self.repository.reminders[reminder_id]
        return reminder

    async def clear_pending(self, reminder_id: str) -> None:
        if self.fail_clear_pending:
            raise RuntimeError("database is locked")
        await self.repository.clear_pending(reminder_id)


class FakeIntakes:
    def __init__(self, medications: FakeMedications) -> None:
        self.medications = medications
        self.records: list[IntakeRecord] = []
        self.fail = False

    async def record(self, user_id: int, medication_id: str, notes=None, intake_at=None) -> IntakeRecord:
        if self.fail:
            raise RuntimeError("database is locked")
        medication = await self.medications.get(user_id, medication_id)
        record = IntakeRecord(
            intake_id=f"intake-{len(self.records) + 1}", user_id=user_id, medication_id=medication_id,
            medication_name=medication.name, intake_at=intake_at or utc(2025, 1, 15, 5, 3), notes=notes,
        )
        self.records.append(record)
        return record

    async def history(self, user_id: int, period: str, tz_name: str, now=None, medication_id=None):
        return [
            r for r in self.records
            if r.user_id == user_id and (medication_id is None or r.medication_id == medication_id)
        ]


ALICE_CHAT = 1001
BOB_CHAT = 2002


@dataclass
class World:
    notifier: FakeNotifier
    users: FakeUsers
    accounts: FakeAccounts
    medications: FakeMedications
    repository: FakeReminderRepository
    reminders: FakeReminderService
    intakes: FakeIntakes
    sessions: SessionStore
    tracker: PendingAcknowledgmentTracker
    dispatcher: Dispatcher
    extra: dict[str, Any] = field(default_factory=dict)

    async def text(self, payload: str, chat_id: int = ALICE_CHAT) -> None:
        await self.dispatcher.handle_update(IncomingUpdate(
            kind=UpdateKind.TEXT, channel_user_id=chat_id, chat_id=chat_id, payload=payload,
        ))

    async def press(self, payload: str, chat_id: int = ALICE_CHAT, message_id: int | None = 555) -> None:
        await self.dispatcher.handle_update(IncomingUpdate(
            kind=UpdateKind.CALLBACK, channel_user_id=chat_id, chat_id=chat_id, payload=payload,
            message_id=message_id,
        ))

    def session(self, chat_id: int = ALICE_CHAT):
        return self.sessions.get_or_create(chat_id)

    def outputs(self) -> list[str]:
        return self.notifier.texts()


@pytest.fixture
def world() -> World:
    """Alice (user 1, Moscow) 已在库中绑定 Telegram，有一种药 Aspirin；Bob 未注册"""
    notifier = FakeNotifier()
    users = FakeUsers([
        UserInfo(user_id=1, user_name="Alice", timezone="Europe/Moscow", email="alice@example.com",
                 telegram_user_id=ALICE_CHAT),
    ])
    accounts = FakeAccounts(users)
    accounts.passwords["alice@example.com"] = "secret1"
    medications = FakeMedications([
        MedicationInfo(medication_id="med-aspirin", user_id=1, name="Aspirin", dosage="100 mg"),
    ])
    repository = FakeReminderRepository()
    reminders = FakeReminderService(medications, repository)
    intakes = FakeIntakes(medications)
    sessions = SessionStore()
    tracker = PendingAcknowledgmentTracker()
    dispatcher = Dispatcher(
        sessions, tracker, notifier,
        accounts=accounts, users=users, medications=medications, reminders=reminders, intakes=intakes,
    )
    return World(notifier, users, accounts, medications, repository, reminders, intakes, sessions, tracker, dispatcher)
