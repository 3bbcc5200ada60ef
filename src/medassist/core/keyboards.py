"""内联按钮布局

只产出平台无关的 InlineButton 列表，由 channels/telegram_polling.py 转换为 InlineKeyboardMarkup。
"""

from __future__ import annotations

from typing import Iterable

from medassist.config import messages
from medassist.datamodel import InlineButton, InlineKeyboard, MedicationInfo, ReminderSpec
from medassist.reminders.clock import format_time_of_day


def _single_column(*buttons: InlineButton) -> InlineKeyboard:
    return [[b] for b in buttons]


def _back(action: str = "main_menu") -> InlineButton:
    return InlineButton(messages.BUTTON_BACK, action)


def main_menu() -> InlineKeyboard:
    return _single_column(
        InlineButton(messages.BUTTON_MEDICATIONS, "medications"),
        InlineButton(messages.BUTTON_INTAKE, "intake"),
        InlineButton(messages.BUTTON_HISTORY, "history"),
        InlineButton(messages.BUTTON_REMINDERS, "reminders"),
        InlineButton(messages.BUTTON_SETTINGS, "settings"),
    )


def auth_menu() -> InlineKeyboard:
    return _single_column(
        InlineButton(messages.BUTTON_LOGIN, "login"),
        InlineButton(messages.BUTTON_REGISTER, "register"),
        InlineButton(messages.BUTTON_QUICK_START, "quick_start"),
    )


def medications_menu() -> InlineKeyboard:
    return _single_column(
        InlineButton(messages.BUTTON_ADD_MEDICATION, "add_medication"),
        InlineButton(messages.BUTTON_LIST_MEDICATIONS, "list_medications"),
        InlineButton(messages.BUTTON_DELETE_MEDICATION, "delete_medication_menu"),
        _back(),
    )


def reminders_menu() -> InlineKeyboard:
    return _single_column(
        InlineButton(messages.BUTTON_ADD_REMINDER, "add_reminder"),
        InlineButton(messages.BUTTON_LIST_REMINDERS, "list_reminders"),
        InlineButton(messages.BUTTON_DELETE_REMINDER, "delete_reminder_menu"),
        _back(),
    )


def settings_menu() -> InlineKeyboard:
    return _single_column(
        InlineButton(messages.BUTTON_TIMEZONE, "settings_timezone"),
        InlineButton(messages.BUTTON_LOGOUT, "logout"),
        _back(),
    )


def timezone_menu(zones: Iterable[str]) -> InlineKeyboard:
    rows = [[InlineButton(tz, f"timezone:{tz}")] for tz in zones]
    rows.append([_back("settings")])
    return rows


def history_period_menu() -> InlineKeyboard:
    rows = [
        [InlineButton(name.capitalize(), f"history:{period}")]
        for period, name in messages.HISTORY_PERIOD_NAMES.items()
    ]
    rows.append([_back()])
    return rows


def back_to_main_menu() -> InlineKeyboard:
    return [[InlineButton(messages.BUTTON_MAIN_MENU, "main_menu")]]


def cancel_button() -> InlineKeyboard:
    return [[InlineButton(messages.BUTTON_CANCEL, "cancel")]]


def skip_or_cancel() -> InlineKeyboard:
    return [[InlineButton(messages.BUTTON_SKIP, "skip"), InlineButton(messages.BUTTON_CANCEL, "cancel")]]


def confirm_cancel(confirm_action: str, cancel_action: str = "cancel") -> InlineKeyboard:
    return [[InlineButton(messages.BUTTON_YES, confirm_action), InlineButton(messages.BUTTON_NO, cancel_action)]]


def medication_label(med: MedicationInfo) -> str:
    return f"{med.name} ({med.dosage})" if med.dosage else med.name


def medications_list(medications: Iterable[MedicationInfo], action_prefix: str) -> InlineKeyboard:
    """每个药品一行按钮，callback 为 "<action_prefix>:<medication_id>" """
    rows = [[InlineButton(medication_label(m), f"{action_prefix}:{m.medication_id}")] for m in medications]
    rows.append([_back()])
    return rows


def medication_actions(medication_id: str) -> InlineKeyboard:
    return _single_column(
        InlineButton(messages.BUTTON_RECORD_INTAKE, f"quick_intake:{medication_id}"),
        InlineButton(messages.BUTTON_RECORD_WITH_NOTES, f"intake_notes:{medication_id}"),
        InlineButton(messages.BUTTON_ADD_REMINDER, f"med_add_reminder:{medication_id}"),
        InlineButton(messages.BUTTON_MEDICATION_HISTORY, f"medication_history:{medication_id}"),
        InlineButton(messages.BUTTON_DELETE, f"confirm_delete_med:{medication_id}"),
        _back("list_medications"),
    )


def reminders_list(reminders: Iterable[ReminderSpec], action_prefix: str) -> InlineKeyboard:
    rows = [
        [InlineButton(f"{format_time_of_day(r.time_of_day)} {r.medication_name}", f"{action_prefix}:{r.reminder_id}")]
        for r in reminders
    ]
    rows.append([_back("reminders")])
    return rows


def after_intake() -> InlineKeyboard:
    return _single_column(
        InlineButton(messages.BUTTON_RECORD_MORE, "intake"),
        InlineButton(messages.BUTTON_MAIN_MENU, "main_menu"),
    )


def after_add_medication() -> InlineKeyboard:
    return _single_column(
        InlineButton(messages.BUTTON_ADD_MORE, "add_medication"),
        InlineButton(messages.BUTTON_ADD_REMINDER, "add_reminder"),
        InlineButton(messages.BUTTON_MAIN_MENU, "main_menu"),
    )


def reminder_actions(reminder_id: str) -> InlineKeyboard:
    """提醒消息下方的 已服用 / 跳过 按钮"""
    return [[
        InlineButton(messages.BUTTON_TAKE, f"take_reminder:{reminder_id}"),
        InlineButton(messages.BUTTON_SKIP_REMINDER, f"skip_reminder:{reminder_id}"),
    ]]
