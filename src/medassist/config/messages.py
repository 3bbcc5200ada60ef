"""面向用户的文本

使用 str.format 占位符，由 core/dispatch.py 与 reminders/scheduler.py 渲染。
"""

WELCOME = """Hi! I'm your medication assistant.
I will remind you to take your medications and keep a log of every intake.

Log in, register, or tap "Quick start" to create an account from your Telegram profile."""

WELCOME_BACK = "Welcome back, {name}! What would you like to do?"

HELP = """Available commands:
/menu - main menu
/medications - your medications
/add - add a medication
/intake - record an intake
/history - intake history
/reminders - reminders
/settings - settings
/logout - log out
/cancel - cancel the current operation
/skip - skip an optional field"""

MAIN_MENU = "Main menu:"
AUTH_REQUIRED = "Please log in or register first."
UNKNOWN_COMMAND = "Unknown command. Type /help to see what I can do."
NOTHING_TO_SKIP = "There is nothing to skip right now."
OPERATION_CANCELLED = "Operation cancelled."
FLOW_RESTARTED = "Something went wrong with the previous step, let's start over."
GENERIC_ERROR = "An error occurred. Please try again later."
INVALID_REQUEST = "Invalid request."
NOT_SPECIFIED = "not specified"

# 登录 / 注册
ENTER_EMAIL = "Enter your email:"
ENTER_PASSWORD = "Enter your password:"
ENTER_REGISTER_NAME = "Registration. Enter your name:"
ENTER_REGISTER_EMAIL = "Enter your email:"
ENTER_REGISTER_PASSWORD = "Come up with a password (at least 6 characters):"
INVALID_NAME = "The name must be between 1 and 200 characters."
INVALID_EMAIL = "Please enter a valid email address (up to 200 characters)."
EMPTY_PASSWORD = "The password must not be empty."
PASSWORD_TOO_SHORT = "The password must be at least 6 characters long."
LOGIN_SUCCESS = "You are logged in as {name}."
LOGIN_FAILED = "Invalid email or password."
REGISTER_SUCCESS = "Account created. Welcome, {name}!"
EMAIL_TAKEN = "A user with this email already exists."
TELEGRAM_ALREADY_LINKED = "This Telegram account is already linked to another user."
QUICK_START_SUCCESS = "Your account is ready, {name}! Timezone: {timezone}."
LOGGED_OUT = "You have logged out."

# 药品
MEDICATIONS_MENU = "Medications:"
NO_MEDICATIONS = "You have no medications yet. Add one first."
MEDICATIONS_LIST_HEADER = "Your medications:"
MEDICATION_LINE = "- {name} ({dosage})"
MEDICATION_DETAILS = """{name}
Dosage: {dosage}
Description: {description}"""
SELECT_MEDICATION = "Select a medication:"
SELECT_MEDICATION_TO_DELETE = "Select a medication to delete:"
CONFIRM_DELETE_MEDICATION = "Delete {name}? Its reminders and intake history will be deleted too."
MEDICATION_DELETED = "Medication {name} deleted."
MEDICATION_NOT_FOUND = "Medication not found."
MEDICATION_EXISTS = "You already have a medication called {name}."
ENTER_MEDICATION_NAME = "Enter the name of the medication:"
ENTER_MEDICATION_DOSAGE = "Enter the dosage (for example 1 tablet, 10 mg), or /skip:"
ENTER_MEDICATION_DESCRIPTION = "Enter a description, or /skip:"
INVALID_DOSAGE = "The dosage must be at most 100 characters."
INVALID_DESCRIPTION = "The description must be at most 1000 characters."
MEDICATION_ADDED = "Medication {name} added."

# 服药记录
INTAKE_MENU = "Which medication did you take?"
ENTER_INTAKE_NOTES = "Add a note to the intake of {name}, or /skip:"
INVALID_NOTES = "The note must be at most 500 characters."
INTAKE_RECORDED = "Intake of {name} recorded at {time}."
HISTORY_PERIOD_MENU = "Choose a period:"
HISTORY_HEADER = "Intake history ({period}):"
HISTORY_EMPTY = "No intakes for {period}."
HISTORY_LINE = "{time} - {name}"
HISTORY_LINE_WITH_NOTES = "{time} - {name} ({notes})"
HISTORY_PERIOD_NAMES = {
    "today": "today",
    "yesterday": "yesterday",
    "week": "the last 7 days",
    "month": "the last 30 days",
    "all": "all time",
}

# 提醒
REMINDERS_MENU = "Reminders:"
NO_REMINDERS = "You have no reminders."
REMINDERS_LIST_HEADER = "Your reminders:"
REMINDER_LINE = "{time} - {name}"
SELECT_REMINDER_MEDICATION = "Select a medication for the reminder:"
SELECT_REMINDER_TO_DELETE = "Select a reminder to delete:"
ENTER_REMINDER_TIME = "Enter the reminder time for {name} in HH:MM format (your timezone: {timezone}):"
INVALID_TIME = "Invalid time format. Use HH:MM, for example 08:30."
REMINDER_CREATED = "Reminder set: {name} every day at {time}."
REMINDER_DELETED = "Reminder deleted."
REMINDER_NOT_FOUND = "Reminder not found."
REMINDER_NOTIFICATION = """Time to take your medication!

{name}
Dosage: {dosage}"""
REMINDER_NOTIFICATION_RESEND = """Reminder #{attempt}: you haven't confirmed your medication yet!

{name}
Dosage: {dosage}"""
REMINDER_TAKEN = "Intake of {name} recorded at {time}."
REMINDER_SKIPPED = "Intake of {name} skipped."
REMINDER_ALREADY_HANDLED = "This reminder has already been handled."

# 设置
SETTINGS = """Settings
Name: {name}
Email: {email}
Timezone: {timezone}"""
SELECT_TIMEZONE = "Select your timezone:"
TIMEZONE_SET = "Timezone set to {timezone}."
INVALID_TIMEZONE = "Unknown timezone."

# 按钮
BUTTON_MEDICATIONS = "My medications"
BUTTON_INTAKE = "Record intake"
BUTTON_HISTORY = "Intake history"
BUTTON_REMINDERS = "Reminders"
BUTTON_SETTINGS = "Settings"
BUTTON_LOGIN = "Log in"
BUTTON_REGISTER = "Register"
BUTTON_QUICK_START = "Quick start"
BUTTON_ADD_MEDICATION = "Add medication"
BUTTON_LIST_MEDICATIONS = "List medications"
BUTTON_DELETE_MEDICATION = "Delete medication"
BUTTON_ADD_REMINDER = "Add reminder"
BUTTON_LIST_REMINDERS = "My reminders"
BUTTON_DELETE_REMINDER = "Delete reminder"
BUTTON_RECORD_INTAKE = "Record intake"
BUTTON_RECORD_WITH_NOTES = "Record with a note"
BUTTON_MEDICATION_HISTORY = "History"
BUTTON_DELETE = "Delete"
BUTTON_YES = "Yes"
BUTTON_NO = "No"
BUTTON_BACK = "Back"
BUTTON_MAIN_MENU = "Main menu"
BUTTON_CANCEL = "Cancel"
BUTTON_SKIP = "Skip"
BUTTON_TIMEZONE = "Change timezone"
BUTTON_LOGOUT = "Log out"
BUTTON_RECORD_MORE = "Record another"
BUTTON_ADD_MORE = "Add another"
BUTTON_TAKE = "Taken"
BUTTON_SKIP_REMINDER = "Skip"

# 设置菜单中可选的常用时区
COMMON_TIMEZONES = [
    "Europe/Kaliningrad",
    "Europe/Moscow",
    "Europe/Samara",
    "Asia/Yekaterinburg",
    "Asia/Omsk",
    "Asia/Novosibirsk",
    "Asia/Krasnoyarsk",
    "Asia/Irkutsk",
    "Asia/Yakutsk",
    "Asia/Vladivostok",
    "Asia/Magadan",
    "Asia/Kamchatka",
    "Europe/London",
    "UTC",
]

__all__ = [name for name in dir() if name.isupper()]
