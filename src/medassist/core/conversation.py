"""对话状态机

根据会话的当前状态解释一条文本消息，产出一个 Transition，不做任何 I/O。
Transition 由 core/dispatch.py 负责落地 (修改会话、调用服务、回复用户)。

- 同一句话在不同状态下含义不同: 只按当前状态解析，不重新匹配命令语法
- /cancel 与 /skip 在任何状态下都有效；其余 /命令 视为离开当前流程
- 多步表单的中间数据存在 session.scratch 中，缺失时 (例如会话被并发重置) 重新开始该流程
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from medassist.config import messages
from medassist.core.session_store import Session
from medassist.datamodel import ConversationState
from medassist.reminders.clock import parse_time_of_day

__all__ = [
    "Action", "Flow", "Transition", "NO_VALUE",
    "CANCEL_TOKEN", "SKIP_TOKEN", "COMMANDS",
    "interpret", "start_flow", "prompt_for",
    "K_EMAIL", "K_NAME", "K_MEDICATION_ID", "K_MEDICATION_NAME", "K_DOSAGE", "K_TIMEZONE",
]

CANCEL_TOKEN = "/cancel"
SKIP_TOKEN = "/skip"

# 字段长度限制
MAX_NAME_LENGTH = 200
MAX_EMAIL_LENGTH = 200
MIN_PASSWORD_LENGTH = 6
MAX_DOSAGE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 1000
MAX_NOTES_LENGTH = 500

# scratch 键
K_EMAIL = "email"
K_NAME = "name"
K_MEDICATION_ID = "medication_id"
K_MEDICATION_NAME = "medication_name"
K_DOSAGE = "dosage"
K_TIMEZONE = "timezone"


class _NoValue:
    """/skip 跳过可选字段时使用的占位值"""

    def __repr__(self) -> str:
        return "NO_VALUE"

    def __bool__(self) -> bool:
        return False


NO_VALUE = _NoValue()


class Action(str, Enum):
    PROMPT = "prompt"  # 进入 (或推进) 流程，发出下一个提示
    REPROMPT = "reprompt"  # 输入未通过校验，状态不变
    CANCEL = "cancel"
    COMPLETE = "complete"  # 表单填写完毕，需要调用一次外部服务
    RESTART = "restart"  # scratch 数据缺失，重新开始该流程
    MENU = "menu"  # Idle 下无法识别的文本
    COMMAND = "command"
    UNKNOWN_COMMAND = "unknown_command"
    SKIP_IGNORED = "skip_ignored"  # 当前状态没有可跳过的字段


class Flow(str, Enum):
    LOGIN = "login"
    REGISTER = "register"
    ADD_MEDICATION = "add_medication"
    RECORD_INTAKE = "record_intake"
    ADD_REMINDER = "add_reminder"


@dataclass
class Transition:
    action: Action
    state: ConversationState  # 处理后的目标状态
    prompt: str | None = None
    error: str | None = None
    values: dict[str, Any] = field(default_factory=dict)  # PROMPT: 写入 scratch 的字段; COMPLETE: 完整表单
    flow: Flow | None = None
    command: str | None = None
    argument: str | None = None


# 斜杠命令 (不含 /cancel 与 /skip)
COMMANDS = frozenset({
    "start", "help", "menu", "medications", "add", "intake",
    "history", "reminders", "settings", "logout",
})

# Idle 状态下的自然语言短语 -> 命令
_IDLE_PHRASES = {
    "add reminder": "add_reminder",
    "new reminder": "add_reminder",
    "add medication": "add",
    "new medication": "add",
    "record intake": "intake",
    "intake": "intake",
    "history": "history",
    "reminders": "reminders",
    "my reminders": "reminders",
    "medications": "medications",
    "my medications": "medications",
    "login": "login",
    "log in": "login",
    "register": "register",
    "sign up": "register",
    "settings": "settings",
    "logout": "logout",
    "log out": "logout",
    "menu": "menu",
    "help": "help",
}

_FLOW_FIRST_STATE = {
    Flow.LOGIN: ConversationState.AWAITING_EMAIL,
    Flow.REGISTER: ConversationState.AWAITING_REGISTER_NAME,
    Flow.ADD_MEDICATION: ConversationState.AWAITING_MEDICATION_NAME,
    Flow.RECORD_INTAKE: ConversationState.AWAITING_INTAKE_NOTES,
    Flow.ADD_REMINDER: ConversationState.AWAITING_REMINDER_TIME,
}

_STATE_FLOW = {
    ConversationState.AWAITING_EMAIL: Flow.LOGIN,
    ConversationState.AWAITING_PASSWORD: Flow.LOGIN,
    ConversationState.AWAITING_REGISTER_NAME: Flow.REGISTER,
    ConversationState.AWAITING_REGISTER_EMAIL: Flow.REGISTER,
    ConversationState.AWAITING_REGISTER_PASSWORD: Flow.REGISTER,
    ConversationState.AWAITING_MEDICATION_NAME: Flow.ADD_MEDICATION,
    ConversationState.AWAITING_MEDICATION_DOSAGE: Flow.ADD_MEDICATION,
    ConversationState.AWAITING_MEDICATION_DESCRIPTION: Flow.ADD_MEDICATION,
    ConversationState.AWAITING_INTAKE_NOTES: Flow.RECORD_INTAKE,
    ConversationState.AWAITING_REMINDER_TIME: Flow.ADD_REMINDER,
}

# 可以用 /skip 跳过的状态
_OPTIONAL_STATES = frozenset({
    ConversationState.AWAITING_MEDICATION_DOSAGE,
    ConversationState.AWAITING_MEDICATION_DESCRIPTION,
    ConversationState.AWAITING_INTAKE_NOTES,
})


def prompt_for(state: ConversationState, scratch: dict[str, Any]) -> str | None:
    if state == ConversationState.IDLE:
        return None
    if state == ConversationState.AWAITING_INTAKE_NOTES:
        return messages.ENTER_INTAKE_NOTES.format(name=scratch.get(K_MEDICATION_NAME, ""))
    if state == ConversationState.AWAITING_REMINDER_TIME:
        return messages.ENTER_REMINDER_TIME.format(
            name=scratch.get(K_MEDICATION_NAME, ""),
            timezone=scratch.get(K_TIMEZONE, ""),
        )
    return _STATIC_PROMPTS[state]


_STATIC_PROMPTS = {
    ConversationState.AWAITING_EMAIL: messages.ENTER_EMAIL,
    ConversationState.AWAITING_PASSWORD: messages.ENTER_PASSWORD,
    ConversationState.AWAITING_REGISTER_NAME: messages.ENTER_REGISTER_NAME,
    ConversationState.AWAITING_REGISTER_EMAIL: messages.ENTER_REGISTER_EMAIL,
    ConversationState.AWAITING_REGISTER_PASSWORD: messages.ENTER_REGISTER_PASSWORD,
    ConversationState.AWAITING_MEDICATION_NAME: messages.ENTER_MEDICATION_NAME,
    ConversationState.AWAITING_MEDICATION_DOSAGE: messages.ENTER_MEDICATION_DOSAGE,
    ConversationState.AWAITING_MEDICATION_DESCRIPTION: messages.ENTER_MEDICATION_DESCRIPTION,
}


def start_flow(flow: Flow, **scratch: Any) -> Transition:
    """开始一个流程；RECORD_INTAKE 与 ADD_REMINDER 需要先选定药品 (medication_id, medication_name)"""
    state = _FLOW_FIRST_STATE[flow]
    return Transition(
        action=Action.PROMPT,
        state=state,
        prompt=prompt_for(state, scratch),
        values=dict(scratch),
        flow=flow,
    )


# ----------------- 字段校验 ----------------
# 校验函数返回 (值, 错误信息)，错误信息非空表示不通过

def _validate_name(text: str) -> tuple[str, str | None]:
    if not text or len(text) > MAX_NAME_LENGTH:
        return text, messages.INVALID_NAME
    return text, None


def _validate_email(text: str) -> tuple[str, str | None]:
    if "@" not in text or len(text) > MAX_EMAIL_LENGTH or text.startswith("@") or text.endswith("@"):
        return text, messages.INVALID_EMAIL
    return text.lower(), None


def _validate_optional(limit: int, error: str) -> Callable[[Any], tuple[Any, str | None]]:
    def validate(value: Any) -> tuple[Any, str | None]:
        if value is NO_VALUE:
            return None, None
        if len(value) > limit:
            return value, error
        return value or None, None

    return validate


_validate_dosage = _validate_optional(MAX_DOSAGE_LENGTH, messages.INVALID_DOSAGE)
_validate_description = _validate_optional(MAX_DESCRIPTION_LENGTH, messages.INVALID_DESCRIPTION)
_validate_notes = _validate_optional(MAX_NOTES_LENGTH, messages.INVALID_NOTES)


# ----------------- 各状态处理函数 ----------------

def _reprompt(session: Session, error: str) -> Transition:
    return Transition(
        action=Action.REPROMPT,
        state=session.state,
        prompt=prompt_for(session.state, session.scratch),
        error=error,
        flow=_STATE_FLOW.get(session.state),
    )


def _advance(session: Session, state: ConversationState, **values: Any) -> Transition:
    scratch = {**session.scratch, **values}
    return Transition(
        action=Action.PROMPT,
        state=state,
        prompt=prompt_for(state, scratch),
        values=values,
        flow=_STATE_FLOW[state],
    )


def _complete(flow: Flow, **values: Any) -> Transition:
    return Transition(action=Action.COMPLETE, state=ConversationState.IDLE, values=values, flow=flow)


def _restart(flow: Flow) -> Transition:
    return Transition(
        action=Action.RESTART,
        state=ConversationState.IDLE,
        error=messages.FLOW_RESTARTED,
        flow=flow,
    )


def _scratch_str(session: Session, key: str) -> str | None:
    value = session.scratch.get(key)
    return value if isinstance(value, str) and value else None


def _on_idle(session: Session, value: Any) -> Transition:
    if value is NO_VALUE:
        return Transition(action=Action.SKIP_IGNORED, state=ConversationState.IDLE, error=messages.NOTHING_TO_SKIP)
    command = _IDLE_PHRASES.get(" ".join(value.lower().split()))
    if command is not None:
        return Transition(action=Action.COMMAND, state=ConversationState.IDLE, command=command)
    return Transition(action=Action.MENU, state=ConversationState.IDLE)


def _on_email(session: Session, value: str) -> Transition:
    email, error = _validate_email(value)
    if error:
        return _reprompt(session, error)
    return _advance(session, ConversationState.AWAITING_PASSWORD, **{K_EMAIL: email})


def _on_password(session: Session, value: str) -> Transition:
    email = _scratch_str(session, K_EMAIL)
    if email is None:
        return _restart(Flow.LOGIN)
    if not value:
        return _reprompt(session, messages.EMPTY_PASSWORD)
    return _complete(Flow.LOGIN, email=email, password=value)


def _on_register_name(session: Session, value: str) -> Transition:
    name, error = _validate_name(value)
    if error:
        return _reprompt(session, error)
    return _advance(session, ConversationState.AWAITING_REGISTER_EMAIL, **{K_NAME: name})


def _on_register_email(session: Session, value: str) -> Transition:
    if _scratch_str(session, K_NAME) is None:
        return _restart(Flow.REGISTER)
    email, error = _validate_email(value)
    if error:
        return _reprompt(session, error)
    return _advance(session, ConversationState.AWAITING_REGISTER_PASSWORD, **{K_EMAIL: email})


def _on_register_password(session: Session, value: str) -> Transition:
    name = _scratch_str(session, K_NAME)
    email = _scratch_str(session, K_EMAIL)
    if name is None or email is None:
        return _restart(Flow.REGISTER)
    if len(value) < MIN_PASSWORD_LENGTH:
        return _reprompt(session, messages.PASSWORD_TOO_SHORT)
    return _complete(Flow.REGISTER, name=name, email=email, password=value)


def _on_medication_name(session: Session, value: str) -> Transition:
    name, error = _validate_name(value)
    if error:
        return _reprompt(session, error)
    return _advance(session, ConversationState.AWAITING_MEDICATION_DOSAGE, **{K_MEDICATION_NAME: name})


def _on_medication_dosage(session: Session, value: Any) -> Transition:
    if _scratch_str(session, K_MEDICATION_NAME) is None:
        return _restart(Flow.ADD_MEDICATION)
    dosage, error = _validate_dosage(value)
    if error:
        return _reprompt(session, error)
    return _advance(session, ConversationState.AWAITING_MEDICATION_DESCRIPTION, **{K_DOSAGE: dosage})


def _on_medication_description(session: Session, value: Any) -> Transition:
    name = _scratch_str(session, K_MEDICATION_NAME)
    if name is None or K_DOSAGE not in session.scratch:
        return _restart(Flow.ADD_MEDICATION)
    description, error = _validate_description(value)
    if error:
        return _reprompt(session, error)
    return _complete(
        Flow.ADD_MEDICATION,
        name=name,
        dosage=_scratch_str(session, K_DOSAGE),
        description=description,
    )


def _on_intake_notes(session: Session, value: Any) -> Transition:
    medication_id = _scratch_str(session, K_MEDICATION_ID)
    if medication_id is None:
        return _restart(Flow.RECORD_INTAKE)
    notes, error = _validate_notes(value)
    if error:
        return _reprompt(session, error)
    return _complete(Flow.RECORD_INTAKE, medication_id=medication_id, notes=notes)


def _on_reminder_time(session: Session, value: Any) -> Transition:
    medication_id = _scratch_str(session, K_MEDICATION_ID)
    if medication_id is None:
        return _restart(Flow.ADD_REMINDER)
    time_of_day = parse_time_of_day(value) if isinstance(value, str) else None
    if time_of_day is None:
        return _reprompt(session, messages.INVALID_TIME)
    return _complete(Flow.ADD_REMINDER, medication_id=medication_id, time_of_day=time_of_day)


_HANDLERS: dict[ConversationState, Callable[[Session, Any], Transition]] = {
    ConversationState.IDLE: _on_idle,
    ConversationState.AWAITING_EMAIL: _on_email,
    ConversationState.AWAITING_PASSWORD: _on_password,
    ConversationState.AWAITING_REGISTER_NAME: _on_register_name,
    ConversationState.AWAITING_REGISTER_EMAIL: _on_register_email,
    ConversationState.AWAITING_REGISTER_PASSWORD: _on_register_password,
    ConversationState.AWAITING_MEDICATION_NAME: _on_medication_name,
    ConversationState.AWAITING_MEDICATION_DOSAGE: _on_medication_dosage,
    ConversationState.AWAITING_MEDICATION_DESCRIPTION: _on_medication_description,
    ConversationState.AWAITING_INTAKE_NOTES: _on_intake_notes,
    ConversationState.AWAITING_REMINDER_TIME: _on_reminder_time,
}

_missing = set(ConversationState) - set(_HANDLERS)
if _missing:
    raise RuntimeError(f"以下对话状态没有处理函数: {sorted(s.value for s in _missing)}")


def _parse_command(text: str) -> tuple[str, str | None]:
    head, _, rest = text[1:].partition(" ")
    name = head.split("@", 1)[0].lower()  # /start@SomeBot
    return name, rest.strip() or None


def interpret(session: Session, text: str) -> Transition:
    """解释一条文本消息"""
    text = text.strip()
    lowered = text.lower()

    if lowered == CANCEL_TOKEN:
        return Transition(action=Action.CANCEL, state=ConversationState.IDLE, flow=_STATE_FLOW.get(session.state))

    if lowered == SKIP_TOKEN:
        if session.state in _OPTIONAL_STATES or session.state == ConversationState.IDLE:
            return _HANDLERS[session.state](session, NO_VALUE)
        return Transition(
            action=Action.SKIP_IGNORED,
            state=session.state,
            prompt=prompt_for(session.state, session.scratch),
            error=messages.NOTHING_TO_SKIP,
            flow=_STATE_FLOW.get(session.state),
        )

    if text.startswith("/"):
        name, argument = _parse_command(text)
        if name in COMMANDS:
            return Transition(action=Action.COMMAND, state=ConversationState.IDLE, command=name, argument=argument)
        if session.state == ConversationState.IDLE:
            return Transition(action=Action.UNKNOWN_COMMAND, state=ConversationState.IDLE, command=name)

    return _HANDLERS[session.state](session, text)
