"""入站 update 的分发

文本消息交给对话状态机解释，再把得到的 Transition 落地；按钮回调按动作名查表分发，与对话状态无关。
需要登录的动作先尝试按 Telegram ID 自动登录，失败则返回登录菜单。

同一用户的 update 通过每用户一把 asyncio.Lock 串行处理，不同用户之间互不阻塞。
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable

from medassist.config import messages, settings
from medassist.core import conversation, keyboards
from medassist.core.conversation import Action, Flow, Transition
from medassist.core.session_store import Session, SessionStore
from medassist.datamodel import ConversationState, IncomingUpdate, InlineKeyboard, UpdateKind
from medassist.errors import AuthenticationError, OwnershipError, ServiceError
from medassist.events import E, bus
from medassist.logger import logger
from medassist.metrics import runtime_metrics
from medassist.reminders.clock import format_time_of_day
from medassist.reminders.pending import PendingAcknowledgmentTracker
from medassist.utils import user_local_str

__all__ = ["Dispatcher", "configure_dispatcher", "require_dispatcher"]

Handler = Callable[[Session, IncomingUpdate, str], Awaitable[None]]


@dataclass(frozen=True)
class _Route:
    handler: Handler
    requires_auth: bool = True
    needs_param: bool = False
    keeps_state: bool = False  # 为 False 时执行前先把对话重置为 Idle


@dataclass
class _UserLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0  # 正在执行和排队等待的 update 数


class Dispatcher:
    def __init__(
        self,
        sessions: SessionStore,
        tracker: PendingAcknowledgmentTracker,
        notifier: Any,
        *,
        accounts: Any,
        users: Any,
        medications: Any,
        reminders: Any,
        intakes: Any,
        timezones: Iterable[str] = messages.COMMON_TIMEZONES,
        default_timezone: str = settings.DEFAULT_TIMEZONE,
    ) -> None:
        self.sessions = sessions
        self.tracker = tracker
        self.notifier = notifier
        self.accounts = accounts
        self.users = users
        self.medications = medications
        self.reminders = reminders
        self.intakes = intakes
        self.timezones = list(timezones)
        self.default_timezone = default_timezone

        self._user_locks: dict[int, _UserLock] = {}

        self._commands: dict[str, _Route] = {
            "start": _Route(self._cmd_start, requires_auth=False),
            "help": _Route(self._cmd_help, requires_auth=False),
            "menu": _Route(self._show_menu, requires_auth=False),
            "login": _Route(self._start_login, requires_auth=False),
            "register": _Route(self._start_register, requires_auth=False),
            "medications": _Route(self._list_medications),
            "add": _Route(self._start_add_medication),
            "intake": _Route(self._intake_menu),
            "history": _Route(self._history),
            "reminders": _Route(self._reminders_menu),
            "add_reminder": _Route(self._add_reminder_menu),
            "settings": _Route(self._settings),
            "logout": _Route(self._logout),
        }

        self._callbacks: dict[str, _Route] = {
            "main_menu": _Route(self._show_menu, requires_auth=False),
            "cancel": _Route(self._cb_cancel, requires_auth=False, keeps_state=True),
            "skip": _Route(self._cb_skip, requires_auth=False, keeps_state=True),
            "login": _Route(self._start_login, requires_auth=False),
            "register": _Route(self._start_register, requires_auth=False),
            "quick_start": _Route(self._quick_start, requires_auth=False),
            "logout": _Route(self._logout),
            # 药品
            "medications": _Route(self._medications_menu),
            "list_medications": _Route(self._list_medications),
            "add_medication": _Route(self._start_add_medication),
            "delete_medication_menu": _Route(self._delete_medication_menu),
            "med_details": _Route(self._medication_details, needs_param=True),
            "confirm_delete_med": _Route(self._confirm_delete_medication, needs_param=True),
            "delete_med": _Route(self._delete_medication, needs_param=True),
            # 服药记录
            "intake": _Route(self._intake_menu),
            "record_intake": _Route(self._quick_record_intake, needs_param=True),
            "quick_intake": _Route(self._quick_record_intake, needs_param=True),
            "intake_notes": _Route(self._start_intake_notes, needs_param=True),
            "history": _Route(self._history),
            "medication_history": _Route(self._medication_history, needs_param=True),
            # 提醒
            "reminders": _Route(self._reminders_menu),
            "add_reminder": _Route(self._add_reminder_menu),
            "list_reminders": _Route(self._list_reminders),
            "delete_reminder_menu": _Route(self._delete_reminder_menu),
            "reminder_med": _Route(self._start_add_reminder, needs_param=True),
            "med_add_reminder": _Route(self._start_add_reminder, needs_param=True),
            "delete_reminder": _Route(self._delete_reminder, needs_param=True),
            # 设置
            "settings": _Route(self._settings),
            "settings_timezone": _Route(self._timezone_menu),
            "timezone": _Route(self._set_timezone, needs_param=True),
            # 提醒消息上的按钮
            "take_reminder": _Route(self._take_reminder, needs_param=True, keeps_state=True),
            "skip_reminder": _Route(self._skip_reminder, needs_param=True, keeps_state=True),
        }

        self._completions: dict[Flow, Callable[[Session, IncomingUpdate, dict[str, Any]], Awaitable[None]]] = {
            Flow.LOGIN: self._complete_login,
            Flow.REGISTER: self._complete_register,
            Flow.ADD_MEDICATION: self._complete_add_medication,
            Flow.RECORD_INTAKE: self._complete_record_intake,
            Flow.ADD_REMINDER: self._complete_add_reminder,
        }

    # ----------------- 入口 ----------------

    async def handle_update(self, update: IncomingUpdate) -> None:
        """处理一条入站 update，任何异常都在这里终止，不会影响其他 update"""
        is_callback = update.kind == UpdateKind.CALLBACK
        runtime_metrics.record_update_in(is_callback=is_callback)

        async with self._serialized(update.channel_user_id):
            session = self.sessions.touch(update.channel_user_id)
            try:
                if is_callback:
                    await self._handle_callback(session, update)
                else:
                    await self._handle_text(session, update)
            except ServiceError as e:
                # 找不到 / 不属于当前用户等业务错误: 提示用户并回到 Idle
                logger.info(f"用户 {update.channel_user_id} 的请求未能完成: {e.user_message}")
                self.sessions.reset_state(update.channel_user_id)
                await self._safe_send(update.chat_id, e.user_message, self._home_keyboard(session))
            except Exception as e:
                logger.debug(f"出错的 update: kind={update.kind.value}, payload={update.payload!r}")
                logger.error(f"处理用户 {update.channel_user_id} 的 update 时发生异常: {type(e).__name__}", exc_info=e)
                await self._safe_send(update.chat_id, messages.GENERIC_ERROR)

    @asynccontextmanager
    async def _serialized(self, channel_user_id: int) -> AsyncIterator[None]:
        """同一用户的 update 串行执行；最后一个持有者退出时删除该用户的锁"""
        entry = self._user_locks.setdefault(channel_user_id, _UserLock())
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._user_locks[channel_user_id]

    # ----------------- 文本消息 ----------------

    async def _handle_text(self, session: Session, update: IncomingUpdate) -> None:
        transition = conversation.interpret(session, update.payload)
        logger.trace(
            f"用户 {session.channel_user_id}: {session.state.value} --{transition.action.value}--> "
            f"{transition.state.value}"
        )
        await self._apply(session, update, transition)

    async def _apply(self, session: Session, update: IncomingUpdate, transition: Transition) -> None:
        action = transition.action

        if action == Action.PROMPT:
            self.sessions.set_state(session.channel_user_id, transition.state)
            for key, value in transition.values.items():
                self.sessions.set_scratch(session.channel_user_id, key, value)
            await self._reply(update, transition.prompt, self._prompt_keyboard(transition.state))

        elif action in (Action.REPROMPT, Action.SKIP_IGNORED):
            text = transition.error
            if transition.prompt:
                text = f"{transition.error}\n\n{transition.prompt}"
            keyboard = None if session.state == ConversationState.IDLE else self._prompt_keyboard(session.state)
            await self._reply(update, text, keyboard)

        elif action == Action.CANCEL:
            self.sessions.reset_state(session.channel_user_id)
            await self._reply(update, messages.OPERATION_CANCELLED, self._home_keyboard(session))

        elif action == Action.COMPLETE:
            completion = self._completions[transition.flow]
            try:
                await completion(session, update, transition.values)
            except ServiceError as e:
                await self._reply(update, e.user_message, self._home_keyboard(session))
            finally:
                self.sessions.reset_state(session.channel_user_id)

        elif action == Action.RESTART:
            logger.info(f"用户 {session.channel_user_id} 的 {transition.flow.value} 流程数据缺失, 重新开始")
            self.sessions.reset_state(session.channel_user_id)
            await self._reply(update, transition.error)
            await self._restart_flow(session, update, transition.flow)

        elif action == Action.COMMAND:
            if session.state != ConversationState.IDLE:
                self.sessions.reset_state(session.channel_user_id)
            await self._run_route(self._commands[transition.command], session, update, transition.argument or "")

        elif action == Action.UNKNOWN_COMMAND:
            await self._reply(update, messages.UNKNOWN_COMMAND)

        else:  # Action.MENU
            await self._show_menu(session, update, "")

    async def _restart_flow(self, session: Session, update: IncomingUpdate, flow: Flow) -> None:
        restart = {
            Flow.LOGIN: self._start_login,
            Flow.REGISTER: self._start_register,
            Flow.ADD_MEDICATION: self._start_add_medication,
            Flow.RECORD_INTAKE: self._intake_menu,
            Flow.ADD_REMINDER: self._add_reminder_menu,
        }[flow]
        needs_auth = flow not in (Flow.LOGIN, Flow.REGISTER)
        await self._run_route(_Route(restart, requires_auth=needs_auth), session, update, "")

    # ----------------- 按钮回调 ----------------

    async def _handle_callback(self, session: Session, update: IncomingUpdate) -> None:
        action, _, param = update.payload.partition(":")
        route = self._callbacks.get(action)
        if route is None:
            logger.warning(f"未知的回调动作: {update.payload!r}, 来自用户 {update.channel_user_id}")
            return
        if route.needs_param and not param:
            logger.warning(f"回调缺少参数: {update.payload!r}, 来自用户 {update.channel_user_id}")
            return
        if not route.keeps_state and session.state != ConversationState.IDLE:
            self.sessions.reset_state(session.channel_user_id)
        await self._run_route(route, session, update, param)

    async def _run_route(self, route: _Route, session: Session, update: IncomingUpdate, param: str) -> None:
        if route.requires_auth and not await self.ensure_authenticated(session, update):
            return
        await route.handler(session, update, param)

    async def ensure_authenticated(self, session: Session, update: IncomingUpdate) -> bool:
        """已登录返回 True；否则尝试按 Telegram ID 自动登录，失败时展示登录菜单"""
        if session.is_authenticated:
            return True
        user = await self.users.get_by_channel_id(update.channel_user_id)
        if user is not None:
            self.sessions.authenticate(update.channel_user_id, user.user_id, user.user_name)
            logger.info(f"用户 {update.channel_user_id} 已按 Telegram ID 自动登录")
            return True
        await self._reply(update, messages.AUTH_REQUIRED, keyboards.auth_menu())
        return False

    async def _cb_cancel(self, session: Session, update: IncomingUpdate, param: str) -> None:
        await self._apply(session, update, conversation.interpret(session, conversation.CANCEL_TOKEN))

    async def _cb_skip(self, session: Session, update: IncomingUpdate, param: str) -> None:
        await self._apply(session, update, conversation.interpret(session, conversation.SKIP_TOKEN))

    # ----------------- 回复 ----------------

    def _home_keyboard(self, session: Session) -> InlineKeyboard:
        return keyboards.main_menu() if session.is_authenticated else keyboards.auth_menu()

    def _prompt_keyboard(self, state: ConversationState) -> InlineKeyboard:
        if state in (
            ConversationState.AWAITING_MEDICATION_DOSAGE,
            ConversationState.AWAITING_MEDICATION_DESCRIPTION,
            ConversationState.AWAITING_INTAKE_NOTES,
        ):
            return keyboards.skip_or_cancel()
        return keyboards.cancel_button()

    async def _reply(self, update: IncomingUpdate, text: str, actions: InlineKeyboard | None = None) -> None:
        await self.notifier.send_text(update.chat_id, text, actions)

    async def _show(self, update: IncomingUpdate, text: str, actions: InlineKeyboard | None = None) -> None:
        """回调触发的菜单尽量原地编辑按钮所在的消息，编辑失败时发新消息"""
        if update.kind == UpdateKind.CALLBACK and update.message_id is not None:
            try:
                await self.notifier.edit_text(update.chat_id, update.message_id, text, actions)
                return
            except Exception as e:
                logger.debug(f"编辑消息失败, 改为发送新消息: chat_id={update.chat_id}, error={e}")
        await self.notifier.send_text(update.chat_id, text, actions)

    async def _safe_send(self, chat_id: int, text: str, actions: InlineKeyboard | None = None) -> None:
        try:
            await self.notifier.send_text(chat_id, text, actions)
        except Exception as e:
            logger.error(f"向用户 {chat_id} 发送消息失败: {e}", exc_info=e)

    async def _user_timezone(self, session: Session) -> str:
        user = await self.users.get_by_id(session.user_id)
        if user is None or not user.timezone:
            return self.default_timezone
        return user.timezone

    def _require_user_id(self, session: Session) -> int:
        if session.user_id is None:
            raise AuthenticationError(messages.AUTH_REQUIRED)
        return session.user_id

    # ----------------- 通用与账号 ----------------

    async def _cmd_start(self, session: Session, update: IncomingUpdate, param: str) -> None:
        if session.is_authenticated or await self._try_auto_auth(session, update):
            await self._reply(update, messages.WELCOME_BACK.format(name=session.user_name), keyboards.main_menu())
            return
        await self._reply(update, messages.WELCOME, keyboards.auth_menu())

    async def _try_auto_auth(self, session: Session, update: IncomingUpdate) -> bool:
        user = await self.users.get_by_channel_id(update.channel_user_id)
        if user is None:
            return False
        self.sessions.authenticate(update.channel_user_id, user.user_id, user.user_name)
        return True

    async def _cmd_help(self, session: Session, update: IncomingUpdate, param: str) -> None:
        await self._reply(update, messages.HELP, keyboards.back_to_main_menu())

    async def _show_menu(self, session: Session, update: IncomingUpdate, param: str) -> None:
        if session.is_authenticated or await self._try_auto_auth(session, update):
            await self._show(update, messages.MAIN_MENU, keyboards.main_menu())
        else:
            await self._show(update, messages.AUTH_REQUIRED, keyboards.auth_menu())

    async def _start_flow(self, update: IncomingUpdate, session: Session, flow: Flow, **scratch: Any) -> None:
        self.sessions.reset_state(session.channel_user_id)
        await self._apply(session, update, conversation.start_flow(flow, **scratch))

    async def _start_login(self, session: Session, update: IncomingUpdate, param: str) -> None:
        await self._start_flow(update, session, Flow.LOGIN)

    async def _start_register(self, session: Session, update: IncomingUpdate, param: str) -> None:
        await self._start_flow(update, session, Flow.REGISTER)

    async def _complete_login(self, session: Session, update: IncomingUpdate, values: dict[str, Any]) -> None:
        user = await self.accounts.login(values["email"], values["password"], update.channel_user_id)
        self.sessions.authenticate(update.channel_user_id, user.user_id, user.user_name)
        await self._reply(update, messages.LOGIN_SUCCESS.format(name=user.user_name), keyboards.main_menu())

    async def _complete_register(self, session: Session, update: IncomingUpdate, values: dict[str, Any]) -> None:
        user = await self.accounts.register(
            values["name"], values["email"], values["password"], update.channel_user_id
        )
        self.sessions.authenticate(update.channel_user_id, user.user_id, user.user_name)
        await self._reply(update, messages.REGISTER_SUCCESS.format(name=user.user_name), keyboards.main_menu())

    async def _quick_start(self, session: Session, update: IncomingUpdate, param: str) -> None:
        user = await self.accounts.quick_start(update.channel_user_id, update.user_name)
        self.sessions.authenticate(update.channel_user_id, user.user_id, user.user_name)
        await self._show(
            update,
            messages.QUICK_START_SUCCESS.format(name=user.user_name, timezone=user.timezone or self.default_timezone),
            keyboards.main_menu(),
        )

    async def _logout(self, session: Session, update: IncomingUpdate, param: str) -> None:
        self.sessions.logout(update.channel_user_id)
        await self._show(update, messages.LOGGED_OUT, keyboards.auth_menu())

    # ----------------- 药品 ----------------

    async def _medications_menu(self, session: Session, update: IncomingUpdate, param: str) -> None:
        await self._show(update, messages.MEDICATIONS_MENU, keyboards.medications_menu())

    async def _list_medications(self, session: Session, update: IncomingUpdate, param: str) -> None:
        medications = await self.medications.list_by_user(session.user_id)
        if not medications:
            await self._show(update, messages.NO_MEDICATIONS, keyboards.medications_menu())
            return
        await self._show(update, messages.MEDICATIONS_LIST_HEADER, keyboards.medications_list(medications, "med_details"))

    async def _start_add_medication(self, session: Session, update: IncomingUpdate, param: str) -> None:
        await self._start_flow(update, session, Flow.ADD_MEDICATION)

    async def _complete_add_medication(self, session: Session, update: IncomingUpdate, values: dict[str, Any]) -> None:
        user_id = self._require_user_id(session)
        medication = await self.medications.create(
            user_id, values["name"], values.get("dosage"), values.get("description")
        )
        await self._reply(update, messages.MEDICATION_ADDED.format(name=medication.name), keyboards.after_add_medication())

    async def _delete_medication_menu(self, session: Session, update: IncomingUpdate, param: str) -> None:
        medications = await self.medications.list_by_user(session.user_id)
        if not medications:
            await self._show(update, messages.NO_MEDICATIONS, keyboards.medications_menu())
            return
        await self._show(
            update, messages.SELECT_MEDICATION_TO_DELETE, keyboards.medications_list(medications, "confirm_delete_med")
        )

    async def _medication_details(self, session: Session, update: IncomingUpdate, medication_id: str) -> None:
        medication = await self.medications.get(session.user_id, medication_id)
        text = messages.MEDICATION_DETAILS.format(
            name=medication.name,
            dosage=medication.dosage or messages.NOT_SPECIFIED,
            description=medication.description or messages.NOT_SPECIFIED,
        )
        await self._show(update, text, keyboards.medication_actions(medication.medication_id))

    async def _confirm_delete_medication(self, session: Session, update: IncomingUpdate, medication_id: str) -> None:
        medication = await self.medications.get(session.user_id, medication_id)
        await self._show(
            update,
            messages.CONFIRM_DELETE_MEDICATION.format(name=medication.name),
            keyboards.confirm_cancel(f"delete_med:{medication.medication_id}", "list_medications"),
        )

    async def _delete_medication(self, session: Session, update: IncomingUpdate, medication_id: str) -> None:
        # 药品的提醒随之级联删除，未确认的提醒也一并移除
        for entry in self.tracker.all():
            if entry.medication_id == medication_id and entry.user_id == session.user_id:
                self.tracker.remove(entry.reminder_id)
        medication = await self.medications.delete(session.user_id, medication_id)
        await self._show(update, messages.MEDICATION_DELETED.format(name=medication.name), keyboards.medications_menu())

    # ----------------- 服药记录 ----------------

    async def _intake_menu(self, session: Session, update: IncomingUpdate, param: str) -> None:
        medications = await self.medications.list_by_user(session.user_id)
        if not medications:
            await self._show(update, messages.NO_MEDICATIONS, keyboards.medications_menu())
            return
        await self._show(update, messages.INTAKE_MENU, keyboards.medications_list(medications, "record_intake"))

    async def _intake_recorded(self, session: Session, update: IncomingUpdate, medication_name: str, intake_at) -> None:
        tz_name = await self._user_timezone(session)
        text = messages.INTAKE_RECORDED.format(name=medication_name, time=user_local_str(intake_at, tz_name, "%H:%M"))
        await self._reply(update, text, keyboards.after_intake())

    async def _quick_record_intake(self, session: Session, update: IncomingUpdate, medication_id: str) -> None:
        intake = await self.intakes.record(session.user_id, medication_id)
        await self._intake_recorded(session, update, intake.medication_name, intake.intake_at)

    async def _start_intake_notes(self, session: Session, update: IncomingUpdate, medication_id: str) -> None:
        medication = await self.medications.get(session.user_id, medication_id)
        await self._start_flow(
            update, session, Flow.RECORD_INTAKE,
            **{conversation.K_MEDICATION_ID: medication.medication_id, conversation.K_MEDICATION_NAME: medication.name},
        )

    async def _complete_record_intake(self, session: Session, update: IncomingUpdate, values: dict[str, Any]) -> None:
        user_id = self._require_user_id(session)
        intake = await self.intakes.record(user_id, values["medication_id"], values.get("notes"))
        await self._intake_recorded(session, update, intake.medication_name, intake.intake_at)

    def _format_history(self, records, tz_name: str) -> list[str]:
        lines = []
        for record in records:
            when = user_local_str(record.intake_at, tz_name, "%d.%m %H:%M")
            if record.notes:
                lines.append(messages.HISTORY_LINE_WITH_NOTES.format(time=when, name=record.medication_name, notes=record.notes))
            else:
                lines.append(messages.HISTORY_LINE.format(time=when, name=record.medication_name))
        return lines

    async def _history(self, session: Session, update: IncomingUpdate, period: str) -> None:
        if not period:
            await self._show(update, messages.HISTORY_PERIOD_MENU, keyboards.history_period_menu())
            return
        if period not in messages.HISTORY_PERIOD_NAMES:
            logger.warning(f"未知的历史时间段: {period!r}")
            return
        tz_name = await self._user_timezone(session)
        records = await self.intakes.history(session.user_id, period, tz_name)
        period_name = messages.HISTORY_PERIOD_NAMES[period]
        if not records:
            await self._show(update, messages.HISTORY_EMPTY.format(period=period_name), keyboards.history_period_menu())
            return
        text = "\n".join([messages.HISTORY_HEADER.format(period=period_name), *self._format_history(records, tz_name)])
        await self._show(update, text, keyboards.history_period_menu())

    async def _medication_history(self, session: Session, update: IncomingUpdate, medication_id: str) -> None:
        medication = await self.medications.get(session.user_id, medication_id)
        tz_name = await self._user_timezone(session)
        records = await self.intakes.history(session.user_id, "all", tz_name, medication_id=medication.medication_id)
        period_name = messages.HISTORY_PERIOD_NAMES["all"]
        if not records:
            text = messages.HISTORY_EMPTY.format(period=period_name)
        else:
            header = f"{medication.name}. " + messages.HISTORY_HEADER.format(period=period_name)
            text = "\n".join([header, *self._format_history(records, tz_name)])
        await self._show(update, text, keyboards.medication_actions(medication.medication_id))

    # ----------------- 提醒 ----------------

    async def _reminders_menu(self, session: Session, update: IncomingUpdate, param: str) -> None:
        await self._show(update, messages.REMINDERS_MENU, keyboards.reminders_menu())

    async def _add_reminder_menu(self, session: Session, update: IncomingUpdate, param: str) -> None:
        """添加提醒的第一步: 选择药品 (会话保持 Idle，选择通过按钮回调完成)"""
        medications = await self.medications.list_by_user(session.user_id)
        if not medications:
            await self._show(update, messages.NO_MEDICATIONS, keyboards.medications_menu())
            return
        await self._show(update, messages.SELECT_REMINDER_MEDICATION, keyboards.medications_list(medications, "reminder_med"))

    async def _start_add_reminder(self, session: Session, update: IncomingUpdate, medication_id: str) -> None:
        medication = await self.medications.get(session.user_id, medication_id)
        tz_name = await self._user_timezone(session)
        await self._start_flow(
            update, session, Flow.ADD_REMINDER,
            **{
                conversation.K_MEDICATION_ID: medication.medication_id,
                conversation.K_MEDICATION_NAME: medication.name,
                conversation.K_TIMEZONE: tz_name,
            },
        )

    async def _complete_add_reminder(self, session: Session, update: IncomingUpdate, values: dict[str, Any]) -> None:
        user_id = self._require_user_id(session)
        reminder = await self.reminders.create(user_id, values["medication_id"], update.chat_id, values["time_of_day"])
        text = messages.REMINDER_CREATED.format(
            name=reminder.medication_name, time=format_time_of_day(reminder.time_of_day)
        )
        await self._reply(update, text, keyboards.reminders_menu())

    async def _list_reminders(self, session: Session, update: IncomingUpdate, param: str) -> None:
        reminders = await self.reminders.list_by_user(session.user_id)
        if not reminders:
            await self._show(update, messages.NO_REMINDERS, keyboards.reminders_menu())
            return
        lines = [messages.REMINDERS_LIST_HEADER]
        lines += [
            messages.REMINDER_LINE.format(time=format_time_of_day(r.time_of_day), name=r.medication_name)
            for r in reminders
        ]
        await self._show(update, "\n".join(lines), keyboards.reminders_menu())

    async def _delete_reminder_menu(self, session: Session, update: IncomingUpdate, param: str) -> None:
        reminders = await self.reminders.list_by_user(session.user_id)
        if not reminders:
            await self._show(update, messages.NO_REMINDERS, keyboards.reminders_menu())
            return
        await self._show(update, messages.SELECT_REMINDER_TO_DELETE, keyboards.reminders_list(reminders, "delete_reminder"))

    async def _delete_reminder(self, session: Session, update: IncomingUpdate, reminder_id: str) -> None:
        await self.reminders.delete(session.user_id, reminder_id)
        self.tracker.remove(reminder_id)
        await self._show(update, messages.REMINDER_DELETED, keyboards.reminders_menu())

    async def _resolve_pending(self, session: Session, update: IncomingUpdate, reminder_id: str):
        """取出并移除待确认条目；已被处理过 (重复点击) 时返回 None"""
        entry = self.tracker.get(reminder_id)
        if entry is None:
            await self._show(update, messages.REMINDER_ALREADY_HANDLED)
            return None
        if entry.user_id != session.user_id:
            logger.warning(f"用户 {session.user_id} 试图确认不属于自己的提醒 {reminder_id}")
            raise OwnershipError(messages.REMINDER_NOT_FOUND)
        if not self.tracker.remove(reminder_id):
            await self._show(update, messages.REMINDER_ALREADY_HANDLED)
            return None
        return entry

    async def _clear_pending(self, reminder_id: str) -> None:
        try:
            await self.reminders.clear_pending(reminder_id)
        except Exception as e:
            logger.error(f"清除提醒 {reminder_id} 的待确认状态失败: {e}", exc_info=e)

    async def _take_reminder(self, session: Session, update: IncomingUpdate, reminder_id: str) -> None:
        entry = await self._resolve_pending(session, update, reminder_id)
        if entry is None:
            return
        try:
            intake = await self.intakes.record(session.user_id, entry.medication_id)
        except Exception:
            # 记录失败时恢复待确认条目，用户可以再点一次
            self.tracker.upsert(entry)
            raise
        await self._clear_pending(reminder_id)

        tz_name = await self._user_timezone(session)
        text = messages.REMINDER_TAKEN.format(
            name=entry.medication_name, time=user_local_str(intake.intake_at, tz_name, "%H:%M")
        )
        await self._show(update, text)
        logger.info(f"用户 {session.user_id} 已确认提醒 {reminder_id}")
        bus.emit(E.REMINDER_ACKNOWLEDGED, reminder_id=reminder_id, user_id=session.user_id)

    async def _skip_reminder(self, session: Session, update: IncomingUpdate, reminder_id: str) -> None:
        entry = await self._resolve_pending(session, update, reminder_id)
        if entry is None:
            return
        await self._clear_pending(reminder_id)
        await self._show(update, messages.REMINDER_SKIPPED.format(name=entry.medication_name))
        logger.info(f"用户 {session.user_id} 跳过了提醒 {reminder_id}")
        bus.emit(E.REMINDER_SKIPPED, reminder_id=reminder_id, user_id=session.user_id)

    # ----------------- 设置 ----------------

    async def _settings(self, session: Session, update: IncomingUpdate, param: str) -> None:
        user = await self.users.get_by_id(session.user_id)
        if user is None:
            self.sessions.logout(session.channel_user_id)
            await self._show(update, messages.AUTH_REQUIRED, keyboards.auth_menu())
            return
        text = messages.SETTINGS.format(
            name=user.user_name or messages.NOT_SPECIFIED,
            email=user.email or messages.NOT_SPECIFIED,
            timezone=user.timezone or self.default_timezone,
        )
        await self._show(update, text, keyboards.settings_menu())

    async def _timezone_menu(self, session: Session, update: IncomingUpdate, param: str) -> None:
        await self._show(update, messages.SELECT_TIMEZONE, keyboards.timezone_menu(self.timezones))

    async def _set_timezone(self, session: Session, update: IncomingUpdate, tz_name: str) -> None:
        user = await self.users.set_timezone(session.user_id, tz_name)
        await self._show(update, messages.TIMEZONE_SET.format(timezone=user.timezone), keyboards.settings_menu())


_dispatcher: Dispatcher | None = None


def configure_dispatcher(dispatcher: Dispatcher | None) -> None:
    global _dispatcher
    _dispatcher = dispatcher


def require_dispatcher() -> Dispatcher:
    if _dispatcher is None:
        raise RuntimeError("Dispatcher 尚未配置，请先调用 configure_dispatcher()")
    return _dispatcher


@bus.on(E.IO_UPDATE_RECEIVED)
async def handle_update_received(update: IncomingUpdate) -> None:
    await require_dispatcher().handle_update(update)
