"""用户会话存储

每个 Telegram 用户一个 Session，首次收到消息时惰性创建。
字典本身的读写由锁保护；同一用户的消息串行处理由调用方保证，
Session 内部字段的组合更新不提供额外互斥。
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, TypeVar

from medassist.datamodel import ConversationState
from medassist.logger import logger
from medassist.utils import now_utc

__all__ = ["Session", "SessionStore"]

T = TypeVar("T")


@dataclass
class Session:
    channel_user_id: int
    user_id: int | None = None  # 非空即已登录
    user_name: str | None = None
    state: ConversationState = ConversationState.IDLE
    scratch: dict[str, Any] = field(default_factory=dict)  # 多步表单的临时数据
    last_activity: datetime = field(default_factory=now_utc)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def reset_state(self) -> None:
        self.state = ConversationState.IDLE
        self.scratch.clear()

    def logout(self) -> None:
        self.user_id = None
        self.user_name = None
        self.reset_state()


class SessionStore:
    def __init__(self, clock: Callable[[], datetime] = now_utc) -> None:
        self._sessions: dict[int, Session] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get_or_create(self, channel_user_id: int) -> Session:
        with self._lock:
            session = self._sessions.get(channel_user_id)
            if session is None:
                session = Session(channel_user_id=channel_user_id, last_activity=self._clock())
                self._sessions[channel_user_id] = session
                logger.trace(f"创建会话: channel_user_id={channel_user_id}")
            return session

    def get(self, channel_user_id: int) -> Session | None:
        with self._lock:
            return self._sessions.get(channel_user_id)

    def touch(self, channel_user_id: int) -> Session:
        session = self.get_or_create(channel_user_id)
        session.last_activity = self._clock()
        return session

    def set_state(self, channel_user_id: int, state: ConversationState) -> None:
        session = self.touch(channel_user_id)
        session.state = state

    def reset_state(self, channel_user_id: int) -> None:
        session = self.touch(channel_user_id)
        session.reset_state()

    def authenticate(self, channel_user_id: int, user_id: int, user_name: str | None) -> None:
        session = self.touch(channel_user_id)
        session.user_id = user_id
        session.user_name = user_name
        session.reset_state()
        logger.info(f"用户 {channel_user_id} 已登录为 {user_name} (user_id={user_id})")

    def logout(self, channel_user_id: int) -> None:
        session = self.get(channel_user_id)
        if session is None:
            return
        logger.info(f"用户 {channel_user_id} ({session.user_name}) 已退出登录")
        session.logout()
        session.last_activity = self._clock()

    def set_scratch(self, channel_user_id: int, key: str, value: Any) -> None:
        session = self.touch(channel_user_id)
        session.scratch[key] = value

    def get_scratch(self, channel_user_id: int, key: str, expected_type: type[T]) -> T | None:
        """类型不符或不存在时返回 None"""
        session = self.get_or_create(channel_user_id)
        value = session.scratch.get(key)
        if isinstance(value, expected_type):
            return value
        return None

    def authenticated_sessions(self) -> list[Session]:
        with self._lock:
            return [s for s in self._sessions.values() if s.is_authenticated]

    def sweep_inactive(self, threshold: timedelta, now: datetime | None = None) -> int:
        """清理超过 threshold 未活动且未登录的会话，已登录会话永不清理"""
        cutoff = (now or self._clock()) - threshold
        with self._lock:
            stale = [
                key for key, s in self._sessions.items()
                if not s.is_authenticated and s.last_activity < cutoff
            ]
            for key in stale:
                del self._sessions[key]

        if stale:
            logger.info(f"已清理 {len(stale)} 个不活跃会话")
        return len(stale)
