"""事件总线模块，定义了事件总线类 Bus 及事件名集合 E

协程处理器由 AsyncIOEventEmitter 以独立 Task 的形式调度，
因此每条入站 update 都在各自的 Task 中处理，互不阻塞。
"""

from __future__ import annotations
from pyee.asyncio import AsyncIOEventEmitter
from typing import Awaitable, Callable

from medassist.logger import logger

AsyncHandler = Callable[..., Awaitable[None]]

# 事件名集中定义
class E:
    IO_UPDATE_RECEIVED = "io.update_received"
    REMINDER_SENT = "reminder.sent"
    REMINDER_RESENT = "reminder.resent"
    REMINDER_SEND_FAILED = "reminder.send_failed"
    REMINDER_ACKNOWLEDGED = "reminder.acknowledged"
    REMINDER_SKIPPED = "reminder.skipped"


class Bus(AsyncIOEventEmitter):
    def on(self, event: str) -> Callable[[AsyncHandler], AsyncHandler]:
        """注册事件处理器装饰器"""
        def decorator(handler: AsyncHandler) -> AsyncHandler:
            logger.debug(f"注册事件处理器: {event} -> {handler.__name__}")
            super(Bus, self).on(event, handler)
            return handler

        return decorator


bus = Bus()


@bus.on("error")
async def _log_handler_error(error: Exception) -> None:
    # 处理器内未捕获的异常只记录，不影响其他 update
    logger.error(f"事件处理器发生未捕获的异常: {error}", exc_info=error)


__all__ = ["bus", "E", "Bus"]
