from medassist.logger import setup_logging, logger
from medassist.config.settings import *
setup_logging(
    log_level=LOG_LEVEL,
    log_file=LOG_FILE,
    console_level="INFO",
)

import asyncio
import os
import signal
import sys
import time
from datetime import timedelta

import medassist.storage.db_config as db_config
import medassist.storage.reminder as reminder_repository
from medassist.admin.http_server import main_loop as admin_http_main
from medassist.admin.schemas import RuntimeControl
from medassist.channels.telegram_polling import TelegramNotifier, main as telegram_main
from medassist.core.dispatch import Dispatcher, configure_dispatcher
from medassist.core.session_store import SessionStore
from medassist.reminders.pending import PendingAcknowledgmentTracker
from medassist.reminders.scheduler import ReminderScheduler
from medassist.services import accounts, intakes, medications, reminders, users
from medassist.utils import run_periodic

shutdown_event = asyncio.Event()
restart_event = asyncio.Event()


def signal_handler(sig, frame):
    """处理 SIGINT (Ctrl+C) 信号"""
    logger.info("收到中断信号,正在依次关闭组件...")
    shutdown_event.set()


async def main():
    # 注册信号处理器
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    await db_config.init_db(DB_PATH)

    sessions = SessionStore()
    tracker = PendingAcknowledgmentTracker()
    notifier = TelegramNotifier()

    scheduler = ReminderScheduler(
        repository=reminder_repository,
        users=users,
        notifier=notifier,
        tracker=tracker,
    )
    configure_dispatcher(Dispatcher(
        sessions,
        tracker,
        notifier,
        accounts=accounts,
        users=users,
        medications=medications,
        reminders=reminders,
        intakes=intakes,
    ))

    async def sweep_sessions() -> None:
        sessions.sweep_inactive(timedelta(hours=SESSION_INACTIVITY_HOURS))

    control = RuntimeControl(
        shutdown_event=shutdown_event,
        restart_event=restart_event,
        started_at=time.time(),
        scheduler=scheduler,
        sessions=sessions,
    )

    try:
        tasks = [
            scheduler.main_loop(shutdown_event),
            run_periodic("会话清理", SESSION_SWEEP_SECONDS, sweep_sessions, shutdown_event),
            admin_http_main(control),
        ]

        if ENABLE_TELEGRAM_BOT_POLLING:
            tasks.append(telegram_main(notifier, shutdown_event))
        else:
            logger.warning("Telegram Bot Polling 已禁用, 提醒将无法送达")

        await asyncio.gather(*tasks)
    finally:
        logger.info("关闭 Medassist...")
        configure_dispatcher(None)

        logger.info("关闭数据库连接...")
        await db_config.close_db()
        if restart_event.is_set():
            logger.warning("检测到重启信号，正在重新拉起进程...")
            try:
                os.execv(sys.executable, [sys.executable, *sys.argv])
            except Exception as e:
                logger.error(f"重启失败: {e}", exc_info=e)
        logger.info("Medassist 已关闭")


def run() -> None:
    logger.info("启动 Medassist...")
    asyncio.run(main())


if __name__ == "__main__":
    run()
