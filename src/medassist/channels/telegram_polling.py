import asyncio

import telegram
from telegram import InlineKeyboardButton, InlineKeyboardMarkup
from telegram.ext import ApplicationBuilder, CallbackQueryHandler, ContextTypes, MessageHandler, filters

from medassist.config.settings import TELEGRAM_BOT_TOKEN
from medassist.datamodel import IncomingUpdate, InlineKeyboard, UpdateKind
from medassist.events import E, bus
from medassist.logger import logger

__all__ = ["TelegramNotifier", "to_reply_markup", "main"]

_SEND_RETRY_DELAY_SECONDS = 2


def to_reply_markup(actions: InlineKeyboard | None) -> InlineKeyboardMarkup | None:
    if not actions:
        return None
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(button.label, callback_data=button.action) for button in row] for row in actions]
    )


class TelegramNotifier:
    """通过 Telegram Bot 发送与编辑消息；bot 在 Application 初始化后绑定"""

    def __init__(self, bot: telegram.Bot | None = None) -> None:
        self._bot = bot

    def bind(self, bot: telegram.Bot) -> None:
        self._bot = bot

    def _require_bot(self) -> telegram.Bot:
        if self._bot is None:
            raise RuntimeError("Telegram Bot 尚未启动，无法发送消息")
        return self._bot

    async def send_text(self, chat_id: int, text: str, actions: InlineKeyboard | None = None) -> int:
        bot = self._require_bot()
        reply_markup = to_reply_markup(actions)
        try:
            message = await bot.send_message(chat_id=chat_id, text=text, reply_markup=reply_markup)
        except telegram.error.NetworkError as e:
            logger.warning(f"向 Telegram 用户 {chat_id} 发送消息失败: {e}, 即将重试")
            await asyncio.sleep(_SEND_RETRY_DELAY_SECONDS)
            message = await bot.send_message(chat_id=chat_id, text=text, reply_markup=reply_markup)
        logger.trace(f"已发送消息给 Telegram chat_id: {chat_id}, message_id: {message.message_id}")
        return message.message_id

    async def edit_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        actions: InlineKeyboard | None = None,
    ) -> None:
        bot = self._require_bot()
        try:
            await bot.edit_message_text(
                text=text,
                chat_id=chat_id,
                message_id=message_id,
                reply_markup=to_reply_markup(actions),
            )
        except telegram.error.BadRequest as e:
            # 内容没有变化时 Telegram 也会报错，视为成功
            if "not modified" in str(e).lower():
                return
            raise


def _display_name(user: telegram.User | None) -> str | None:
    if user is None:
        return None
    return user.full_name or user.username


async def process_message(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.message is None or update.effective_user is None or not update.message.text:
        return

    logger.debug(f"收到 Telegram 用户 {update.effective_user.id} 的消息: {update.message.text[:50]}")
    bus.emit(E.IO_UPDATE_RECEIVED, IncomingUpdate(
        kind=UpdateKind.TEXT,
        channel_user_id=update.effective_user.id,
        chat_id=update.effective_chat.id,
        payload=update.message.text,
        message_id=update.message.message_id,
        user_name=_display_name(update.effective_user),
    ))


async def process_callback(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if query is None or query.from_user is None:
        return

    try:
        await query.answer()
    except telegram.error.TelegramError as e:
        # 回调过期不影响后续处理
        logger.debug(f"应答回调失败: {e}")

    logger.debug(f"收到 Telegram 用户 {query.from_user.id} 的回调: {query.data}")
    message = query.message
    bus.emit(E.IO_UPDATE_RECEIVED, IncomingUpdate(
        kind=UpdateKind.CALLBACK,
        channel_user_id=query.from_user.id,
        chat_id=message.chat.id if message is not None else query.from_user.id,
        payload=query.data or "",
        message_id=message.message_id if message is not None else None,
        user_name=_display_name(query.from_user),
    ))


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """处理 telegram 库中发生的错误"""
    logger.error(f"Telegram 错误: {context.error}", exc_info=context.error)


def bot_error_callback(error: telegram.error.TelegramError) -> None:
    if isinstance(error, telegram.error.NetworkError):
        logger.warning(f"Telegram Bot 网络错误: {error}")
    else:
        logger.error(f"Telegram Bot 发生预期外的错误: {error}", exc_info=error)


async def main(notifier: TelegramNotifier, shutdown_event: asyncio.Event) -> None:
    if TELEGRAM_BOT_TOKEN == "":
        logger.critical("未设置 TELEGRAM_BOT_TOKEN, 无法启动 Telegram Bot Polling")
        shutdown_event.set()
        return

    app = ApplicationBuilder().token(TELEGRAM_BOT_TOKEN).build()

    # 斜杠命令也交给对话状态机处理
    app.add_handler(MessageHandler(filters.TEXT, process_message))
    app.add_handler(CallbackQueryHandler(process_callback))
    app.add_error_handler(error_handler)

    try:
        await app.initialize()
        notifier.bind(app.bot)
        await app.updater.start_polling(
            poll_interval=0.5,
            timeout=15,  # 长轮询
            bootstrap_retries=-1,
            drop_pending_updates=False,  # 保留下线期间的消息
            error_callback=bot_error_callback,
        )
        await app.start()
        logger.info("Telegram Bot Polling 已启动")

        await shutdown_event.wait()
    finally:
        logger.info("关闭 Telegram Bot Polling...")
        if app.updater.running:
            await app.updater.stop()
        if app.running:
            await app.stop()
        await app.shutdown()
