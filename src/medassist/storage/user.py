import aiosqlite

import medassist.storage.db_config as db_config
from medassist.datamodel import UserInfo
from medassist.logger import logger

_USER_COLUMNS = "user_id, user_name, timezone, email, telegram_user_id"


def _ensure_conn():
    if db_config.conn is None:
        raise RuntimeError("数据库未初始化，请先调用 init_db()")


def _row_to_user(row) -> UserInfo:
    return UserInfo(
        user_id=row[0],
        user_name=row[1],
        timezone=row[2],
        email=row[3],
        telegram_user_id=row[4],
    )


async def create_user(
    user_name: str,
    timezone: str,
    email: str | None = None,
    password_hash: str | None = None,
    telegram_user_id: int | None = None,
) -> UserInfo:
    """创建用户；email 或 telegram_user_id 重复时抛出 aiosqlite.IntegrityError"""
    _ensure_conn()
    try:
        async with db_config.conn.execute(
            "INSERT INTO users (user_name, email, password_hash, timezone, telegram_user_id) VALUES (?, ?, ?, ?, ?)",
            (user_name, email, password_hash, timezone, telegram_user_id),
        ) as cursor:
            user_id = cursor.lastrowid
        await db_config.conn.commit()
    except aiosqlite.IntegrityError:
        await db_config.conn.rollback()
        raise
    logger.info(f"创建新用户: user_id={user_id}, name={user_name}, telegram_user_id={telegram_user_id}")
    return UserInfo(
        user_id=user_id,
        user_name=user_name,
        timezone=timezone,
        email=email,
        telegram_user_id=telegram_user_id,
    )


async def get_user_by_telegram_id(telegram_user_id: int) -> UserInfo | None:
    """通过 Telegram 用户 ID 获取用户信息"""
    _ensure_conn()
    async with db_config.conn.execute(
        f"SELECT {_USER_COLUMNS} FROM users WHERE telegram_user_id = ?", (telegram_user_id,)
    ) as cursor:
        row = await cursor.fetchone()
        return _row_to_user(row) if row else None


async def get_user_by_id(user_id: int) -> UserInfo | None:
    """通过用户 ID 获取用户信息"""
    _ensure_conn()
    async with db_config.conn.execute(
        f"SELECT {_USER_COLUMNS} FROM users WHERE user_id = ?", (user_id,)
    ) as cursor:
        row = await cursor.fetchone()
        return _row_to_user(row) if row else None


async def get_credentials_by_email(email: str) -> tuple[UserInfo, str | None] | None:
    """返回 (用户, 密码哈希)，邮箱不区分大小写"""
    _ensure_conn()
    async with db_config.conn.execute(
        f"SELECT {_USER_COLUMNS}, password_hash FROM users WHERE lower(email) = lower(?)", (email,)
    ) as cursor:
        row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_user(row), row[5]


async def email_exists(email: str) -> bool:
    _ensure_conn()
    async with db_config.conn.execute(
        "SELECT COUNT(1) FROM users WHERE lower(email) = lower(?)", (email,)
    ) as cursor:
        row = await cursor.fetchone()
        return bool(row[0]) if row else False


async def link_telegram(user_id: int, telegram_user_id: int) -> None:
    """把 Telegram 账号绑定到用户，同一 Telegram 账号只能绑定一个用户"""
    _ensure_conn()
    try:
        await db_config.conn.execute(
            "UPDATE users SET telegram_user_id = ?, updated_at_utc = CURRENT_TIMESTAMP WHERE user_id = ?",
            (telegram_user_id, user_id),
        )
        await db_config.conn.commit()
    except aiosqlite.IntegrityError:
        await db_config.conn.rollback()
        raise
    logger.trace(f"绑定 Telegram: user_id={user_id}, telegram_user_id={telegram_user_id}")


async def update_timezone(user_id: int, timezone: str) -> None:
    _ensure_conn()
    await db_config.conn.execute(
        "UPDATE users SET timezone = ?, updated_at_utc = CURRENT_TIMESTAMP WHERE user_id = ?",
        (timezone, user_id),
    )
    await db_config.conn.commit()
    logger.trace(f"更新用户时区: user_id={user_id}, timezone={timezone}")


__all__ = [
    "create_user", "get_user_by_telegram_id", "get_user_by_id", "get_credentials_by_email",
    "email_exists", "link_telegram", "update_timezone",
]
