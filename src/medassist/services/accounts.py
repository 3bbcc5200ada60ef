"""账号服务: 注册、登录与一键开始

登录/注册成功后把当前 Telegram 账号绑定到该用户，之后可凭 Telegram ID 自动登录。
"""

import aiosqlite
from passlib.context import CryptContext

import medassist.storage.user as user_store
from medassist.config import messages
from medassist.config.settings import DEFAULT_TIMEZONE
from medassist.datamodel import UserInfo
from medassist.errors import AuthenticationError, ConflictError
from medassist.logger import logger

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


async def _ensure_channel_free(channel_user_id: int, user_id: int | None = None) -> None:
    linked = await user_store.get_user_by_telegram_id(channel_user_id)
    if linked is not None and linked.user_id != user_id:
        raise ConflictError(messages.TELEGRAM_ALREADY_LINKED)


async def register(name: str, email: str, password: str, channel_user_id: int) -> UserInfo:
    if await user_store.email_exists(email):
        raise ConflictError(messages.EMAIL_TAKEN)
    await _ensure_channel_free(channel_user_id)

    try:
        user = await user_store.create_user(
            user_name=name,
            timezone=DEFAULT_TIMEZONE,
            email=email,
            password_hash=hash_password(password),
            telegram_user_id=channel_user_id,
        )
    except aiosqlite.IntegrityError as e:
        # 并发注册时的唯一约束冲突
        logger.warning(f"注册冲突: email={email}, telegram_user_id={channel_user_id}, error={e}")
        raise ConflictError(messages.EMAIL_TAKEN) from e
    logger.info(f"用户注册成功: user_id={user.user_id}, email={email}")
    return user


async def login(email: str, password: str, channel_user_id: int) -> UserInfo:
    found = await user_store.get_credentials_by_email(email)
    if found is None:
        raise AuthenticationError(messages.LOGIN_FAILED)
    user, password_hash = found
    if not password_hash or not verify_password(password, password_hash):
        logger.info(f"登录失败: email={email}")
        raise AuthenticationError(messages.LOGIN_FAILED)

    if user.telegram_user_id != channel_user_id:
        await _ensure_channel_free(channel_user_id, user.user_id)
        await user_store.link_telegram(user.user_id, channel_user_id)
        user.telegram_user_id = channel_user_id
    logger.info(f"用户登录成功: user_id={user.user_id}")
    return user


async def quick_start(channel_user_id: int, user_name: str | None) -> UserInfo:
    """用 Telegram 身份直接创建 (或取回) 账号，无需邮箱密码"""
    existing = await user_store.get_user_by_telegram_id(channel_user_id)
    if existing is not None:
        return existing
    return await user_store.create_user(
        user_name=user_name or f"User {channel_user_id}",
        timezone=DEFAULT_TIMEZONE,
        telegram_user_id=channel_user_id,
    )


__all__ = ["register", "login", "quick_start", "hash_password", "verify_password"]
