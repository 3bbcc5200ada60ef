import medassist.storage.user as user_store
from medassist.config import messages
from medassist.datamodel import UserInfo
from medassist.errors import NotFoundError, ValidationError
from medassist.reminders.clock import is_valid_timezone


async def get_by_id(user_id: int) -> UserInfo | None:
    return await user_store.get_user_by_id(user_id)


async def get_by_channel_id(channel_user_id: int) -> UserInfo | None:
    return await user_store.get_user_by_telegram_id(channel_user_id)


async def set_timezone(user_id: int, tz_name: str) -> UserInfo:
    """时区在这里校验，调度器之后不再处理非法时区"""
    if not is_valid_timezone(tz_name):
        raise ValidationError(messages.INVALID_TIMEZONE)
    user = await user_store.get_user_by_id(user_id)
    if user is None:
        raise NotFoundError(messages.AUTH_REQUIRED)
    await user_store.update_timezone(user_id, tz_name)
    user.timezone = tz_name
    return user


__all__ = ["get_by_id", "get_by_channel_id", "set_timezone"]
