"""业务异常

ServiceError 及其子类携带可以直接展示给用户的 user_message，
由 core/dispatch.py 统一捕获并回复给用户；其余异常视为程序错误，只记录日志。
"""

__all__ = [
    "ServiceError", "ValidationError", "NotFoundError", "OwnershipError",
    "ConflictError", "AuthenticationError", "InvalidTimeZoneError",
]


class ServiceError(Exception):
    def __init__(self, user_message: str) -> None:
        super().__init__(user_message)
        self.user_message = user_message


class ValidationError(ServiceError):
    pass


class NotFoundError(ServiceError):
    pass


class OwnershipError(ServiceError):
    """引用的药品/提醒属于其他用户"""


class ConflictError(ServiceError):
    pass


class AuthenticationError(ServiceError):
    pass


class InvalidTimeZoneError(ValueError):
    """时区 ID 无法解析，属于配置错误，应在用户设置时区时就被拦截"""

    def __init__(self, tz_name: str) -> None:
        super().__init__(f"未知的时区: {tz_name}")
        self.tz_name = tz_name
