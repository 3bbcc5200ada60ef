"""日志模块

级别支持: TRACE/DEBUG/INFO/WARNING/ERROR/CRITICAL (兼容别名 FATAL -> CRITICAL)

使用：进程入口先调用 setup_logging 配置日志，其余模块直接 logger.info(...) 写日志。
未调用 setup_logging 时 (例如在测试中) 沿用 loguru 默认的 stderr 输出。

文件输出:
- <log_file>: 全部日志
- <stem>_error<suffix>: ERROR 及以上
- <stem>_reminders<suffix>: 提醒发送、重发与恢复的记录，单独长期保留便于核对服药提醒是否送达
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Literal, Union

from loguru import logger

LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "FATAL"]

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level:<8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | "
    "{name}:{function}:{line} - {message}"
)

REMINDER_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS!UTC} UTC | {level:<8} | {message}"

# 只收 medassist.reminders 包 (clock / pending / scheduler) 的日志
REMINDER_LOGGER_PREFIX = "medassist.reminders"

_LEVEL_ALIAS = {"FATAL": "CRITICAL"}


def _normalize_level(level: Union[str, LogLevel]) -> str:
    return _LEVEL_ALIAS.get(str(level).upper(), str(level).upper())


def _file_handler(
    path: Path,
    *,
    level: str,
    retention: str,
    rotation: str = "10 MB",
    fmt: str = FILE_FORMAT,
    name_filter: str | None = None,
) -> dict:
    handler = {
        "sink": path,
        "level": level,
        "format": fmt,
        "rotation": rotation,
        "retention": retention,
        "compression": "zip",
        "encoding": "utf-8",
        "enqueue": True,  # 调度循环与消息处理任务并发写日志
    }
    if name_filter is not None:
        handler["filter"] = name_filter
    return handler


def setup_logging(
    log_level: LogLevel,
    log_file: Union[str, Path],
    console_level: LogLevel = "INFO",
) -> None:
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    file_level = _normalize_level(log_level)
    console_lv = _normalize_level(console_level)

    error_log_file = log_file.with_name(f"{log_file.stem}_error{log_file.suffix}")
    reminder_log_file = log_file.with_name(f"{log_file.stem}_reminders{log_file.suffix}")

    logger.configure(
        handlers=[
            {
                "sink": sys.stderr,
                "level": console_lv,
                "format": CONSOLE_FORMAT,
                "colorize": True,
            },
            _file_handler(log_file, level=file_level, retention="30 days"),
            _file_handler(error_log_file, level="ERROR", retention="90 days"),
            # 按天切分，每天一个文件
            _file_handler(
                reminder_log_file,
                level="INFO",
                retention="365 days",
                rotation="00:00",
                fmt=REMINDER_FORMAT,
                name_filter=REMINDER_LOGGER_PREFIX,
            ),
        ]
    )


__all__ = ["setup_logging", "logger"]
