"""
本文件用于初始化并提供项目统一日志能力（根 logger 配置与命名 logger 获取）。
主要函数:
- `configure_logging`: 初始化根日志格式与等级
- `setup_logger`: 获取具备统一格式的命名 logger
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_configured_level: int = logging.INFO


def _resolve_level(level: str) -> int:
    """
    输入:
    - `level`: 日志等级字符串（如 INFO/DEBUG）

    输出:
    - `logging` 对应的等级整数

    作用:
    - 将字符串日志等级转换为 `logging` 可用的等级值
    """

    return getattr(logging, (level or "").upper(), logging.INFO)


def configure_logging(level: str = "INFO") -> None:
    """
    输入:
    - `level`: 日志等级字符串（来自配置 `LOG_LEVEL`）

    输出:
    - 无

    作用:
    - 初始化根 logger 的输出格式与等级，并同步常见库的日志等级
    """

    global _configured_level
    log_level = _resolve_level(level)
    _configured_level = log_level

    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(log_level)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    else:
        for handler in root.handlers:
            handler.setLevel(log_level)

    root.setLevel(log_level)

    noisy_level = log_level
    if log_level == logging.INFO:
        noisy_level = logging.WARNING

    for name in (
        "uvicorn",
        "uvicorn.error",
        "uvicorn.access",
        "asyncio",
        "aiohttp",
        "openai",
        "httpx",
        "readability",
    ):
        logging.getLogger(name).setLevel(noisy_level)


def setup_logger(name: str) -> logging.Logger:
    """
    输入:
    - `name`: logger 名称

    输出:
    - `logging.Logger` 实例

    作用:
    - 创建并返回指定名称的 logger，等级跟随 `configure_logging`
    """

    logger = logging.getLogger(name)
    if logger.level == logging.NOTSET:
        logger.setLevel(_configured_level)
    return logger


logger = setup_logger("MarketPulse")
