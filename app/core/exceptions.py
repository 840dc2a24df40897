"""
本文件用于定义项目统一的业务异常基类，便于上层统一处理。
主要类:
- `MarketPulseError`: 业务异常基类
- `ConfigurationError`: 配置缺失/非法导致任务无法启动
- `AIConfigurationError`: AI 配置相关异常
- `FeedFetchError`: 单个 RSS 源在重试耗尽后仍抓取失败
- `FeedParseError`: RSS 响应无法解析为 RSS/Atom 文档
- `LLMResponseError`: 大模型返回内容无法解析
- `RunPersistenceError`: 聚类结果落库过程中某一步失败
"""

from typing import Optional


class MarketPulseError(Exception):
    """
    输入:
    - 业务错误信息

    输出:
    - 异常对象

    作用:
    - 作为项目统一的业务异常基类，便于 API 层集中捕获与转换
    """

    pass


class ConfigurationError(MarketPulseError):
    pass


class AIConfigurationError(MarketPulseError):
    """
    输入:
    - AI 配置错误信息

    输出:
    - 异常对象

    作用:
    - 标识 AI 服务配置错误（如 API Key 缺失或无效）
    """
    pass


class FeedFetchError(MarketPulseError):
    def __init__(self, feed_name: str, attempts: int, last_error: Optional[BaseException] = None) -> None:
        self.feed_name = feed_name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{feed_name}: 抓取失败 (共尝试 {attempts} 次): {last_error}")


class LLMResponseError(MarketPulseError):
    """
    输入:
    - `message`: 错误说明
    - `raw`: 模型原始返回（截断后用于排查）

    输出:
    - 异常对象

    作用:
    - 标识模型返回的 JSON 不合法，调用方据此返回 502 与原始片段
    """

    def __init__(self, message: str, raw: str = "") -> None:
        self.raw = raw
        super().__init__(message)


class RunPersistenceError(MarketPulseError):
    def __init__(self, step: str, cause: BaseException) -> None:
        self.step = step
        self.cause = cause
        super().__init__(f"聚类结果落库失败 (步骤: {step}): {cause}")


class FeedParseError(MarketPulseError):
    """
    输入:
    - 解析失败说明

    输出:
    - 异常对象

    作用:
    - 标识响应内容不是 RSS/Atom 文档；抓取器将其视为可重试的失败
    """

    pass
