"""
本文件用于加载项目运行配置：`.env` 可保存密钥，其余配置读取 `config.yaml`。
主要函数/类:
- `Settings`: 运行时配置模型（支持类型校验与默认值）
- `get_settings`: 获取配置单例（带缓存，仅在进程启动时调用）
- `get_missing_config_keys`: 计算关键配置缺失项（用于健康检查提示）
- `_normalize_yaml_config`: 将 YAML 配置键标准化为大写
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from app.utils.config_io import load_yaml_dict

BASE_DIR = Path(__file__).resolve().parents[2]
CONFIG_PATH = BASE_DIR / "config.yaml"


def _normalize_yaml_config(data: Dict[str, Any]) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for k, v in (data or {}).items():
        if isinstance(k, str):
            normalized[k.upper()] = v
        else:
            normalized[str(k).upper()] = v
    return normalized


class Settings(BaseSettings):
    """
    输入:
    - 构造参数、`config.yaml`、环境变量与 `.env` 文件中的配置项

    输出:
    - 统一的运行时配置对象

    作用:
    - 集中管理抓取、聚类与持久化所需的配置，并提供默认值与类型校验
    """

    APP_NAME: str = "MarketPulse"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    PORT: int = 8193

    DATABASE_URL: Optional[str] = None

    # 为空时接口不做鉴权
    CRON_SECRET: Optional[str] = None

    OPENAI_API_KEY: Optional[str] = None
    OPENAI_BASE_URL: Optional[str] = None
    NEWS_CLUSTER_MODEL: str = "gpt-5"
    LLM_TEMPERATURE: Optional[float] = 0.0
    LLM_TIMEOUT_SECONDS: float = 300.0
    NEWS_MODEL_PRICE_IN_PER_1K: float = 0.0
    NEWS_MODEL_PRICE_OUT_PER_1K: float = 0.0

    # 抓取配置
    FEEDS_FILE: str = "data/feeds.json"
    FRESHNESS_WINDOW_HOURS: float = 12
    FEED_RETRIES: int = 2
    FEED_RETRY_BASE_DELAY: float = 0.6
    FEED_TIMEOUT_SECONDS: float = 15
    EXTRACT_TIMEOUT_SECONDS: float = 20
    MAX_HTML_BYTES: int = 2_500_000
    MIN_CONTENT_CHARS: int = 70

    ALWAYS_UPGRADE_SOURCES: List[str] = ["Reuters", "AP News", "Bloomberg"]
    EXPECTED_PUBLISHER_DOMAINS: Dict[str, str] = {
        "Reuters": "reuters.com",
        "AP News": "apnews.com",
        "Bloomberg": "bloomberg.com",
    }
    VERIFY_PUBLISHER_DOMAIN: bool = False
    STICKY_DAILY_CLUSTER: bool = True

    # 聚类配置
    AUTO_CLUSTER_AFTER_INGEST: bool = True
    AUTO_CLUSTER_TIMEOUT_SECONDS: float = 330
    CLUSTER_WINDOW_HOURS: int = 12
    CLUSTER_TOP_N: int = 8
    CLUSTER_ARTICLE_LIMIT: int = 250
    CLUSTER_TIMEZONE: str = "Europe/London"
    SUMMARY_MAX_CHARS: int = 300
    SCORE_TOLERANCE: float = 0.01

    # 0 表示不启动进程内定时任务
    SCHEDULE_INTERVAL_MINUTES: int = 0

    model_config = SettingsConfigDict(
        env_file=str(BASE_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def yaml_settings():
            return _normalize_yaml_config(load_yaml_dict(CONFIG_PATH))

        return (
            init_settings,
            yaml_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    @property
    def feeds_path(self) -> Path:
        path = Path(self.FEEDS_FILE)
        if not path.is_absolute():
            path = BASE_DIR / path
        return path


def get_missing_config_keys(settings: Settings) -> List[str]:
    required_keys = [
        "DATABASE_URL",
        "OPENAI_API_KEY",
        "NEWS_CLUSTER_MODEL",
    ]

    missing: List[str] = []
    for k in required_keys:
        v = getattr(settings, k, None)
        if v is None:
            missing.append(k)
            continue
        if isinstance(v, str) and not v.strip():
            missing.append(k)
            continue
    return missing


@lru_cache()
def get_settings() -> Settings:
    """
    输入:
    - 无

    输出:
    - `Settings` 单例实例

    作用:
    - 进程启动时解析一次配置，之后以参数形式传递给各组件
    """

    return Settings()


def reload_settings() -> Settings:
    """
    输入:
    - 无

    输出:
    - 重新加载后的 Settings 实例

    作用:
    - 清除 get_settings 的缓存并重新加载配置
    """
    get_settings.cache_clear()
    return get_settings()
