"""
本文件用于提供通用工具函数：URL 规范化与聚合跳转链接解包、域名与哈希计算、发布时间解析、数值与文本截断。
主要函数:
- `unwrap_link`: 解包聚合平台的跳转链接，取出真实发布方 URL
- `canonicalize_url`: 生成用于去重的规范 URL
- `get_domain` / `url_hash`: 域名与内容哈希键
- `parse_timestamp`: 优先解析 ISO 字段，失败再解析宽松格式日期
- `truncate_text` / `safe_number`: 提示词与落库时使用的小工具
"""

from __future__ import annotations

import email.utils
import hashlib
import math
import re
from datetime import date, datetime, timezone
from typing import Any, Optional
from urllib.parse import parse_qs, parse_qsl, urlencode, urlsplit, urlunsplit
from zoneinfo import ZoneInfo

from dateutil import parser as date_parser

# 会把真实链接放在查询参数里的聚合/跳转域名
AGGREGATOR_HOSTS = {
    "news.google.com",
    "google.com",
    "bing.com",
    "l.facebook.com",
    "out.reddit.com",
    "feedproxy.google.com",
}
REDIRECT_PARAMS = ("url", "u", "q")

TRACKING_PARAM_PREFIXES = ("utm_",)
TRACKING_PARAMS = {"gclid", "fbclid", "mc_cid", "mc_eid"}


def _strip_www(host: str) -> str:
    return host[4:] if host.startswith("www.") else host


def is_http_url(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        parts = urlsplit(value.strip())
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def unwrap_link(link: str, max_depth: int = 3) -> str:
    """
    输入:
    - `link`: RSS 条目中的原始链接
    - `max_depth`: 最多解包层数（防止循环跳转）

    输出:
    - 真实发布方 URL；无法解包时原样返回

    作用:
    - 处理形如 `https://news.google.com/url?url=https://...` 的聚合跳转链接
    """

    current = (link or "").strip()
    for _ in range(max_depth):
        try:
            parts = urlsplit(current)
        except ValueError:
            break
        host = _strip_www((parts.hostname or "").lower())
        if host not in AGGREGATOR_HOSTS:
            break
        params = parse_qs(parts.query)
        target = None
        for key in REDIRECT_PARAMS:
            values = params.get(key) or []
            if values and is_http_url(values[0]):
                target = values[0].strip()
                break
        if not target:
            break
        current = target
    return current


def canonicalize_url(href: str) -> str:
    """
    输入:
    - `href`: 已解包的文章链接

    输出:
    - 规范 URL（去首尾空白、协议/域名小写、去锚点与追踪参数）

    作用:
    - 作为 `articles.url` 唯一键，保证同一文章多次抓取只入库一次
    """

    href = (href or "").strip()
    try:
        parts = urlsplit(href)
    except ValueError:
        return href
    if not parts.scheme or not parts.netloc:
        return href

    query_pairs = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k.lower() not in TRACKING_PARAMS and not k.lower().startswith(TRACKING_PARAM_PREFIXES)
    ]
    return urlunsplit(
        (
            parts.scheme.lower(),
            parts.netloc.lower(),
            parts.path or "/",
            urlencode(query_pairs, doseq=True),
            "",
        )
    )


def get_domain(href: str) -> Optional[str]:
    try:
        host = urlsplit((href or "").strip()).hostname
    except ValueError:
        return None
    if not host:
        return None
    return _strip_www(host.lower())


def url_hash(href: str) -> str:
    return hashlib.sha256((href or "").strip().encode("utf-8")).hexdigest()


def domain_matches(domain: Optional[str], expected: str) -> bool:
    if not domain:
        return False
    expected = _strip_www(expected.lower())
    return domain == expected or domain.endswith("." + expected)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_iso(value: str) -> Optional[datetime]:
    try:
        return _as_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
    except ValueError:
        return None


def _parse_loose(value: str) -> Optional[datetime]:
    value = value.strip()
    try:
        return _as_utc(email.utils.parsedate_to_datetime(value))
    except (TypeError, ValueError, IndexError):
        pass
    try:
        return _as_utc(date_parser.parse(value))
    except (ValueError, OverflowError, TypeError):
        return None


def parse_timestamp(iso_value: Optional[str], loose_value: Optional[str] = None) -> Optional[datetime]:
    """
    输入:
    - `iso_value`: 结构化 ISO 时间字段（如 Atom `published` / `dc:date`）
    - `loose_value`: 宽松格式时间字段（如 RSS `pubDate`）

    输出:
    - UTC 时间；两者都无法解析时返回 None

    作用:
    - 统一发布时间解析，供时效过滤与入库使用
    """

    if iso_value:
        parsed = _parse_iso(iso_value)
        if parsed is None:
            parsed = _parse_loose(iso_value)
        if parsed is not None:
            return parsed
    if loose_value:
        return _parse_loose(loose_value)
    return None


_WS = re.compile(r"\s+")


def truncate_text(value: Optional[str], limit: int) -> str:
    return _WS.sub(" ", value or "").strip()[:limit]


def safe_number(value: Any, fallback: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if math.isfinite(number) else fallback


def local_date(moment: datetime, tz_name: str) -> date:
    """按指定时区取日期，用于每日聚类与运行日期。"""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(ZoneInfo(tz_name)).date()
