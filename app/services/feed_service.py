"""
本文件用于实现 RSS/Atom 源的加载、抓取（带重试与线性退避）与解析。
主要类/函数:
- `load_feeds`: 从 `data/feeds.json` 读取源配置
- `parse_feed`: 将 RSS/Atom 文本解析为 `FeedItem` 列表
- `FeedFetcher`: 单源抓取器，重试耗尽后抛出聚合后的 `FeedFetchError`
"""

import asyncio
import json
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Union

import aiohttp
from bs4 import BeautifulSoup
from pydantic import ValidationError

from app.core.exceptions import ConfigurationError, FeedFetchError, FeedParseError
from app.core.logger import setup_logger
from app.schemas.feed import Feed, FeedItem
from app.utils.text_normalizer import strip_html_to_text
from app.utils.tools import is_http_url

logger = setup_logger("FeedService")

FEED_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; MarketPulse/0.1; RSS reader; +https://github.com/marketpulse)",
    "Accept": "application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.8, */*;q=0.5",
}


def load_feeds(path: Path) -> List[Feed]:
    """
    输入:
    - `path`: 源配置文件路径（JSON 数组，每项包含 name/url）

    输出:
    - `Feed` 列表

    作用:
    - 读取静态源配置；文件缺失或格式非法时抛出 `ConfigurationError`，阻止本轮抓取启动
    """

    if not path.exists():
        raise ConfigurationError(f"未找到 RSS 源配置文件: {path}")
    try:
        with path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"读取 RSS 源配置失败: {e}") from e

    if not isinstance(raw, list):
        raise ConfigurationError("RSS 源配置顶层必须为数组")
    try:
        feeds = [Feed.model_validate(item) for item in raw]
    except ValidationError as e:
        raise ConfigurationError(f"RSS 源配置格式错误: {e}") from e
    if not feeds:
        raise ConfigurationError("RSS 源配置为空")
    return feeds


def _child_text(node, *names: str) -> Optional[str]:
    for name in names:
        elem = node.find(name, recursive=False)
        if elem is not None and elem.text and elem.text.strip():
            return elem.text.strip()
    return None


def _item_link(node) -> Optional[str]:
    links = node.find_all("link", recursive=False)
    # Atom: 优先 rel="alternate"（或未声明 rel）的 href
    for link in links:
        href = link.get("href")
        if href and link.get("rel", "alternate") == "alternate":
            return href.strip()
    for link in links:
        if link.get("href"):
            return link["href"].strip()
        if link.text and link.text.strip():
            return link.text.strip()

    guid = node.find("guid", recursive=False)
    if guid is not None and guid.get("isPermaLink", "true").lower() != "false":
        if is_http_url(guid.text):
            return guid.text.strip()
    return None


def parse_feed(body: Union[str, bytes]) -> List[FeedItem]:
    """
    输入:
    - `body`: 响应体（RSS 2.0 / RDF / Atom）

    输出:
    - `FeedItem` 列表

    作用:
    - 使用 BeautifulSoup(lxml-xml) 解析条目；不是 RSS/Atom 文档时抛出 `FeedParseError`
    """

    soup = BeautifulSoup(body, "lxml-xml")
    if soup.find(["rss", "feed", "RDF", "channel"]) is None:
        raise FeedParseError("响应内容不是 RSS/Atom 文档")

    nodes = soup.find_all("item") or soup.find_all("entry")
    items: List[FeedItem] = []
    for node in nodes:
        content = _child_text(node, "content:encoded", "encoded", "content")
        description = _child_text(node, "description", "summary")
        snippet = strip_html_to_text(description or content) or None

        items.append(
            FeedItem(
                title=_child_text(node, "title"),
                link=_item_link(node),
                iso_date=_child_text(node, "published", "updated", "dc:date", "date"),
                pub_date=_child_text(node, "pubDate"),
                snippet=snippet,
                content=content,
            )
        )
    return items


class FeedFetcher:
    """
    输入:
    - `retries`: 失败后的重试次数（总尝试次数 = retries + 1）
    - `base_delay`: 线性退避基数（秒），第 i 次重试前等待 i * base_delay
    - `timeout`: 单次请求超时（秒）
    - `sleep`: 等待函数（测试中可替换）

    输出:
    - 抓取器实例

    作用:
    - 负责单个源的 HTTP 抓取与解析；跨源的隔离由编排层并发 gather 保证
    """

    def __init__(
        self,
        retries: int = 2,
        base_delay: float = 0.6,
        timeout: float = 15,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.retries = max(0, retries)
        self.base_delay = base_delay
        self.timeout = timeout
        self._sleep = sleep

    async def _get(self, session: aiohttp.ClientSession, url: str) -> bytes:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with session.get(url, headers=FEED_HEADERS, timeout=timeout) as resp:
            resp.raise_for_status()
            return await resp.read()

    async def fetch(self, session: aiohttp.ClientSession, feed: Feed) -> List[FeedItem]:
        """
        输入:
        - `session`: 复用的 HTTP 会话
        - `feed`: 源配置

        输出:
        - 解析后的条目列表

        作用:
        - 抓取并解析单个源；非 2xx、超时、解析失败均会重试，全部失败后抛出一个 `FeedFetchError`
        """

        attempts = self.retries + 1
        last_error: Optional[BaseException] = None
        for attempt in range(attempts):
            if attempt > 0:
                await self._sleep(attempt * self.base_delay)
            try:
                body = await self._get(session, feed.url)
                items = parse_feed(body)
                logger.debug(f"   📰 {feed.name}: 解析到 {len(items)} 条")
                return items
            except (aiohttp.ClientError, asyncio.TimeoutError, FeedParseError) as e:
                last_error = e
                logger.warning(f"⚠️ 抓取失败 {feed.name} ({attempt + 1}/{attempts}): {e}")

        raise FeedFetchError(feed.name, attempts, last_error)
