"""
本文件用于解析新闻正文：按来源策略在 RSS 摘要与全文提取之间选择，并提供多级兜底。
主要类:
- `SourcePolicy`: 来源提取策略（总是升级全文 / 优先使用摘要）
- `ContentExtractor`: 正文提取能力接口（`extract(html, base_url) -> str`）
- `ReadabilityExtractor`: 基于 readability-lxml 的默认实现
- `ArticleExtractor`: 正文解析器
"""

import asyncio
import enum
from typing import Iterable, Optional, Protocol

import aiohttp
from lxml import html as lxml_html
from readability import Document

from app.core.logger import setup_logger
from app.utils.text_normalizer import collapse_whitespace, strip_html_to_text

logger = setup_logger("ExtractService")

UPGRADE_MIN_CHARS = 200
SNIPPET_MIN_CHARS = 40
DEFAULT_MAX_HTML_BYTES = 2_500_000

PAGE_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) MarketPulse/0.1",
    "Accept": "text/html,application/xhtml+xml",
}


class SourcePolicy(str, enum.Enum):
    ALWAYS_UPGRADE = "always_upgrade"
    SNIPPET_PREFERRED = "snippet_preferred"


class ContentExtractor(Protocol):
    def extract(self, html: str, base_url: str) -> str:
        ...


class ReadabilityExtractor:
    """readability-lxml 正文提取，返回折叠空白后的纯文本。"""

    def extract(self, html: str, base_url: str) -> str:
        doc = Document(html, url=base_url)
        summary_html = doc.summary(html_partial=True)
        if not summary_html or not summary_html.strip():
            return ""
        tree = lxml_html.fromstring(summary_html)
        return collapse_whitespace(tree.text_content())


class ArticleExtractor:
    """
    输入:
    - `content_extractor`: 正文提取能力（默认 `ReadabilityExtractor`）
    - `always_upgrade_sources`: 总是尝试全文提取的来源名单（RSS 摘要很短的通讯社）
    - `max_html_bytes`: 单页 HTML 读取上限，超出部分截断
    - `timeout`: 单页请求超时（秒）

    输出:
    - 正文解析器实例

    作用:
    - 决定最终使用 RSS 摘要还是全文；提取失败不抛异常，只返回 None
    """

    def __init__(
        self,
        content_extractor: Optional[ContentExtractor] = None,
        always_upgrade_sources: Iterable[str] = (),
        max_html_bytes: int = DEFAULT_MAX_HTML_BYTES,
        timeout: float = 20,
    ) -> None:
        self.content_extractor = content_extractor or ReadabilityExtractor()
        self.always_upgrade_sources = {s.strip().lower() for s in always_upgrade_sources}
        self.max_html_bytes = max_html_bytes
        self.timeout = timeout

    def policy_for(self, source_name: Optional[str]) -> SourcePolicy:
        if (source_name or "").strip().lower() in self.always_upgrade_sources:
            return SourcePolicy.ALWAYS_UPGRADE
        return SourcePolicy.SNIPPET_PREFERRED

    async def fetch_html(self, session: aiohttp.ClientSession, url: str) -> Optional[str]:
        """
        输入:
        - `session`: HTTP 会话
        - `url`: 文章页地址

        输出:
        - HTML 文本（超过 `max_html_bytes` 的部分被截断）；非 2xx 返回 None

        作用:
        - 分块读取页面，限制单页内存占用
        """

        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with session.get(url, headers=PAGE_HEADERS, timeout=timeout) as resp:
            if resp.status < 200 or resp.status >= 300:
                logger.debug(f"   ⏭️ 页面返回 HTTP {resp.status}: {url}")
                return None
            buf = bytearray()
            async for chunk in resp.content.iter_chunked(64 * 1024):
                buf.extend(chunk)
                if len(buf) >= self.max_html_bytes:
                    logger.debug(f"   ✂️ 页面超过 {self.max_html_bytes} 字节，已截断: {url}")
                    break
            raw = bytes(buf[: self.max_html_bytes])
            encoding = resp.charset or "utf-8"
        try:
            return raw.decode(encoding, errors="replace")
        except LookupError:
            return raw.decode("utf-8", errors="replace")

    async def extract_full_text(self, session: aiohttp.ClientSession, url: str) -> Optional[str]:
        """
        输入:
        - `session`: HTTP 会话
        - `url`: 文章页地址

        输出:
        - 全文纯文本；网络或解析异常返回 None

        作用:
        - 先用结构化提取器，结果不足 200 字符时退回到粗粒度标签剥离
        """

        try:
            html = await self.fetch_html(session, url)
            if not html:
                return None
            text = self.content_extractor.extract(html, url) or ""
            if len(text) < UPGRADE_MIN_CHARS:
                fallback = strip_html_to_text(html)
                if len(fallback) > len(text):
                    text = fallback
            return text or None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"   ⚠️ 全文抓取失败 {url}: {e}")
            return None
        except Exception as e:
            logger.warning(f"⚠️ 全文解析异常 {url}: {e}")
            return None

    async def resolve(
        self,
        session: aiohttp.ClientSession,
        url: str,
        feed_snippet: Optional[str],
        policy: SourcePolicy,
    ) -> Optional[str]:
        """
        输入:
        - `session`: HTTP 会话
        - `url`: 文章地址
        - `feed_snippet`: RSS 提供的摘要/正文片段
        - `policy`: 来源策略

        输出:
        - 选中的正文（尚未归一化）；没有任何可用内容时返回 None

        作用:
        - ALWAYS_UPGRADE: 全文 >= 200 字符则用全文，否则保留摘要（不论多短）
        - SNIPPET_PREFERRED: 摘要 >= 40 字符直接使用，否则尝试一次全文并取较长者
        """

        snippet = (feed_snippet or "").strip() or None

        if policy == SourcePolicy.ALWAYS_UPGRADE:
            full_text = await self.extract_full_text(session, url)
            if full_text and len(full_text) >= UPGRADE_MIN_CHARS:
                return full_text
            return snippet

        if snippet and len(snippet) >= SNIPPET_MIN_CHARS:
            return snippet

        full_text = await self.extract_full_text(session, url)
        candidates = [c for c in (full_text, snippet) if c]
        if not candidates:
            return None
        return max(candidates, key=len)
