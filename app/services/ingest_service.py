"""
本文件用于编排 RSS 抓取入库流程：多源并发抓取，单源内逐条处理（解包链接 -> 时效过滤 -> 正文解析 -> 归一化 -> 入库）。
主要类:
- `IngestionReport`: 一次抓取的汇总结果（仅作为返回值，不落库）
- `IngestionPipeline`: 抓取编排器
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import aiohttp
from sqlalchemy import case, func, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.database import dialect_insert
from app.core.exceptions import ConfigurationError
from app.core.logger import setup_logger
from app.models.article import Article
from app.models.cluster import CLUSTER_KIND_DAILY, Cluster, ClusterMember
from app.schemas.feed import Feed, FeedItem
from app.services.extract_service import ArticleExtractor
from app.services.feed_service import FeedFetcher, load_feeds
from app.utils.text_normalizer import TextNormalizer
from app.utils.tools import (
    canonicalize_url,
    domain_matches,
    get_domain,
    is_http_url,
    local_date,
    parse_timestamp,
    unwrap_link,
    url_hash,
)

logger = setup_logger("IngestService")

NO_CONTENT_PLACEHOLDER = "(no content)"
DAILY_CLUSTER_LABEL = "Top stories"


@dataclass
class IngestionReport:
    window_start: datetime
    window_end: datetime
    articles_seen: int = 0
    articles_upserted: int = 0
    links_upserted: int = 0
    cluster_id: Optional[int] = None
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "articlesSeen": self.articles_seen,
            "articlesUpserted": self.articles_upserted,
            "linksUpserted": self.links_upserted,
            "clusterId": self.cluster_id,
            "errors": list(self.errors),
        }


@dataclass
class _FeedOutcome:
    seen: int = 0
    upserted: int = 0
    links: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)


class IngestionPipeline:
    """
    输入:
    - `session_factory`: 异步会话工厂
    - `fetcher` / `extractor` / `normalizer`: 抓取、正文解析与归一化组件
    - `feeds` / `feeds_path`: 源列表，或每次运行时读取的源配置文件
    - 其余为时效窗口、最短正文、发布方域名校验与每日聚类开关

    输出:
    - 抓取编排器实例

    作用:
    - 单源失败、单条失败都只记录到 `errors`，不会中断其他源或后续条目
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fetcher: FeedFetcher,
        extractor: ArticleExtractor,
        normalizer: Optional[TextNormalizer] = None,
        feeds: Optional[Sequence[Feed]] = None,
        feeds_path: Optional[Path] = None,
        freshness_window_hours: float = 12,
        min_content_chars: int = 70,
        expected_publisher_domains: Optional[Mapping[str, str]] = None,
        verify_publisher_domain: bool = False,
        sticky_daily_cluster: bool = True,
        cluster_timezone: str = "Europe/London",
        http_session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ) -> None:
        self.session_factory = session_factory
        self.fetcher = fetcher
        self.extractor = extractor
        self.normalizer = normalizer or TextNormalizer()
        self.feeds = list(feeds) if feeds is not None else None
        self.feeds_path = feeds_path
        self.freshness_window = timedelta(hours=freshness_window_hours)
        self.min_content_chars = min_content_chars
        self.expected_publisher_domains = dict(expected_publisher_domains or {})
        self.verify_publisher_domain = verify_publisher_domain
        self.sticky_daily_cluster = sticky_daily_cluster
        self.cluster_timezone = cluster_timezone
        self.http_session_factory = http_session_factory or self._default_http_session

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        **overrides: Any,
    ) -> "IngestionPipeline":
        options: Dict[str, Any] = dict(
            fetcher=FeedFetcher(
                retries=settings.FEED_RETRIES,
                base_delay=settings.FEED_RETRY_BASE_DELAY,
                timeout=settings.FEED_TIMEOUT_SECONDS,
            ),
            extractor=ArticleExtractor(
                always_upgrade_sources=settings.ALWAYS_UPGRADE_SOURCES,
                max_html_bytes=settings.MAX_HTML_BYTES,
                timeout=settings.EXTRACT_TIMEOUT_SECONDS,
            ),
            feeds_path=settings.feeds_path,
            freshness_window_hours=settings.FRESHNESS_WINDOW_HOURS,
            min_content_chars=settings.MIN_CONTENT_CHARS,
            expected_publisher_domains=settings.EXPECTED_PUBLISHER_DOMAINS,
            verify_publisher_domain=settings.VERIFY_PUBLISHER_DOMAIN,
            sticky_daily_cluster=settings.STICKY_DAILY_CLUSTER,
            cluster_timezone=settings.CLUSTER_TIMEZONE,
        )
        options.update(overrides)
        return cls(session_factory, **options)

    @staticmethod
    def _default_http_session() -> aiohttp.ClientSession:
        return aiohttp.ClientSession(connector=aiohttp.TCPConnector(limit=50))

    def _load_feeds(self) -> List[Feed]:
        if self.feeds is not None:
            if not self.feeds:
                raise ConfigurationError("RSS 源列表为空")
            return list(self.feeds)
        if self.feeds_path is None:
            raise ConfigurationError("未配置 RSS 源")
        return load_feeds(self.feeds_path)

    async def run(self, now: Optional[datetime] = None) -> IngestionReport:
        """
        输入:
        - `now`: 本次运行的参考时间（默认当前 UTC 时间）

        输出:
        - `IngestionReport`

        作用:
        - 并发抓取所有源并等待全部结束；只有源配置/数据库不可用这类无法启动的错误才会抛出
        """

        feeds = self._load_feeds()
        now = now or datetime.now(timezone.utc)
        report = IngestionReport(window_start=now - self.freshness_window, window_end=now)

        if self.sticky_daily_cluster:
            report.cluster_id = await self.ensure_daily_cluster(local_date(now, self.cluster_timezone))

        logger.info(f"📡 开始抓取 {len(feeds)} 个 RSS 源 (时效窗口起点: {report.window_start.isoformat()})")
        async with self.http_session_factory() as http:
            results = await asyncio.gather(
                *(self._ingest_feed(http, feed, report.window_start, report.cluster_id) for feed in feeds),
                return_exceptions=True,
            )

        for feed, result in zip(feeds, results):
            if isinstance(result, BaseException):
                logger.error(f"❌ 源 {feed.name} 处理失败: {result}")
                report.errors.append({"source": feed.name, "error": str(result)})
                continue
            report.articles_seen += result.seen
            report.articles_upserted += result.upserted
            report.links_upserted += result.links
            report.errors.extend(result.errors)

        logger.info(
            f"✅ 抓取完成: 条目 {report.articles_seen}, 入库 {report.articles_upserted}, "
            f"关联 {report.links_upserted}, 错误 {len(report.errors)}"
        )
        return report

    async def _ingest_feed(
        self,
        http: aiohttp.ClientSession,
        feed: Feed,
        window_start: datetime,
        cluster_id: Optional[int],
    ) -> _FeedOutcome:
        items = await self.fetcher.fetch(http, feed)
        outcome = _FeedOutcome()
        for item in items:
            outcome.seen += 1
            try:
                article_id = await self._process_item(http, feed, item, window_start)
                if article_id is None:
                    continue
                outcome.upserted += 1
                if cluster_id is not None:
                    await self.link_article(cluster_id, article_id)
                    outcome.links += 1
            except Exception as e:
                logger.warning(f"⚠️ [{feed.name}] 条目处理失败 {item.link}: {e}")
                outcome.errors.append({"source": feed.name, "error": str(e)})
        return outcome

    async def _process_item(
        self,
        http: aiohttp.ClientSession,
        feed: Feed,
        item: FeedItem,
        window_start: datetime,
    ) -> Optional[int]:
        """
        输入:
        - `http`: 共享 HTTP 会话
        - `feed`: 当前源
        - `item`: RSS 条目
        - `window_start`: 时效窗口起点

        输出:
        - 入库后的文章 id；被过滤时返回 None

        作用:
        - 单条目完整处理流程
        """

        if not is_http_url(item.link):
            logger.debug(f"   ⏭️ [{feed.name}] 条目缺少有效链接: {item.title}")
            return None

        target = unwrap_link(item.link)
        domain = get_domain(target)
        expected = self.expected_publisher_domains.get(feed.name)
        if expected and not domain_matches(domain, expected):
            if self.verify_publisher_domain:
                logger.warning(f"⚠️ [{feed.name}] 发布方域名不匹配 ({domain} != {expected})，已丢弃: {target}")
                return None
            logger.debug(f"   🔎 [{feed.name}] 发布方域名不匹配 ({domain} != {expected}): {target}")

        url = canonicalize_url(target)
        published_at = parse_timestamp(item.iso_date, item.pub_date)
        if published_at is not None and published_at < window_start:
            logger.debug(f"   ⏭️ [{feed.name}] 超出时效窗口 ({published_at.isoformat()}): {url}")
            return None

        policy = self.extractor.policy_for(feed.name)
        raw = await self.extractor.resolve(http, url, item.snippet, policy)
        if not raw:
            raw = item.title or NO_CONTENT_PLACEHOLDER

        content = self.normalizer.normalize(raw)
        if len(content) < self.min_content_chars:
            logger.debug(f"   ⏭️ [{feed.name}] 正文过短 ({len(content)} 字符): {url}")
            return None

        return await self.upsert_article(
            url=url,
            domain=get_domain(url),
            title=self.normalizer.normalize(item.title) or None,
            source=feed.name,
            published_at=published_at,
            content=content,
        )

    async def upsert_article(
        self,
        url: str,
        domain: Optional[str],
        title: Optional[str],
        source: Optional[str],
        published_at: Optional[datetime],
        content: str,
    ) -> int:
        """
        输入:
        - 文章字段（`url` 为规范 URL）

        输出:
        - 文章 id

        作用:
        - 按 URL 幂等 upsert；已存在时仅当新正文更长才覆盖正文
        """

        now = datetime.now(timezone.utc)
        async with self.session_factory() as db:
            stmt = dialect_insert(db, Article).values(
                url=url,
                domain=domain,
                title=title,
                source=source,
                published_at=published_at,
                content=content,
                content_hash=url_hash(url),
                created_at=now,
                updated_at=now,
            )
            excluded = stmt.excluded
            stmt = stmt.on_conflict_do_update(
                index_elements=["url"],
                set_={
                    "domain": excluded.domain,
                    "title": func.coalesce(excluded.title, Article.title),
                    "source": excluded.source,
                    "published_at": func.coalesce(excluded.published_at, Article.published_at),
                    "content_hash": excluded.content_hash,
                    "content": case(
                        (
                            func.length(func.coalesce(excluded.content, ""))
                            > func.length(func.coalesce(Article.content, "")),
                            excluded.content,
                        ),
                        else_=Article.content,
                    ),
                    "updated_at": now,
                },
            ).returning(Article.id)
            article_id = (await db.execute(stmt)).scalar_one()
            await db.commit()
        return article_id

    async def ensure_daily_cluster(self, cluster_date: date) -> int:
        """
        输入:
        - `cluster_date`: 聚类日期

        输出:
        - 当日固定聚类 id（不存在则创建）

        作用:
        - 每天一个 "Top stories" 聚类，抓取到的文章都会挂到它下面；
          依赖部分唯一索引，并发抓取同时创建时只有一个插入生效
        """

        async with self.session_factory() as db:
            stmt = (
                dialect_insert(db, Cluster)
                .values(
                    label=DAILY_CLUSTER_LABEL,
                    cluster_date=cluster_date,
                    kind=CLUSTER_KIND_DAILY,
                    created_at=datetime.now(timezone.utc),
                )
                .on_conflict_do_nothing(
                    index_elements=["cluster_date"],
                    index_where=text(f"kind = '{CLUSTER_KIND_DAILY}'"),
                )
                .returning(Cluster.id)
            )
            cluster_id = (await db.execute(stmt)).scalar_one_or_none()
            if cluster_id is None:
                existing = await db.execute(
                    select(Cluster.id).where(Cluster.cluster_date == cluster_date, Cluster.kind == CLUSTER_KIND_DAILY)
                )
                cluster_id = existing.scalar_one()
            else:
                logger.info(f"🆕 创建每日聚类 #{cluster_id} ({cluster_date.isoformat()})")
            await db.commit()
            return cluster_id

    async def link_article(self, cluster_id: int, article_id: int) -> None:
        async with self.session_factory() as db:
            stmt = (
                dialect_insert(db, ClusterMember)
                .values(cluster_id=cluster_id, article_id=article_id, score=1.0)
                .on_conflict_do_nothing(index_elements=["cluster_id", "article_id"])
            )
            await db.execute(stmt)
            await db.commit()
