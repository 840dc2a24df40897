"""
本文件用于实现大模型聚类运行：读取时间窗口内的新闻，构造提示词，调用模型，校验评分并落库为运行快照。
主要类:
- `ArticleRow`: 提示词所需的文章字段
- `ClusterService`: 聚类运行与当日快照查询
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import LLMResponseError
from app.core.logger import setup_logger
from app.core.prompts import CLUSTER_PROMPT, render_prompt
from app.models.article import Article
from app.models.cluster import Cluster, ClusterInRun, ClusterMember, ClusterRun, Summary, TopDailyCluster
from app.schemas.cluster import LLMResult
from app.services.ai_service import AIService
from app.services.run_persister import RunContext, RunPersister
from app.services.scoring import ImpactScorer
from app.utils.tools import local_date, safe_number, truncate_text

logger = setup_logger("ClusterService")

MIN_WINDOW_HOURS, MAX_WINDOW_HOURS = 1, 48
MIN_TOP_N, MAX_TOP_N = 1, 12
EMBED_TEXT_CHARS = 300
SUMMARY_TEXT_CHARS = 400
RAW_PREVIEW_CHARS = 2000


@dataclass
class ArticleRow:
    id: int
    title: str
    source: Optional[str]
    published_at: Optional[datetime]
    content: Optional[str]


def hash_prompt(prompt: str) -> str:
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:16]


def clamp_option(value: Any, low: float, high: float, default: float) -> float:
    # 非数值（含 None、布尔）一律使用默认值
    if value is None or isinstance(value, bool):
        return default
    number = safe_number(value, fallback=float("nan"))
    if number != number:
        return default
    return max(low, min(high, number))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class ClusterService:
    """
    输入:
    - `session_factory`: 异步会话工厂
    - `ai`: AI 服务
    - `persister`: 运行快照落库器
    - `scorer`: 评分校验器
    - 其余为默认窗口、前 N、查询上限与运行日期时区

    输出:
    - 聚类服务实例

    作用:
    - 每次运行最多调用一次模型；模型返回非法 JSON 时抛出 `LLMResponseError`，零聚类视为正常空结果
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ai: AIService,
        persister: RunPersister,
        scorer: Optional[ImpactScorer] = None,
        default_window_hours: int = 12,
        default_top_n: int = 8,
        article_limit: int = 250,
        timezone_name: str = "Europe/London",
    ) -> None:
        self.session_factory = session_factory
        self.ai = ai
        self.persister = persister
        self.scorer = scorer or ImpactScorer()
        self.default_window_hours = default_window_hours
        self.default_top_n = default_top_n
        self.article_limit = article_limit
        self.timezone_name = timezone_name

    async def load_articles(self, window_start: datetime, window_end: datetime) -> List[ArticleRow]:
        async with self.session_factory() as db:
            stmt = (
                select(Article.id, Article.title, Article.source, Article.published_at, Article.content)
                .where(
                    Article.published_at >= window_start,
                    Article.published_at <= window_end,
                    Article.title.is_not(None),
                )
                .order_by(desc(Article.published_at))
                .limit(self.article_limit)
            )
            rows = (await db.execute(stmt)).all()
        return [
            ArticleRow(id=r.id, title=r.title.strip(), source=r.source, published_at=r.published_at, content=r.content)
            for r in rows
            if r.title and r.title.strip()
        ]

    def build_prompt(
        self,
        articles: Sequence[ArticleRow],
        window_start: datetime,
        window_end: datetime,
        top_n: int,
    ) -> str:
        """
        输入:
        - `articles`: 窗口内文章
        - `window_start` / `window_end`: 聚类窗口
        - `top_n`: 需要生成摘要的聚类数

        输出:
        - 完整提示词（相同输入得到相同文本，用于指纹）

        作用:
        - 每篇文章附带 EMBED_TEXT（标题 + 正文前 300 字符）与 SUMMARY_TEXT（标题 + 正文前 400 字符）
        """

        lines = []
        for a in articles:
            src = f" | {a.source}" if a.source else ""
            pub = f" | {_iso(a.published_at)}" if a.published_at else ""
            lines.append(
                f"- [{a.id}] {a.title}{src}{pub}\n"
                f"  EMBED_TEXT: {a.title} - {truncate_text(a.content, EMBED_TEXT_CHARS)}\n"
                f"  SUMMARY_TEXT: {a.title} - {truncate_text(a.content, SUMMARY_TEXT_CHARS)}"
            )
        window_info = (
            f"Clustering window: {window_start.isoformat()} → {window_end.isoformat()} "
            f"(timezone: {self.timezone_name})"
        )
        return render_prompt(
            CLUSTER_PROMPT,
            top_n=top_n,
            embed_chars=EMBED_TEXT_CHARS,
            summary_chars=SUMMARY_TEXT_CHARS,
            window_info=window_info,
            listing="\n".join(lines),
        )

    @staticmethod
    def parse_result(text: str) -> LLMResult:
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError) as e:
            raise LLMResponseError("LLM returned invalid JSON.", raw=(text or "")[:RAW_PREVIEW_CHARS]) from e
        if not isinstance(data, dict):
            raise LLMResponseError("LLM returned a non-object JSON payload.", raw=text[:RAW_PREVIEW_CHARS])
        try:
            return LLMResult.model_validate(data)
        except ValidationError as e:
            raise LLMResponseError(f"LLM JSON does not match the expected schema: {e}", raw=text[:RAW_PREVIEW_CHARS]) from e

    async def run(
        self,
        window_hours: Any = None,
        top_n: Any = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        输入:
        - `window_hours`: 窗口小时数（1~48，非数值取默认）
        - `top_n`: 摘要聚类数（1~12，非数值取默认）
        - `now`: 参考时间（默认当前 UTC 时间）

        输出:
        - 运行结果字典（`status` 为 no_articles / no_clusters / persisted）

        作用:
        - 聚类全流程；落库失败抛出 `RunPersistenceError`
        """

        hours = clamp_option(window_hours, MIN_WINDOW_HOURS, MAX_WINDOW_HOURS, self.default_window_hours)
        top = int(clamp_option(top_n, MIN_TOP_N, MAX_TOP_N, self.default_top_n))
        window_end = now or datetime.now(timezone.utc)
        window_start = window_end - timedelta(hours=hours)
        model = self.ai.model

        articles = await self.load_articles(window_start, window_end)
        if not articles:
            logger.info(f"📭 窗口内没有可聚类的新闻 ({hours}h)")
            return {
                "ok": True,
                "status": "no_articles",
                "modelUsed": model,
                "message": "No articles in window; nothing to cluster.",
            }

        prompt = self.build_prompt(articles, window_start, window_end, top)
        prompt_hash = hash_prompt(prompt)
        logger.info(f"🧠 聚类开始: 文章 {len(articles)} 篇, 模型 {model}, 前 N={top}, 提示词指纹 {prompt_hash}")

        completion = await self.ai.complete_json(prompt)
        result = self.parse_result(completion.text)
        if not result.clusters:
            logger.info("📭 模型未返回任何聚类")
            return {
                "ok": True,
                "status": "no_clusters",
                "modelUsed": model,
                "message": "LLM produced zero clusters.",
            }

        warnings = self.scorer.apply(result.clusters, result.top_summaries)
        context = RunContext(
            run_date=local_date(window_end, self.timezone_name),
            window_start=window_start,
            window_end=window_end,
            model=model,
            prompt_hash=prompt_hash,
            top_n=top,
            article_ids={a.id for a in articles},
            tokens_in=completion.tokens_in,
            tokens_out=completion.tokens_out,
        )
        persisted = await self.persister.persist(result, context)

        return {
            "ok": True,
            "status": "persisted",
            "modelUsed": model,
            "runId": persisted.run_id,
            "windowStart": window_start.isoformat(),
            "windowEnd": window_end.isoformat(),
            "counts": {
                "articles": len(articles),
                "clusters_total": len(result.clusters),
                "top_n": len(persisted.top_ranks),
            },
            "top_ranks": persisted.top_ranks,
            "warnings": warnings + persisted.warnings,
        }

    async def latest_daily(self, today: Optional[date] = None) -> Dict[str, Any]:
        """
        输入:
        - `today`: 运行日期（默认按配置时区取当天）

        输出:
        - 当天最近一次运行的聚类排名、前 N 标记、摘要与成员文章

        作用:
        - 供首页/日报读取当日快照
        """

        today = today or local_date(datetime.now(timezone.utc), self.timezone_name)
        async with self.session_factory() as db:
            run = (
                await db.execute(
                    select(ClusterRun)
                    .where(ClusterRun.run_date == today)
                    .order_by(desc(ClusterRun.created_at), desc(ClusterRun.id))
                    .limit(1)
                )
            ).scalar_one_or_none()
            if run is None:
                return {"ok": True, "date": today.isoformat(), "run": None, "clusters": []}

            ranked = (
                await db.execute(
                    select(ClusterInRun, Cluster.label)
                    .join(Cluster, Cluster.id == ClusterInRun.cluster_id)
                    .where(ClusterInRun.run_id == run.id)
                    .order_by(ClusterInRun.rank)
                )
            ).all()
            top_ids = set(
                (await db.execute(select(TopDailyCluster.cluster_id).where(TopDailyCluster.run_id == run.id)))
                .scalars()
                .all()
            )
            summaries = {
                s.cluster_id: s
                for s in (await db.execute(select(Summary).where(Summary.run_id == run.id))).scalars().all()
            }
            cluster_ids = [entry.cluster_id for entry, _ in ranked]
            member_rows = []
            if cluster_ids:
                member_rows = (
                    await db.execute(
                        select(ClusterMember.cluster_id, Article.id, Article.title, Article.url, Article.source, Article.published_at)
                        .join(Article, Article.id == ClusterMember.article_id)
                        .where(ClusterMember.cluster_id.in_(cluster_ids))
                        .order_by(desc(Article.published_at))
                    )
                ).all()

        articles_by_cluster: Dict[int, List[Dict[str, Any]]] = {}
        for row in member_rows:
            articles_by_cluster.setdefault(row.cluster_id, []).append(
                {
                    "id": row.id,
                    "title": row.title,
                    "url": row.url,
                    "source": row.source,
                    "published_at": _iso(row.published_at),
                }
            )

        clusters = []
        for entry, label in ranked:
            summary = summaries.get(entry.cluster_id)
            clusters.append(
                {
                    "cluster_id": entry.cluster_id,
                    "rank": entry.rank,
                    "label": entry.derived_label or label,
                    "size": entry.size,
                    "sources_count": entry.sources_count,
                    "freshness_score": entry.freshness_score,
                    "breaking": entry.breaking_flag,
                    "total_score": entry.total_score,
                    "is_top": entry.cluster_id in top_ids,
                    "summary": summary.summary_text if summary else None,
                    "articles": articles_by_cluster.get(entry.cluster_id, []),
                }
            )

        return {
            "ok": True,
            "date": today.isoformat(),
            "run": {
                "id": run.id,
                "model": run.model,
                "prompt_hash": run.prompt_hash,
                "window_start": _iso(run.window_start),
                "window_end": _iso(run.window_end),
                "created_at": _iso(run.created_at),
            },
            "clusters": clusters,
        }
