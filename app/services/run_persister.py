"""
本文件用于将一次大模型聚类结果映射为关系型运行快照（运行、聚类、成员、排名、前 N、摘要）。
主要类:
- `RunContext`: 本次运行的上下文（窗口、模型、提示词指纹、token 统计）
- `PersistResult`: 落库结果
- `RunPersister`: 严格按步骤执行的落库器，单事务，任一步失败整体回滚
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import RunPersistenceError
from app.core.logger import setup_logger
from app.models.cluster import (
    CLUSTER_KIND_RUN,
    Cluster,
    ClusterInRun,
    ClusterMember,
    ClusterRun,
    Summary,
    TopDailyCluster,
)
from app.schemas.cluster import LLMResult
from app.utils.tools import truncate_text

logger = setup_logger("RunPersister")

LABEL_MAX_CHARS = 80


@dataclass
class RunContext:
    run_date: date
    window_start: datetime
    window_end: datetime
    model: str
    prompt_hash: str
    top_n: int
    # 提示词中出现过的文章 id；None 表示不过滤成员
    article_ids: Optional[Set[int]] = None
    tokens_in: int = 0
    tokens_out: int = 0


@dataclass
class PersistResult:
    run_id: int
    cluster_ids: List[int] = field(default_factory=list)
    top_ranks: List[int] = field(default_factory=list)
    memberships: int = 0
    summaries: int = 0
    warnings: List[str] = field(default_factory=list)


class RunPersister:
    """
    输入:
    - `session_factory`: 异步会话工厂
    - `summary_max_chars`: 摘要截断长度
    - `price_in_per_1k` / `price_out_per_1k`: 每千 token 单价（用于成本估算）

    输出:
    - 落库器实例

    作用:
    - 以显式的 rank -> cluster_id 映射保证前 N 与摘要引用的排名都能对应到本次运行内唯一的排名记录
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        summary_max_chars: int = 300,
        price_in_per_1k: float = 0.0,
        price_out_per_1k: float = 0.0,
    ) -> None:
        self.session_factory = session_factory
        self.summary_max_chars = summary_max_chars
        self.price_in_per_1k = price_in_per_1k
        self.price_out_per_1k = price_out_per_1k

    def estimate_cost(self, tokens_in: int, tokens_out: int) -> float:
        return (tokens_in / 1000) * self.price_in_per_1k + (tokens_out / 1000) * self.price_out_per_1k

    async def persist(self, result: LLMResult, context: RunContext) -> PersistResult:
        """
        输入:
        - `result`: 已完成评分校验与排名修正的聚类结果
        - `context`: 运行上下文

        输出:
        - `PersistResult`

        作用:
        - 依次执行 8 个步骤，每步 flush 以便下一步拿到生成的主键；
          任一步失败回滚并抛出 `RunPersistenceError(step, cause)`
        """

        clusters = result.clusters
        warnings: List[str] = []
        step = "create_run"

        async with self.session_factory() as db:
            try:
                # 1. 运行记录
                run = ClusterRun(
                    run_date=context.run_date,
                    window_start=context.window_start,
                    window_end=context.window_end,
                    model=context.model,
                    prompt_hash=context.prompt_hash,
                )
                db.add(run)
                await db.flush()

                # 2. 聚类（按上游顺序，按下标取回主键）
                step = "insert_clusters"
                cluster_rows = [
                    Cluster(
                        label=(c.topic_label or "")[:LABEL_MAX_CHARS] or None,
                        cluster_date=context.run_date,
                        kind=CLUSTER_KIND_RUN,
                    )
                    for c in clusters
                ]
                db.add_all(cluster_rows)
                await db.flush()
                cluster_ids = [row.id for row in cluster_rows]

                # 3. rank -> cluster_id
                step = "map_ranks"
                id_by_rank: Dict[int, int] = {}
                score_by_rank: Dict[int, float] = {}
                for c, cid in zip(clusters, cluster_ids):
                    if c.rank is None:
                        continue
                    if c.rank in id_by_rank:
                        raise ValueError(f"排名 {c.rank} 在本次结果中出现多次")
                    id_by_rank[c.rank] = cid
                    score_by_rank[c.rank] = c.total_score or 0.0

                # 4. 成员
                step = "insert_members"
                memberships = 0
                for c, cid in zip(clusters, cluster_ids):
                    seen: Set[int] = set()
                    for article_id in c.member_ids:
                        if article_id in seen:
                            continue
                        seen.add(article_id)
                        if context.article_ids is not None and article_id not in context.article_ids:
                            message = f"聚类「{c.topic_label}」引用了不在本次输入中的文章 id={article_id}，已跳过"
                            logger.warning(f"⚠️ {message}")
                            warnings.append(message)
                            continue
                        db.add(ClusterMember(cluster_id=cid, article_id=article_id, score=None))
                        memberships += 1
                await db.flush()

                # 5. 运行内排名
                step = "insert_ranked"
                for c, cid in zip(clusters, cluster_ids):
                    db.add(
                        ClusterInRun(
                            run_id=run.id,
                            cluster_id=cid,
                            rank=c.rank,
                            size=c.member_count,
                            sources_count=max(0, c.sources_count or 0),
                            freshness_score=c.freshness_score,
                            breaking_flag=c.breaking,
                            total_score=c.total_score or 0.0,
                            derived_label=(c.topic_label or "")[:LABEL_MAX_CHARS] or None,
                            details={"market_impact_score": c.market_impact_score},
                        )
                    )
                await db.flush()

                # 6. 选出前 N
                step = "select_top"
                if result.top_summaries:
                    requested: List[int] = []
                    for s in result.top_summaries:
                        if s.cluster_rank is not None and s.cluster_rank not in requested:
                            requested.append(s.cluster_rank)
                else:
                    requested = sorted(id_by_rank)[: context.top_n]

                # 7. 前 N 记录，无法对应的排名跳过并告警
                step = "insert_top"
                top_ranks: List[int] = []
                for rank in requested:
                    cid = id_by_rank.get(rank)
                    if cid is None:
                        message = f"摘要引用的排名 {rank} 没有对应聚类，已跳过"
                        logger.warning(f"⚠️ {message}")
                        warnings.append(message)
                        continue
                    db.add(
                        TopDailyCluster(
                            run_id=run.id,
                            cluster_id=cid,
                            rank=rank,
                            total_score=score_by_rank.get(rank, 0.0),
                        )
                    )
                    top_ranks.append(rank)
                await db.flush()

                # 8. 摘要
                step = "insert_summaries"
                accepted = set(top_ranks)
                cost = self.estimate_cost(context.tokens_in, context.tokens_out)
                summarized: Set[int] = set()
                for s in result.top_summaries:
                    if s.cluster_rank not in accepted or s.cluster_rank in summarized:
                        continue
                    summarized.add(s.cluster_rank)
                    db.add(
                        Summary(
                            run_id=run.id,
                            cluster_id=id_by_rank[s.cluster_rank],
                            summary_text=truncate_text(s.summary, self.summary_max_chars),
                            model=context.model,
                            tokens_in=context.tokens_in or None,
                            tokens_out=context.tokens_out or None,
                            cost_estimate=cost,
                        )
                    )
                await db.flush()

                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error(f"❌ 聚类结果落库失败 (步骤: {step}): {e}")
                raise RunPersistenceError(step, e) from e

        logger.info(
            f"💾 运行 #{run.id} 已落库: 聚类 {len(cluster_ids)} 个, 成员 {memberships} 条, "
            f"前 N {top_ranks}, 摘要 {len(summarized)} 条"
        )
        return PersistResult(
            run_id=run.id,
            cluster_ids=cluster_ids,
            top_ranks=top_ranks,
            memberships=memberships,
            summaries=len(summarized),
            warnings=warnings,
        )
