"""
本文件用于实现聚类的市场影响力综合评分，并对上游给出的分数与排名做校验/重算。
主要类:
- `ImpactScorer`: 纯函数评分器

评分公式:
    total = market_impact + 0.4 * ln(1 + size) + 0.3 * ln(1 + sources) + 0.5 * freshness
"""

import math
from typing import Dict, List, Optional, Sequence

from app.core.logger import setup_logger
from app.schemas.cluster import LLMCluster, TopSummary
from app.utils.tools import safe_number

logger = setup_logger("ImpactScorer")

SIZE_WEIGHT = 0.4
SOURCES_WEIGHT = 0.3
FRESHNESS_WEIGHT = 0.5


def _unit(value) -> float:
    return min(1.0, max(0.0, safe_number(value, 0.0)))


def _count(value) -> float:
    return max(0.0, safe_number(value, 0.0))


class ImpactScorer:
    def __init__(self, tolerance: float = 0.01) -> None:
        self.tolerance = tolerance

    @staticmethod
    def total_score(
        market_impact_score,
        size,
        sources_count,
        freshness_score,
    ) -> float:
        """
        输入:
        - `market_impact_score`: 市场影响力 [0,1]
        - `size`: 聚类成员数
        - `sources_count`: 不同来源数
        - `freshness_score`: 最新成员的归一化时效 [0,1]

        输出:
        - 综合评分（相同输入恒定输出）

        作用:
        - 输入先收敛为有限数并裁剪到合法区间，再套用排名公式
        """

        return (
            _unit(market_impact_score)
            + SIZE_WEIGHT * math.log1p(_count(size))
            + SOURCES_WEIGHT * math.log1p(_count(sources_count))
            + FRESHNESS_WEIGHT * _unit(freshness_score)
        )

    def score_cluster(self, cluster: LLMCluster) -> float:
        return self.total_score(
            cluster.market_impact_score,
            cluster.member_count,
            cluster.sources_count,
            cluster.freshness_score,
        )

    def validate(self, cluster: LLMCluster) -> Optional[str]:
        """
        输入:
        - `cluster`: 上游聚类（原地修正 `total_score`）

        输出:
        - 发生修正时返回告警文本，否则 None

        作用:
        - 上游分数缺失或偏差超过容差时，以本地重算结果为准
        """

        expected = self.score_cluster(cluster)
        declared = cluster.total_score
        if declared is None:
            cluster.total_score = expected
            return f"聚类「{cluster.topic_label}」缺少 total_score，已按公式补算为 {expected:.4f}"
        if abs(declared - expected) > self.tolerance:
            cluster.total_score = expected
            return f"聚类「{cluster.topic_label}」total_score={declared:.4f} 与公式结果 {expected:.4f} 不一致，已修正"
        return None

    @staticmethod
    def ranks_are_valid(clusters: Sequence[LLMCluster]) -> bool:
        ranks = [c.rank for c in clusters]
        if any(r is None or r < 1 for r in ranks):
            return False
        return len(set(ranks)) == len(ranks)

    def ensure_ranks(self, clusters: Sequence[LLMCluster]) -> List[str]:
        """
        输入:
        - `clusters`: 上游聚类列表（原地修改 `rank`）

        输出:
        - 告警列表（排名被重算时包含一条）

        作用:
        - 上游排名是互不相同的正整数时保持不变；否则按 total_score 降序重排为 1..N，
          同分保持上游顺序
        """

        if self.ranks_are_valid(clusters):
            return []

        ordered = sorted(
            clusters,
            key=lambda c: -(c.total_score if c.total_score is not None else self.score_cluster(c)),
        )
        for position, cluster in enumerate(ordered, start=1):
            cluster.rank = position
        message = f"上游排名缺失或重复，已按 total_score 重排 {len(ordered)} 个聚类"
        logger.warning(f"⚠️ {message}")
        return [message]

    def apply(
        self,
        clusters: Sequence[LLMCluster],
        top_summaries: Optional[List[TopSummary]] = None,
    ) -> List[str]:
        """
        输入:
        - `clusters`: 上游聚类列表（原地修正分数与排名）
        - `top_summaries`: 上游摘要列表（排名被重算时原地改写 `cluster_rank`）

        输出:
        - 告警列表

        作用:
        - 先校验分数，再修复排名；摘要跟随其声明排名对应的原聚类，
          声明排名重复或不存在的摘要无法确定归属，丢弃并告警
        """

        warnings: List[str] = []
        for cluster in clusters:
            message = self.validate(cluster)
            if message:
                logger.warning(f"⚠️ {message}")
                warnings.append(message)

        declared = [c.rank for c in clusters]
        rank_warnings = self.ensure_ranks(clusters)
        warnings.extend(rank_warnings)
        if rank_warnings and top_summaries:
            warnings.extend(self.remap_summaries(declared, clusters, top_summaries))
        return warnings

    @staticmethod
    def remap_summaries(
        declared: Sequence[Optional[int]],
        clusters: Sequence[LLMCluster],
        top_summaries: List[TopSummary],
    ) -> List[str]:
        counts: Dict[int, int] = {}
        for rank in declared:
            if rank is not None and rank >= 1:
                counts[rank] = counts.get(rank, 0) + 1
        new_rank = {
            old: cluster.rank
            for old, cluster in zip(declared, clusters)
            if old is not None and counts.get(old) == 1
        }

        warnings: List[str] = []
        kept: List[TopSummary] = []
        for summary in top_summaries:
            target = new_rank.get(summary.cluster_rank)
            if target is None:
                message = f"摘要引用的排名 {summary.cluster_rank} 在上游结果中不唯一或不存在，已丢弃"
                logger.warning(f"⚠️ {message}")
                warnings.append(message)
                continue
            summary.cluster_rank = target
            kept.append(summary)
        top_summaries[:] = kept
        return warnings
