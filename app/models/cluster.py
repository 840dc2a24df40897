"""
本文件用于定义聚类运行快照相关 ORM 模型。
主要类:
- `ClusterRun`: 一次聚类运行（时间窗口、模型、提示词指纹）
- `Cluster`: 主题聚类（每次运行新建；另有每日固定的 "Top stories" 聚类）
- `ClusterMember`: 聚类与新闻的多对多关系
- `ClusterInRun`: 运行内的聚类排名与评分
- `TopDailyCluster`: 被选中生成摘要的前 N 个聚类
- `Summary`: 聚类摘要与 token/成本统计
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)

from app.core.database import Base

CLUSTER_KIND_RUN = "run"
CLUSTER_KIND_DAILY = "daily"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClusterRun(Base):
    __tablename__ = "cluster_runs"

    id = Column(Integer, primary_key=True, index=True)
    run_date = Column(Date, nullable=False, index=True)
    window_start = Column(DateTime(timezone=True), nullable=False)
    window_end = Column(DateTime(timezone=True), nullable=False)
    model = Column(String, nullable=False)
    prompt_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)


class Cluster(Base):
    __tablename__ = "clusters"

    id = Column(Integer, primary_key=True, index=True)
    label = Column(String(80), nullable=True)
    cluster_date = Column(Date, nullable=False, index=True)
    kind = Column(String(16), nullable=False, default=CLUSTER_KIND_RUN, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    # 每天只允许一个每日聚类
    __table_args__ = (
        Index(
            "uix_clusters_daily_date",
            "cluster_date",
            unique=True,
            sqlite_where=text(f"kind = '{CLUSTER_KIND_DAILY}'"),
            postgresql_where=text(f"kind = '{CLUSTER_KIND_DAILY}'"),
        ),
    )


class ClusterMember(Base):
    __tablename__ = "cluster_members"

    id = Column(Integer, primary_key=True, index=True)
    cluster_id = Column(Integer, ForeignKey("clusters.id", ondelete="CASCADE"), nullable=False, index=True)
    article_id = Column(Integer, ForeignKey("articles.id", ondelete="CASCADE"), nullable=False, index=True)
    score = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("cluster_id", "article_id", name="uix_cluster_members_cluster_article"),
    )


class ClusterInRun(Base):
    """
    输入:
    - 上游聚类结果中每个聚类的评分字段

    输出:
    - 数据库 `clusters_in_run` 表的 ORM 映射对象

    作用:
    - 记录一次运行内每个聚类的排名；(run_id, rank) 唯一，保证排名与聚类一一对应
    """

    __tablename__ = "clusters_in_run"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(Integer, ForeignKey("cluster_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    cluster_id = Column(Integer, ForeignKey("clusters.id", ondelete="CASCADE"), nullable=False, index=True)
    rank = Column(Integer, nullable=False)
    size = Column(Integer, nullable=False, default=0)
    sources_count = Column(Integer, nullable=False, default=0)
    freshness_score = Column(Float, nullable=False, default=0.0)
    breaking_flag = Column(Boolean, nullable=False, default=False)
    total_score = Column(Float, nullable=False, default=0.0)
    derived_label = Column(String(80), nullable=True)
    details = Column(JSON, default=dict)

    __table_args__ = (
        UniqueConstraint("run_id", "rank", name="uix_clusters_in_run_run_rank"),
        UniqueConstraint("run_id", "cluster_id", name="uix_clusters_in_run_run_cluster"),
    )


class TopDailyCluster(Base):
    __tablename__ = "top_daily_clusters"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(Integer, ForeignKey("cluster_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    cluster_id = Column(Integer, ForeignKey("clusters.id", ondelete="CASCADE"), nullable=False, index=True)
    rank = Column(Integer, nullable=False)
    total_score = Column(Float, nullable=False, default=0.0)

    __table_args__ = (
        UniqueConstraint("run_id", "rank", name="uix_top_daily_clusters_run_rank"),
    )


class Summary(Base):
    __tablename__ = "summaries"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(Integer, ForeignKey("cluster_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    cluster_id = Column(Integer, ForeignKey("clusters.id", ondelete="CASCADE"), nullable=False, index=True)
    summary_text = Column(Text, nullable=False)
    model = Column(String, nullable=False)
    tokens_in = Column(Integer, nullable=True)
    tokens_out = Column(Integer, nullable=True)
    cost_estimate = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("run_id", "cluster_id", name="uix_summaries_run_cluster"),
    )
