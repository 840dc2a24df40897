"""
本包用于在进程启动时一次性构造服务对象，并以引用形式传给 API 层与调度任务。
主要导出:
- `Services`: 服务容器（配置、数据库、抓取、聚类）
- `build_services`: 根据配置构造服务容器
"""

from dataclasses import dataclass
from typing import Optional

from openai import AsyncOpenAI
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.database import create_engine_from_settings, create_session_factory
from app.services.ai_service import AIService
from app.services.cluster_service import ClusterService
from app.services.ingest_service import IngestionPipeline
from app.services.run_persister import RunPersister
from app.services.scoring import ImpactScorer


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    ai: AIService
    ingest: IngestionPipeline
    cluster: ClusterService


def build_services(
    settings: Settings,
    engine: Optional[AsyncEngine] = None,
    ai_client: Optional[AsyncOpenAI] = None,
    ingest: Optional[IngestionPipeline] = None,
) -> Services:
    engine = engine or create_engine_from_settings(settings)
    session_factory = create_session_factory(engine)
    ai = AIService(settings, client=ai_client)
    persister = RunPersister(
        session_factory,
        summary_max_chars=settings.SUMMARY_MAX_CHARS,
        price_in_per_1k=settings.NEWS_MODEL_PRICE_IN_PER_1K,
        price_out_per_1k=settings.NEWS_MODEL_PRICE_OUT_PER_1K,
    )
    cluster = ClusterService(
        session_factory,
        ai,
        persister,
        scorer=ImpactScorer(tolerance=settings.SCORE_TOLERANCE),
        default_window_hours=settings.CLUSTER_WINDOW_HOURS,
        default_top_n=settings.CLUSTER_TOP_N,
        article_limit=settings.CLUSTER_ARTICLE_LIMIT,
        timezone_name=settings.CLUSTER_TIMEZONE,
    )
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        ai=ai,
        ingest=ingest or IngestionPipeline.from_settings(settings, session_factory),
        cluster=cluster,
    )


__all__ = ["Services", "build_services"]
