"""
本文件用于根据配置创建异步数据库引擎与会话工厂，并提供建表、连通性检查与方言相关的 upsert 语句。
主要函数:
- `create_engine_from_settings`: 根据 `DATABASE_URL` 创建 `AsyncEngine`
- `create_session_factory`: 创建 `async_sessionmaker`
- `init_db`: 创建数据库表结构
- `check_db_connection`: 检查数据库是否可用
- `dialect_insert`: 按当前方言返回支持 ON CONFLICT 的 insert 构造
"""

from __future__ import annotations

from sqlalchemy import event, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.core.config import Settings
from app.core.exceptions import ConfigurationError
from app.core.logger import setup_logger

logger = setup_logger("Database")

Base = declarative_base()


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    输入:
    - `settings`: 运行时配置

    输出:
    - `AsyncEngine` 实例

    作用:
    - 创建数据库引擎；SQLite 下开启 WAL 以提高并发稳定性
    """

    url = (settings.DATABASE_URL or "").strip()
    if not url:
        raise ConfigurationError("未配置 DATABASE_URL，数据库功能不可用")

    if "sqlite" in url:
        engine = create_async_engine(url, echo=False)

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_async_engine(
        url,
        echo=False,
        pool_size=20,
        max_overflow=10,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """
    输入:
    - `engine`: 数据库引擎

    输出:
    - 无

    作用:
    - 初始化数据库表结构（根据 ORM 模型创建表）
    """

    from app.models.article import Article  # noqa: F401
    from app.models.cluster import Cluster, ClusterInRun, ClusterMember, ClusterRun, Summary, TopDailyCluster  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db_connection(session_factory: async_sessionmaker[AsyncSession], verbose: bool = True) -> bool:
    """
    检查数据库连接是否可用
    """
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        if verbose:
            logger.warning(f"⚠️ 数据库连接检查失败: {e}")
        return False


def dialect_insert(db: AsyncSession, model):
    """
    输入:
    - `db`: 当前会话
    - `model`: ORM 模型类

    输出:
    - 对应方言的 `Insert` 构造（支持 `on_conflict_do_update/do_nothing`）

    作用:
    - 让 upsert 同时适配 PostgreSQL 与 SQLite
    """

    dialect_name = db.get_bind().dialect.name
    if dialect_name == "sqlite":
        return sqlite.insert(model)
    if dialect_name == "postgresql":
        return postgresql.insert(model)
    raise ConfigurationError(f"不支持的数据库方言: {dialect_name}")
