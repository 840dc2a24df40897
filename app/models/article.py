"""
本文件用于定义 `articles` 表的 ORM 模型，承载 RSS 抓取、正文解析与归一化后的新闻条目。
主要类:
- `Article`: 新闻数据模型（以规范化 URL 为唯一键）
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text

from app.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Article(Base):
    """
    输入:
    - 抓取与归一化后的结构化字段（URL、域名、标题、来源、发布时间、正文）

    输出:
    - 数据库 `articles` 表的 ORM 映射对象

    作用:
    - 按 URL 幂等存储新闻；重复抓取时可用更完整的正文覆盖旧内容
    """

    __tablename__ = "articles"

    id = Column(Integer, primary_key=True, index=True)
    url = Column(String, unique=True, index=True, nullable=False)
    domain = Column(String, nullable=True, index=True)
    title = Column(String, nullable=True)
    source = Column(String, nullable=True, index=True)

    published_at = Column(DateTime(timezone=True), nullable=True, index=True)
    content = Column(Text, nullable=True)
    content_hash = Column(String(64), nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
