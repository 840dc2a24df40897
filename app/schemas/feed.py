"""
本文件用于定义 RSS 源配置与解析后条目的数据模型。
主要类:
- `Feed`: RSS/Atom 源配置（名称 + 地址）
- `FeedItem`: 解析后的单个条目
"""

from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict


class Feed(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    url: str


@dataclass
class FeedItem:
    """RSS `<item>` 或 Atom `<entry>` 解析后的字段。"""

    title: Optional[str] = None
    link: Optional[str] = None
    iso_date: Optional[str] = None
    pub_date: Optional[str] = None
    snippet: Optional[str] = None
    content: Optional[str] = None
