"""
本文件用于定义大模型聚类结果的数据结构，并在入口处做宽松的类型收敛。
主要类:
- `LLMCluster`: 单个聚类（主题、成员、评分字段、排名）
- `TopSummary`: 前 N 个聚类的摘要
- `LLMResult`: 模型返回的完整 JSON 对象
- `ClusterOptions`: 聚类接口请求体
"""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from app.utils.tools import safe_number


def _coerce_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    number = safe_number(value, fallback=float("nan"))
    if number != number or number != int(number):
        return None
    return int(number)


class LLMCluster(BaseModel):
    model_config = ConfigDict(extra="ignore")

    topic_label: Optional[str] = None
    member_ids: List[int] = []
    market_impact_score: float = 0.0
    size: Optional[int] = None
    sources_count: Optional[int] = None
    freshness_score: float = 0.0
    breaking: bool = False
    total_score: Optional[float] = None
    rank: Optional[int] = None

    @field_validator("topic_label", mode="before")
    @classmethod
    def _label(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        text = " ".join(str(v).split())
        return text or None

    @field_validator("member_ids", mode="before")
    @classmethod
    def _members(cls, v: Any) -> List[int]:
        # 模型经常把 id 写成字符串，无法识别的直接丢弃
        if not isinstance(v, (list, tuple)):
            return []
        ids: List[int] = []
        for item in v:
            parsed = _coerce_int(item)
            if parsed is not None:
                ids.append(parsed)
        return ids

    @field_validator("market_impact_score", "freshness_score", mode="before")
    @classmethod
    def _float(cls, v: Any) -> float:
        return safe_number(v, 0.0)

    @field_validator("total_score", mode="before")
    @classmethod
    def _optional_float(cls, v: Any) -> Optional[float]:
        if v is None:
            return None
        number = safe_number(v, fallback=float("nan"))
        return None if number != number else number

    @field_validator("size", "sources_count", "rank", mode="before")
    @classmethod
    def _int(cls, v: Any) -> Optional[int]:
        return _coerce_int(v)

    @field_validator("breaking", mode="before")
    @classmethod
    def _bool(cls, v: Any) -> bool:
        if isinstance(v, str):
            return v.strip().lower() in ("true", "1", "yes")
        return bool(v)

    @property
    def member_count(self) -> int:
        if self.size is not None:
            return max(0, self.size)
        return len(self.member_ids)


class TopSummary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    cluster_rank: Optional[int] = None
    summary: str = ""

    @field_validator("cluster_rank", mode="before")
    @classmethod
    def _rank(cls, v: Any) -> Optional[int]:
        return _coerce_int(v)

    @field_validator("summary", mode="before")
    @classmethod
    def _summary(cls, v: Any) -> str:
        return "" if v is None else str(v)


class LLMResult(BaseModel):
    """
    输入:
    - 模型返回并已 `json.loads` 的对象

    输出:
    - 结构化的聚类结果；缺失或类型不对的数组按空数组处理

    作用:
    - 隔离模型输出的不确定性，后续评分与落库只面对确定的类型
    """

    model_config = ConfigDict(extra="ignore")

    clusters: List[LLMCluster] = []
    top_summaries: List[TopSummary] = []

    @field_validator("clusters", "top_summaries", mode="before")
    @classmethod
    def _objects_only(cls, v: Any) -> List[Any]:
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, dict)]


class ClusterOptions(BaseModel):
    """聚类接口请求体；取值范围在服务层裁剪，非数值按默认处理。"""

    model_config = ConfigDict(extra="ignore")

    windowHours: Any = None
    topN: Any = None
