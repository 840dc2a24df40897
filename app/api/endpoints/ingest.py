"""
本文件用于提供抓取入库 API（供定时任务调用）。
主要函数:
- `api_ingest`: 抓取所有 RSS 源并入库，按配置在有新文章时触发一次聚类
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.api.deps import get_services, verify_bearer_secret
from app.core.logger import logger
from app.services import Services
from app.services.pipeline_service import run_ingest_and_cluster

router = APIRouter(prefix="/api", tags=["ingest"])


@router.api_route("/ingest", methods=["GET", "POST"], dependencies=[Depends(verify_bearer_secret)])
async def api_ingest(services: Services = Depends(get_services)):
    """
    输入:
    - 无请求体

    输出:
    - `{ok, articlesSeen, articlesUpserted, linksUpserted, clusterId, errors, llm?}`

    作用:
    - 单源/单条失败记录在 `errors` 中；只有无法启动本轮抓取时返回 500
    """

    try:
        return await run_ingest_and_cluster(services)
    except Exception as e:
        logger.error(f"❌ 抓取接口异常: {e}")
        return JSONResponse(status_code=500, content={"ok": False, "error": str(e)})
