"""
本文件用于提供聚类相关 API：触发一次大模型聚类运行，读取当日快照。
主要函数:
- `api_cluster_llm`: 触发聚类并落库
- `api_daily`: 当日最近一次运行的排名与摘要
"""

import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.api.deps import get_services, verify_cron_header
from app.core.exceptions import LLMResponseError, RunPersistenceError
from app.core.logger import logger
from app.schemas.cluster import ClusterOptions
from app.services import Services

router = APIRouter(prefix="/api", tags=["cluster"])


async def _read_options(request: Request) -> ClusterOptions:
    # 请求体可选，格式错误时按默认参数运行
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return ClusterOptions()
    if not isinstance(payload, dict):
        return ClusterOptions()
    try:
        return ClusterOptions.model_validate(payload)
    except ValidationError:
        return ClusterOptions()


@router.post("/cluster/llm", dependencies=[Depends(verify_cron_header)])
async def api_cluster_llm(request: Request, services: Services = Depends(get_services)):
    """
    输入:
    - 可选请求体 `{windowHours, topN}`

    输出:
    - 聚类结果；模型返回非法 JSON 时 502（附原始片段），落库失败时 500（附失败步骤）

    作用:
    - 触发一次聚类运行
    """

    options = await _read_options(request)
    try:
        return await services.cluster.run(options.windowHours, options.topN)
    except LLMResponseError as e:
        logger.error(f"❌ 聚类模型返回无法解析: {e}")
        return JSONResponse(
            status_code=502,
            content={"ok": False, "modelUsed": services.ai.model, "error": str(e), "raw": e.raw},
        )
    except RunPersistenceError as e:
        return JSONResponse(status_code=500, content={"ok": False, "error": str(e), "step": e.step})
    except Exception as e:
        logger.error(f"❌ 聚类接口异常: {e}")
        return JSONResponse(status_code=500, content={"ok": False, "error": str(e)})


@router.get("/daily")
async def api_daily(services: Services = Depends(get_services)):
    try:
        return await services.cluster.latest_daily()
    except Exception as e:
        logger.error(f"❌ 读取当日快照失败: {e}")
        return JSONResponse(status_code=500, content={"ok": False, "error": str(e)})
