"""
本文件用于提供系统相关 API：健康检查与关键配置缺失提示。
主要函数:
- `api_health`: 应用名称、版本、数据库连通性与缺失配置
"""

from fastapi import APIRouter, Request

from app.core.config import get_missing_config_keys
from app.core.database import check_db_connection

router = APIRouter(prefix="/api", tags=["system"])


@router.get("/health")
async def api_health(request: Request):
    settings = request.app.state.settings
    services = getattr(request.app.state, "services", None)

    db_ok = False
    if services is not None:
        db_ok = await check_db_connection(services.session_factory, verbose=False)

    return {
        "ok": db_ok,
        "app": settings.APP_NAME,
        "version": settings.VERSION,
        "database": db_ok,
        "db_error": getattr(request.app.state, "db_error", None),
        "missing_config": get_missing_config_keys(settings),
    }
