"""
本文件用于启动 FastAPI 应用并注册 API 路由与生命周期任务。
主要函数:
- `create_app`: 构造应用（可注入配置与服务容器）
- `lifespan`: 应用生命周期管理（构造服务、初始化数据库、启动定时任务）
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.api import api_router
from app.core.config import Settings, get_settings
from app.core.database import init_db
from app.core.logger import configure_logging, setup_logger
from app.services import Services, build_services
from app.services.pipeline_service import scheduled_task


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    输入:
    - `settings`: 运行时配置（默认读取 `get_settings()`）
    - `services`: 预先构造的服务容器（测试注入；默认在启动时按配置构造）

    输出:
    - FastAPI 应用实例

    作用:
    - 服务对象只在启动时构造一次，通过 `app.state` 传给各路由
    """

    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        lifespan_logger = setup_logger("lifespan")
        owned = services is None
        app.state.db_error = None
        app.state.services = None
        scheduler: Optional[asyncio.Task] = None

        try:
            current = services or build_services(settings)
            await init_db(current.engine)
            app.state.services = current
        except Exception as e:
            app.state.db_error = str(e)
            lifespan_logger.error(f"❌ 初始化数据库失败: {e}")
            lifespan_logger.warning("=" * 60)
            lifespan_logger.warning("⚠️  系统配置缺失或数据库连接失败！")
            lifespan_logger.warning("⚠️  抓取与聚类接口将返回 503，定时任务不会启动，直到配置修正。")
            lifespan_logger.warning("=" * 60)

        if app.state.services is not None and settings.SCHEDULE_INTERVAL_MINUTES > 0:
            scheduler = asyncio.create_task(scheduled_task(app.state.services, settings.SCHEDULE_INTERVAL_MINUTES))

        yield

        if scheduler is not None:
            scheduler.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await scheduler
        if owned and app.state.services is not None:
            await app.state.services.engine.dispose()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.VERSION,
        lifespan=lifespan,
        debug=settings.DEBUG,
    )
    app.state.settings = settings
    app.include_router(api_router)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.detail})

    return app


_settings = get_settings()
configure_logging(_settings.LOG_LEVEL)
app = create_app(_settings)


if __name__ == "__main__":
    log_level = (_settings.LOG_LEVEL or "info").lower()
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=_settings.PORT,
        log_level=log_level,
        access_log=log_level in {"debug", "info"},
    )
