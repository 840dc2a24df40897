"""
本文件用于提供 FastAPI 依赖注入的集中出口：服务容器获取与定时任务调用方鉴权。
主要对象:
- `get_services`: 从应用状态中取出启动时构造的服务容器
- `verify_bearer_secret`: 校验 `Authorization: Bearer <CRON_SECRET>`
- `verify_cron_header`: 校验 `x-cron-secret: <CRON_SECRET>`
"""

import secrets
from typing import Optional

from fastapi import HTTPException, Request, status

from app.core.config import Settings
from app.services import Services


def get_settings_from_app(request: Request) -> Settings:
    return request.app.state.settings


def get_services(request: Request) -> Services:
    services: Optional[Services] = getattr(request.app.state, "services", None)
    if services is None:
        reason = getattr(request.app.state, "db_error", None) or "服务未初始化"
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=reason)
    return services


def _secret_matches(expected: Optional[str], provided: Optional[str]) -> bool:
    # 未配置密钥时不做鉴权
    if not expected:
        return True
    if not provided:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def _unauthorized() -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")


async def verify_bearer_secret(request: Request) -> None:
    """
    依赖项：抓取接口使用 `Authorization: Bearer <CRON_SECRET>` 鉴权。
    """
    expected = get_settings_from_app(request).CRON_SECRET
    header = request.headers.get("authorization") or ""
    provided = header[len("Bearer "):] if header.startswith("Bearer ") else None
    if not _secret_matches(expected, provided):
        raise _unauthorized()


async def verify_cron_header(request: Request) -> None:
    """
    依赖项：聚类接口使用 `x-cron-secret` 请求头鉴权。
    """
    expected = get_settings_from_app(request).CRON_SECRET
    if not _secret_matches(expected, request.headers.get("x-cron-secret")):
        raise _unauthorized()


__all__ = ["get_services", "get_settings_from_app", "verify_bearer_secret", "verify_cron_header"]
