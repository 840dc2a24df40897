"""
本文件用于编排“抓取入库 -> 聚类”全流程任务，并提供定时调度与手动触发入口。
主要函数:
- `run_cluster_followup`: 抓取后的聚类子任务（带超时，结果挂到抓取响应的 `llm` 字段）
- `run_ingest_and_cluster`: 抓取入库并按配置触发聚类
- `scheduled_task`: 定时调度循环
- `run_manual`: 手动触发一次全流程
"""

import asyncio
from typing import Any, Dict, Optional

from app.core.database import check_db_connection
from app.core.exceptions import AIConfigurationError, LLMResponseError, RunPersistenceError
from app.core.logger import logger
from app.services import Services


async def run_cluster_followup(services: Services, timeout: float) -> Dict[str, Any]:
    """
    输入:
    - `services`: 服务容器
    - `timeout`: 子任务超时（秒）

    输出:
    - 聚类结果；失败或超时时返回 `{ok: false, error}`，不向上抛出

    作用:
    - 聚类失败不影响抓取结果本身
    """

    try:
        return await asyncio.wait_for(services.cluster.run(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error(f"❌ 抓取后聚类超时 ({timeout}s)")
        return {"ok": False, "error": f"cluster run timed out after {timeout:g}s"}
    except LLMResponseError as e:
        logger.error(f"❌ 抓取后聚类失败: {e}")
        return {"ok": False, "error": str(e), "raw": e.raw}
    except RunPersistenceError as e:
        return {"ok": False, "error": str(e), "step": e.step}
    except Exception as e:
        logger.error(f"❌ 抓取后聚类异常: {e}")
        return {"ok": False, "error": str(e)}


async def run_ingest_and_cluster(services: Services, auto_cluster: Optional[bool] = None) -> Dict[str, Any]:
    """
    输入:
    - `services`: 服务容器
    - `auto_cluster`: 是否在有新入库文章时触发聚类（默认取配置）

    输出:
    - 抓取响应字典（`ok, articlesSeen, articlesUpserted, linksUpserted, clusterId, errors, llm?`）

    作用:
    - 抓取入库；入库数 >= 1 且开启自动聚类时，在超时约束下运行一次聚类
    """

    settings = services.settings
    if auto_cluster is None:
        auto_cluster = settings.AUTO_CLUSTER_AFTER_INGEST

    report = await services.ingest.run()
    response = report.to_response()
    if auto_cluster and report.articles_upserted > 0:
        response["llm"] = await run_cluster_followup(services, settings.AUTO_CLUSTER_TIMEOUT_SECONDS)
    return response


async def scheduled_task(services: Services, interval_minutes: int) -> None:
    """
    输入:
    - `services`: 服务容器
    - `interval_minutes`: 运行间隔（分钟）

    输出:
    - 无

    作用:
    - 定时调度入口：按固定间隔运行全流程；单轮异常只记录日志，循环继续
    """

    logger.info(f"⏰ 定时任务调度器启动，间隔 {interval_minutes} 分钟...")
    interval_seconds = max(1, interval_minutes) * 60

    while True:
        try:
            if not await check_db_connection(services.session_factory):
                logger.warning("⚠️ 数据库连接异常，本轮定时任务跳过，等待恢复...")
                await asyncio.sleep(60)
                continue

            result = await run_ingest_and_cluster(services)
            logger.info(
                f"🏁 定时任务完成: 入库 {result['articlesUpserted']} 条, 错误 {len(result['errors'])} 条"
            )

        except AIConfigurationError as e:
            logger.error(f"🛑 配置错误: {e} 请检查 config.yaml 是否配置正确")
        except Exception as e:
            logger.error(f"❌ 调度循环异常: {e}")

        await asyncio.sleep(interval_seconds)


async def run_manual(services: Services) -> Dict[str, Any]:
    """
    输入:
    - `services`: 服务容器

    输出:
    - 本轮抓取（及聚类）结果

    作用:
    - 手动触发一次抓取，有新文章时无论配置如何都运行一次聚类
    """

    logger.info("🚀 手动任务开始...")
    result = await run_ingest_and_cluster(services, auto_cluster=True)
    logger.info("✅ 手动任务结束")
    return result
