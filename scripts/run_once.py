import argparse
import asyncio
import json
import os
import sys

# Add the project root to sys.path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app.core.config import get_settings
from app.core.database import init_db
from app.core.logger import configure_logging
from app.services import build_services
from app.services.pipeline_service import run_ingest_and_cluster, run_manual


async def run_once(cluster: bool) -> None:
    """
    手动执行一轮抓取入库（默认随后触发聚类），结果以 JSON 打印到标准输出。
    """
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    services = build_services(settings)
    try:
        await init_db(services.engine)
        if cluster:
            result = await run_manual(services)
        else:
            result = await run_ingest_and_cluster(services, auto_cluster=False)
        print(json.dumps(result, ensure_ascii=False, indent=2, default=str))
    finally:
        await services.engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="执行一轮 RSS 抓取入库与聚类")
    parser.add_argument("--no-cluster", action="store_true", help="只抓取入库，不触发聚类")
    args = parser.parse_args()
    asyncio.run(run_once(cluster=not args.no_cluster))
