"""独立运行摘要 worker（不启动 API）

适合与 API 进程分开部署：API 设置 WORKER_ENABLED=false，这里负责处理任务和定期重新扫描。

使用方法：
    python scripts/run_worker.py
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path

# 添加项目根目录到 Python 路径
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from chat_digest.core.config import configure_logging, get_settings
from chat_digest.services.container import build_container
from chat_digest.tasks.scheduler import SchedulerWrapper
from chat_digest.tasks.worker import WorkerPool

logger = logging.getLogger(__name__)


async def main():
    settings = get_settings()
    configure_logging(settings.log_level)
    container = build_container(settings)
    await container.database.init_models()

    pool = WorkerPool(
        container.job_queue,
        container.worker,
        concurrency=settings.worker_concurrency,
        poll_interval=settings.worker_poll_interval_seconds,
    )
    scheduler = SchedulerWrapper(container.window_tracker, settings.rescan_interval_minutes)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows 不支持 add_signal_handler，依赖 KeyboardInterrupt
            pass

    try:
        # 启动时先补排一次
        enqueued = await container.window_tracker.rescan()
        logger.info(f"启动时补排 {enqueued} 个窗口")

        await pool.start()
        if settings.rescan_interval_minutes > 0:
            await scheduler.start()
        logger.info("摘要 worker 已启动，按 Ctrl+C 停止")
        await stop_event.wait()
    finally:
        logger.info("正在停止摘要 worker...")
        await scheduler.stop()
        await pool.stop()
        await container.aclose()
        logger.info("摘要 worker 已停止")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
