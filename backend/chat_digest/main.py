import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chat_digest.core.config import Settings, configure_logging, get_settings
from chat_digest.routers import health, jobs, messages, summaries
from chat_digest.services.container import ServiceContainer, build_container
from chat_digest.tasks.scheduler import SchedulerWrapper
from chat_digest.tasks.worker import WorkerPool

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, container: ServiceContainer | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    container = container or build_container(settings)

    app = FastAPI(title="Chat Digest API")
    app.state.container = container
    app.state.worker_pool = None
    app.state.scheduler = None

    # CORS 中间件必须在所有路由之前添加
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(messages.router, prefix="/api")
    app.include_router(summaries.router, prefix="/api")
    app.include_router(jobs.router, prefix="/api")
    app.include_router(health.router, prefix="/api")

    @app.get("/")
    async def read_root():
        return {"message": "Chat Digest API", "docs": "/docs"}

    @app.on_event("startup")
    async def startup_event() -> None:
        logger.info("正在初始化数据库...")
        await container.database.init_models()
        logger.info("数据库初始化完成")

        if not settings.worker_enabled:
            logger.info("摘要 worker 未启用（WORKER_ENABLED=false），只提供 API")
            return

        try:
            pool = WorkerPool(
                container.job_queue,
                container.worker,
                concurrency=settings.worker_concurrency,
                poll_interval=settings.worker_poll_interval_seconds,
            )
            await pool.start()
            app.state.worker_pool = pool

            if settings.rescan_interval_minutes > 0:
                scheduler = SchedulerWrapper(container.window_tracker, settings.rescan_interval_minutes)
                await scheduler.start()
                app.state.scheduler = scheduler

            logger.info("应用启动完成！")
        except Exception as e:
            logger.error(f"后台任务启动失败: {e}", exc_info=True)
            # API 继续提供服务，遗漏的窗口可以稍后通过重新扫描补排
            logger.warning("应用将继续运行，但摘要任务暂不会被处理")

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        try:
            if app.state.scheduler is not None:
                await app.state.scheduler.stop()
            if app.state.worker_pool is not None:
                await app.state.worker_pool.stop()
        except Exception as e:
            logger.error(f"停止后台任务时出错: {e}", exc_info=True)
        finally:
            await container.aclose()
            logger.info("应用已关闭")

    return app


app = create_app()
