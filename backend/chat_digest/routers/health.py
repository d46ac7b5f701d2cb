"""健康检查 API 路由"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from chat_digest.core.deps import get_container
from chat_digest.services.container import ServiceContainer

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health_check(container: ServiceContainer = Depends(get_container)):
    database_ok = await container.database.ping()
    jobs = await container.job_queue.counts_by_state() if database_ok else {}
    body = {
        "status": "ok" if database_ok else "error",
        "database": database_ok,
        "semantic_filter": container.content_filter.semantic_enabled,
        "jobs": jobs,
    }
    return JSONResponse(status_code=200 if database_ok else 503, content=body)
