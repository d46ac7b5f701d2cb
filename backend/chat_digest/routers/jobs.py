"""任务队列运维 API 路由"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from chat_digest.core.deps import get_container, require_admin_key
from chat_digest.schemas.job import JobItem, JobListResponse, RescanResponse
from chat_digest.services.container import ServiceContainer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_admin_key)])


@router.get("", response_model=JobListResponse)
async def list_jobs(
    state: str | None = Query("dead"),
    limit: int = Query(100, ge=1, le=1000),
    container: ServiceContainer = Depends(get_container),
) -> JobListResponse:
    """
    查看任务（默认只看 dead 任务）
    """
    jobs = await container.job_queue.list_jobs(state=state, limit=limit)
    items = [JobItem.model_validate(job) for job in jobs]
    return JobListResponse(items=items, total=len(items))


@router.post("/{job_id}/requeue")
async def requeue_job(
    job_id: int,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """
    把 dead 任务重新放回队列
    """
    if not await container.job_queue.requeue_dead(job_id):
        raise HTTPException(status_code=409, detail="任务不存在、不是 dead 状态，或同一窗口已有任务在排队")
    logger.info(f"运维重新入队任务 {job_id}")
    return {"status": "requeued", "job_id": job_id}


@router.post("/rescan", response_model=RescanResponse)
async def rescan_windows(
    container: ServiceContainer = Depends(get_container),
) -> RescanResponse:
    """
    立即重新扫描未处理消息，补排遗漏的窗口任务
    """
    enqueued = await container.window_tracker.rescan()
    return RescanResponse(enqueued=enqueued)
