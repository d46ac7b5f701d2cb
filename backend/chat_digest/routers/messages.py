"""消息上报 API 路由"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from chat_digest.core.deps import get_container, get_current_device
from chat_digest.core.timeutils import to_epoch_ms, utcnow
from chat_digest.models.device import Device
from chat_digest.schemas.ingest import IngestRequest, IngestResponse
from chat_digest.services.container import ServiceContainer
from chat_digest.services.ingestion import IngestValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("/ingest", response_model=IngestResponse)
async def ingest_messages(
    request: IngestRequest,
    device: Device = Depends(get_current_device),
    container: ServiceContainer = Depends(get_container),
) -> IngestResponse:
    """
    接收采集端批量上报的消息
    """
    logger.info(f"设备 {device.id} 上报 {len(request.events)} 条消息")
    try:
        result = await container.ingestion.ingest(request, device)
    except IngestValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"处理设备 {device.id} 的上报失败: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"上报处理失败: {str(e)}")

    return IngestResponse(
        processed_count=result.processed,
        duplicates_skipped=result.duplicates,
        validation_failures=result.validation_failures,
        timestamp=to_epoch_ms(utcnow()),
    )
