"""摘要查询 API 路由"""

import logging
from datetime import datetime, timezone
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from chat_digest.core.deps import get_current_device, get_session
from chat_digest.models.device import Device
from chat_digest.schemas.summary import (
    ChatItem,
    ChatListResponse,
    StatsResponse,
    SummaryItem,
    SummaryListResponse,
    SummaryQuery,
)
from chat_digest.services.repositories.message_repository import MessageRepository
from chat_digest.services.repositories.summary_repository import SummaryRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/summaries", tags=["summaries"])


def _as_utc_naive(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@router.get("/chats", response_model=ChatListResponse)
async def list_chats(
    device: Device = Depends(get_current_device),
    session: AsyncSession = Depends(get_session),
) -> ChatListResponse:
    """
    获取该设备已有摘要的会话列表
    """
    try:
        stats = await SummaryRepository(session).chat_stats_for_device(device.id)
        message_counts = await MessageRepository(session).count_by_conversation(device.id)
    except Exception as e:
        logger.error(f"获取设备 {device.id} 的会话列表失败: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"获取失败: {str(e)}")

    chats = [
        ChatItem(
            conversation_id=conversation_id,
            summary_count=summary_count,
            first_summary_at=first_at,
            last_summary_at=last_at,
            total_messages=message_counts.get(conversation_id, 0),
        )
        for conversation_id, summary_count, first_at, last_at in stats
    ]
    return ChatListResponse(chats=chats, total=len(chats))


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    device: Device = Depends(get_current_device),
    session: AsyncSession = Depends(get_session),
) -> StatsResponse:
    """
    获取该设备的消息与摘要统计
    """
    try:
        total_messages, total_chats = await MessageRepository(session).count_for_device(device.id)
        total_summaries, total_tokens = await SummaryRepository(session).totals_for_device(device.id)
    except Exception as e:
        logger.error(f"获取设备 {device.id} 的统计失败: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"获取失败: {str(e)}")

    return StatsResponse(
        device_id=device.id,
        total_messages=total_messages,
        total_chats=total_chats,
        total_summaries=total_summaries,
        total_tokens_used=total_tokens,
    )


@router.get("/{conversation_id}", response_model=SummaryListResponse)
async def list_summaries(
    conversation_id: str,
    from_: datetime | None = Query(None, alias="from"),
    to: datetime | None = None,
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    device: Device = Depends(get_current_device),
    session: AsyncSession = Depends(get_session),
) -> SummaryListResponse:
    """
    按时间范围查询某个会话的摘要（最新的在前）
    """
    start = _as_utc_naive(from_)
    end = _as_utc_naive(to)
    try:
        records, total = await SummaryRepository(session).list_for_conversation(
            conversation_id=conversation_id,
            start=start,
            end=end,
            limit=limit,
            offset=offset,
        )
    except Exception as e:
        logger.error(f"获取会话 {conversation_id} 的摘要失败: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"获取失败: {str(e)}")

    items: List[SummaryItem] = []
    for record in records:
        items.append(
            SummaryItem(
                id=record.id,
                conversation_id=record.conversation_id,
                summary_text=record.summary_text,
                period_start=record.period_start,
                period_end=record.period_end,
                message_count=record.message_count,
                model=record.model,
                tokens_used=record.tokens_used,
                created_at=record.created_at,
                metadata=record.meta,
            )
        )

    return SummaryListResponse(
        conversation_id=conversation_id,
        items=items,
        total=total,
        count=len(items),
        query=SummaryQuery(from_=start, to=end, limit=limit, offset=offset),
    )
