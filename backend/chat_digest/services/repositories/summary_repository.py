import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from chat_digest.core.timeutils import utcnow
from chat_digest.models.message import Message
from chat_digest.models.summary import Summary


class SummaryRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    def add_summary(
        self,
        *,
        conversation_id: str,
        summary_text: str,
        period_start: datetime,
        period_end: datetime,
        message_count: int,
        model: str,
        tokens_used: int | None,
        metadata: dict[str, Any] | None = None,
    ) -> Summary:
        """加入会话但不提交，由调用方在同一事务中提交"""
        record = Summary(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            summary_text=summary_text,
            period_start=period_start,
            period_end=period_end,
            message_count=message_count,
            model=model,
            tokens_used=tokens_used,
            created_at=utcnow(),
            meta=metadata,
        )
        self._session.add(record)
        return record

    async def get_for_period(
        self,
        *,
        conversation_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Summary | None:
        result = await self._session.execute(
            select(Summary)
            .where(Summary.conversation_id == conversation_id)
            .where(Summary.period_start == period_start)
            .where(Summary.period_end == period_end)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_for_conversation(
        self,
        *,
        conversation_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[Summary], int]:
        """按时间范围查询摘要（最新的在前），同时返回总数"""
        conditions = [Summary.conversation_id == conversation_id]
        if start is not None:
            conditions.append(Summary.period_start >= start)
        if end is not None:
            conditions.append(Summary.period_end <= end)

        total = await self._session.scalar(select(func.count(Summary.id)).where(*conditions))
        result = await self._session.execute(
            select(Summary)
            .where(*conditions)
            .order_by(Summary.period_start.desc())
            .limit(limit)
            .offset(offset)
        )
        return result.scalars().all(), total or 0

    async def chat_stats_for_device(self, device_id: str) -> Sequence[tuple[str, int, datetime, datetime]]:
        """该设备有消息的会话中已生成摘要的统计：(会话, 摘要数, 首次, 最近)"""
        device_chats = select(Message.conversation_id).where(Message.device_id == device_id).distinct()
        result = await self._session.execute(
            select(
                Summary.conversation_id,
                func.count(Summary.id),
                func.min(Summary.created_at),
                func.max(Summary.created_at),
            )
            .where(Summary.conversation_id.in_(device_chats))
            .group_by(Summary.conversation_id)
            .order_by(func.max(Summary.created_at).desc())
        )
        return result.all()

    async def totals_for_device(self, device_id: str) -> tuple[int, int]:
        """返回 (摘要总数, 消耗 token 总数)"""
        device_chats = select(Message.conversation_id).where(Message.device_id == device_id).distinct()
        result = await self._session.execute(
            select(func.count(Summary.id), func.coalesce(func.sum(Summary.tokens_used), 0))
            .where(Summary.conversation_id.in_(device_chats))
        )
        count, tokens = result.one()
        return count or 0, int(tokens or 0)
