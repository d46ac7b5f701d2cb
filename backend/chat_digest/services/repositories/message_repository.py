import hashlib
import uuid
from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chat_digest.core.timeutils import utcnow
from chat_digest.models.message import Message


def hash_body(body: str) -> str:
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


class MessageRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add_message(
        self,
        *,
        device_id: str,
        conversation_id: str,
        sender: str,
        body: str,
        source_app: str,
        original_timestamp: datetime,
        received_at: datetime | None = None,
    ) -> Message | None:
        """插入一条消息，命中自然键唯一约束时返回 None（重复消息直接丢弃，不覆盖）"""
        message = Message(
            id=str(uuid.uuid4()),
            device_id=device_id,
            conversation_id=conversation_id,
            sender=sender,
            body=body,
            body_hash=hash_body(body),
            source_app=source_app,
            original_timestamp=original_timestamp,
            created_at=received_at or utcnow(),
            processed=False,
        )
        self._session.add(message)
        try:
            await self._session.commit()
        except IntegrityError:
            await self._session.rollback()
            return None
        return message

    async def list_unprocessed_in_window(
        self,
        *,
        conversation_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Sequence[Message]:
        result = await self._session.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .where(Message.original_timestamp >= period_start)
            .where(Message.original_timestamp < period_end)
            .where(Message.processed.is_(False))
            .order_by(Message.original_timestamp.asc(), Message.created_at.asc())
        )
        return result.scalars().all()

    async def mark_processed(self, message_ids: Sequence[str], processed_at: datetime) -> int:
        """标记为已处理，不提交事务，由调用方与摘要写入一起提交"""
        if not message_ids:
            return 0
        result = await self._session.execute(
            update(Message)
            .where(Message.id.in_(message_ids))
            .where(Message.processed.is_(False))
            .values(processed=True, processed_at=processed_at)
        )
        return result.rowcount or 0

    async def list_unprocessed_before(self, cutoff: datetime) -> Sequence[tuple[str, datetime, datetime]]:
        """返回 (conversation_id, original_timestamp, created_at)，用于重新扫描遗漏的窗口"""
        result = await self._session.execute(
            select(Message.conversation_id, Message.original_timestamp, Message.created_at)
            .where(Message.processed.is_(False))
            .where(Message.original_timestamp < cutoff)
            .order_by(Message.conversation_id, Message.original_timestamp)
        )
        return result.all()

    async def count_for_device(self, device_id: str) -> tuple[int, int]:
        """返回 (消息总数, 会话数)"""
        result = await self._session.execute(
            select(func.count(Message.id), func.count(func.distinct(Message.conversation_id)))
            .where(Message.device_id == device_id)
        )
        total, chats = result.one()
        return total or 0, chats or 0

    async def count_by_conversation(self, device_id: str) -> dict[str, int]:
        result = await self._session.execute(
            select(Message.conversation_id, func.count(Message.id))
            .where(Message.device_id == device_id)
            .group_by(Message.conversation_id)
        )
        return {conversation_id: count for conversation_id, count in result.all()}
