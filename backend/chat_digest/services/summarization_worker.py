"""摘要 worker：处理单个窗口任务

处理必须幂等：同一个窗口的任务可能因为租约超时被重复执行。
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_digest.core.timeutils import Clock, utcnow
from chat_digest.models.message import Message
from chat_digest.services.content_filter import ContentFilter
from chat_digest.services.job_queue import LeasedJob
from chat_digest.services.repositories.message_repository import MessageRepository
from chat_digest.services.repositories.summary_repository import SummaryRepository
from chat_digest.services.summary_client import ChatLine, SummaryBackendError, Summarizer

logger = logging.getLogger(__name__)


class OutcomeStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class JobOutcome:
    status: OutcomeStatus
    reason: str
    summary_id: str | None = None
    marked_processed: int = 0

    @classmethod
    def succeeded(cls, reason: str, summary_id: str | None = None, marked_processed: int = 0) -> JobOutcome:
        return cls(OutcomeStatus.SUCCEEDED, reason, summary_id, marked_processed)

    @classmethod
    def retryable(cls, reason: str) -> JobOutcome:
        return cls(OutcomeStatus.RETRYABLE, reason)

    @classmethod
    def permanent(cls, reason: str) -> JobOutcome:
        return cls(OutcomeStatus.PERMANENT, reason)


class SummarizationWorker:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        summarizer: Summarizer,
        content_filter: ContentFilter,
        *,
        min_messages: int = 5,
        clock: Clock = utcnow,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._summarizer = summarizer
        self._filter = content_filter
        self._min_messages = min_messages
        self._clock = clock

    async def process(self, job: LeasedJob) -> JobOutcome:
        payload = job.payload
        conversation_id = payload.conversation_id
        logger.info(f"开始处理摘要任务 {job.key}（第 {job.attempts} 次）")

        # 1. 重新读取窗口内所有未处理消息，不依赖任务入队时的快照
        async with self._sessionmaker() as session:
            messages = await MessageRepository(session).list_unprocessed_in_window(
                conversation_id=conversation_id,
                period_start=payload.period_start,
                period_end=payload.period_end,
            )

        # 2. 数量不足：视为成功，不标记消息
        if len(messages) < self._min_messages:
            logger.info(
                f"会话 {conversation_id} 窗口内只有 {len(messages)} 条未处理消息"
                f"（至少 {self._min_messages} 条），跳过摘要"
            )
            return JobOutcome.succeeded("below_minimum")

        # 3. 内容过滤
        kept = await self._filter_messages(messages)
        if not kept:
            logger.info(f"会话 {conversation_id} 窗口内消息全部被过滤，跳过摘要")
            return JobOutcome.succeeded("all_filtered")

        # 4. 幂等保护：摘要已存在时只补标记
        async with self._sessionmaker() as session:
            existing = await SummaryRepository(session).get_for_period(
                conversation_id=conversation_id,
                period_start=payload.period_start,
                period_end=payload.period_end,
            )
            if existing is not None:
                marked = await self._mark_only(session, messages)
                logger.info(f"会话 {conversation_id} 窗口 {job.key} 已有摘要，补标记 {marked} 条消息")
                return JobOutcome.succeeded("already_summarized", existing.id, marked)

        # 5. 调用摘要服务
        lines = [ChatLine(sender=m.sender, body=m.body, timestamp=m.original_timestamp) for m in kept]
        try:
            result = await self._summarizer.summarize(
                conversation_id, lines, payload.period_start, payload.period_end
            )
        except SummaryBackendError as e:
            if e.retryable:
                return JobOutcome.retryable(f"{e.kind}: {e}")
            return JobOutcome.permanent(f"{e.kind}: {e}")

        # 6. 在同一事务中写入摘要并标记消息
        metadata = {
            "original_message_count": len(messages),
            "filtered_message_count": len(kept),
            "blocked_message_count": len(messages) - len(kept),
            "job_key": job.key,
            "attempt": job.attempts,
        }
        return await self._persist(job, messages, kept, result, metadata)

    async def _filter_messages(self, messages: Sequence[Message]) -> list[Message]:
        # 并发分类，并发上限由 ContentFilter 控制；结果顺序与输入一致
        blocked = await asyncio.gather(*(self._filter.is_blocked(message.body) for message in messages))
        kept = []
        for message, is_blocked in zip(messages, blocked):
            if is_blocked:
                logger.debug(f"消息 {message.id} 被内容过滤")
                continue
            kept.append(message)
        return kept

    async def _mark_only(self, session: AsyncSession, messages: Sequence[Message]) -> int:
        marked = await MessageRepository(session).mark_processed([m.id for m in messages], self._clock())
        await session.commit()
        return marked

    async def _persist(self, job, messages, kept, result, metadata) -> JobOutcome:
        payload = job.payload
        async with self._sessionmaker() as session:
            summary_repo = SummaryRepository(session)
            message_repo = MessageRepository(session)

            # 事务内再检查一次，避免并发重复执行时写出第二份摘要
            existing = await summary_repo.get_for_period(
                conversation_id=payload.conversation_id,
                period_start=payload.period_start,
                period_end=payload.period_end,
            )
            if existing is not None:
                marked = await self._mark_only(session, messages)
                return JobOutcome.succeeded("already_summarized", existing.id, marked)

            record = summary_repo.add_summary(
                conversation_id=payload.conversation_id,
                summary_text=result.summary,
                period_start=payload.period_start,
                period_end=payload.period_end,
                message_count=len(kept),
                model=result.model,
                tokens_used=result.tokens_used,
                metadata=metadata,
            )
            marked = await message_repo.mark_processed([m.id for m in messages], self._clock())
            try:
                await session.commit()
            except IntegrityError:
                # 另一个执行者刚刚写入了同一窗口的摘要
                await session.rollback()
                marked = await self._mark_only(session, messages)
                return JobOutcome.succeeded("already_summarized", None, marked)

        logger.info(
            f"会话 {payload.conversation_id} 摘要已保存: {record.id}"
            f"（{len(kept)}/{len(messages)} 条消息，{result.tokens_used} tokens）"
        )
        return JobOutcome.succeeded("summarized", record.id, marked)
