"""窗口追踪：把消息映射到时间窗口，并保证每个 (会话, 窗口) 只排一个摘要任务"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_digest.core.timeutils import Clock, utcnow
from chat_digest.services.job_queue import JobQueue
from chat_digest.services.repositories.message_repository import MessageRepository
from chat_digest.services.windows import Window

logger = logging.getLogger(__name__)


class WindowTracker:
    def __init__(
        self,
        job_queue: JobQueue,
        sessionmaker: async_sessionmaker[AsyncSession],
        *,
        bucket_size: timedelta = timedelta(hours=1),
        grace_period: timedelta = timedelta(minutes=5),
        clock: Clock = utcnow,
    ) -> None:
        self._queue = job_queue
        self._sessionmaker = sessionmaker
        self.bucket_size = bucket_size
        self.grace_period = grace_period
        self._clock = clock

    def window_for(self, conversation_id: str, timestamp: datetime) -> Window:
        return Window.containing(conversation_id, timestamp, self.bucket_size)

    def due_at(self, window: Window, now: datetime) -> datetime:
        """窗口结束 + 宽限期；已经过了执行时间（补录积压）则立即执行"""
        due = window.end + self.grace_period
        return now if now >= due else due

    async def schedule(self, conversation_id: str, timestamp: datetime) -> bool:
        """
        为消息所在窗口排一个摘要任务（尽力而为）

        已有未结束任务时不做任何事，也不推迟原有执行时间：worker 执行时会重新读取窗口内所有未处理消息。
        排队失败只记日志，不影响消息入库。

        Returns:
            是否创建了新任务
        """
        window = self.window_for(conversation_id, timestamp)
        try:
            return await self._queue.enqueue(window.key, window.to_payload(), self.due_at(window, self._clock()))
        except Exception as e:
            logger.error(f"窗口 {window.key} 排队失败，消息保持未处理状态等待重新扫描: {e}", exc_info=True)
            return False

    async def rescan(self) -> int:
        """
        重新扫描未处理消息，为遗漏的窗口补排任务；可重复执行

        一个窗口需要补排的条件：已过执行时间、当前没有未结束的任务，
        并且最新的未处理消息不早于该 key 上一个任务被领取的时间（或从未有过任务）。

        Returns:
            新建的任务数
        """
        now = self._clock()
        # 只有结束时间 + 宽限期已过的窗口才需要检查
        cutoff = now - self.grace_period
        async with self._sessionmaker() as session:
            rows = await MessageRepository(session).list_unprocessed_before(cutoff)

        latest_arrival: dict[Window, datetime] = {}
        for conversation_id, original_timestamp, created_at in rows:
            window = self.window_for(conversation_id, original_timestamp)
            if window.end + self.grace_period > now:
                continue
            previous = latest_arrival.get(window)
            if previous is None or created_at > previous:
                latest_arrival[window] = created_at

        enqueued = 0
        for window, arrived_at in latest_arrival.items():
            try:
                last_job = await self._queue.latest_for_key(window.key)
                if last_job is not None:
                    if last_job.finished_at is None:
                        continue
                    # 执行期间到达的消息可能没被读到，而当时的排队又因任务未结束被跳过
                    if last_job.leased_at is not None and arrived_at < last_job.leased_at:
                        continue
                if await self._queue.enqueue(window.key, window.to_payload(), now):
                    enqueued += 1
            except Exception as e:
                logger.error(f"重新扫描窗口 {window.key} 时出错: {e}", exc_info=True)

        if enqueued:
            logger.info(f"重新扫描完成，补排 {enqueued} 个窗口任务")
        else:
            logger.debug("重新扫描完成，没有遗漏的窗口")
        return enqueued
