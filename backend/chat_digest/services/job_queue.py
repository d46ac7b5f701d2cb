"""基于数据库的延迟任务队列

状态流转：pending/delayed -> active -> completed；
失败时 active -> delayed（指数退避重试），重试次数用完或不可重试时 -> dead。
同一个 key 同时只允许一个未结束的任务（由部分唯一索引保证）。
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_digest.core.timeutils import Clock, utcnow
from chat_digest.models.job import TERMINAL_STATES, JobState, SummaryJob
from chat_digest.services.windows import JobPayload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeasedJob:
    """被某个 worker 领取的任务快照"""

    id: int
    key: str
    payload: JobPayload
    attempts: int
    max_attempts: int
    lease_owner: str


class JobQueue:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 3,
        backoff_base_seconds: float = 2.0,
        visibility_timeout_seconds: int = 300,
        clock: Clock = utcnow,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._max_attempts = max_attempts
        self._backoff_base = timedelta(seconds=backoff_base_seconds)
        self._visibility_timeout = timedelta(seconds=visibility_timeout_seconds)
        self._clock = clock

    async def enqueue(self, key: str, payload: JobPayload, due_at: datetime) -> bool:
        """
        插入任务；如果该 key 已有未结束的任务则不做任何事

        Returns:
            是否创建了新任务
        """
        now = self._clock()
        state = JobState.PENDING if due_at <= now else JobState.DELAYED
        job = SummaryJob(
            key=key,
            state=state.value,
            payload=payload.model_dump_json(),
            due_at=due_at,
            attempts=0,
            max_attempts=self._max_attempts,
            created_at=now,
            updated_at=now,
        )
        async with self._sessionmaker() as session:
            session.add(job)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug(f"任务已存在，跳过: {key}")
                return False

        logger.info(f"任务已入队: {key}，状态 {state.value}，执行时间 {due_at.isoformat()}")
        return True

    async def lease(self, worker_id: str) -> LeasedJob | None:
        """原子地领取一个到期任务；多个 worker 并发时同一任务只会被一个 worker 领到"""
        now = self._clock()
        async with self._sessionmaker() as session:
            await self._bury_exhausted_leases(session, now)

            claimable = or_(
                and_(
                    SummaryJob.state.in_([JobState.PENDING.value, JobState.DELAYED.value]),
                    SummaryJob.due_at <= now,
                ),
                and_(
                    SummaryJob.state == JobState.ACTIVE.value,
                    SummaryJob.lease_expires_at <= now,
                ),
            )
            result = await session.execute(
                select(SummaryJob.id).where(claimable).order_by(SummaryJob.due_at.asc()).limit(10)
            )
            candidate_ids = result.scalars().all()

            for job_id in candidate_ids:
                # 条件更新（compare-and-swap）：只有命中一行的 worker 拿到任务
                claimed = await session.execute(
                    update(SummaryJob)
                    .where(SummaryJob.id == job_id)
                    .where(claimable)
                    .values(
                        state=JobState.ACTIVE.value,
                        lease_owner=worker_id,
                        lease_expires_at=now + self._visibility_timeout,
                        leased_at=now,
                        attempts=SummaryJob.attempts + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if claimed.rowcount != 1:
                    continue

                job = await session.get(SummaryJob, job_id, populate_existing=True)
                logger.info(f"worker {worker_id} 领取任务 {job.key}（第 {job.attempts}/{job.max_attempts} 次）")
                return LeasedJob(
                    id=job.id,
                    key=job.key,
                    payload=JobPayload.model_validate_json(job.payload),
                    attempts=job.attempts,
                    max_attempts=job.max_attempts,
                    lease_owner=worker_id,
                )
        return None

    async def _bury_exhausted_leases(self, session: AsyncSession, now: datetime) -> None:
        """租约超时且已经用完最后一次尝试的任务直接进入 dead"""
        result = await session.execute(
            update(SummaryJob)
            .where(SummaryJob.state == JobState.ACTIVE.value)
            .where(SummaryJob.lease_expires_at <= now)
            .where(SummaryJob.attempts >= SummaryJob.max_attempts)
            .values(
                state=JobState.DEAD.value,
                last_error="租约超时，重试次数已用完",
                lease_owner=None,
                lease_expires_at=None,
                finished_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount:
            logger.warning(f"{result.rowcount} 个任务租约超时且重试次数用完，已转入 dead")

    async def complete(self, job_id: int, worker_id: str) -> bool:
        now = self._clock()
        async with self._sessionmaker() as session:
            result = await session.execute(
                update(SummaryJob)
                .where(SummaryJob.id == job_id)
                .where(SummaryJob.state == JobState.ACTIVE.value)
                .where(SummaryJob.lease_owner == worker_id)
                .values(
                    state=JobState.COMPLETED.value,
                    lease_expires_at=None,
                    finished_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning(f"任务 {job_id} 已不属于 worker {worker_id}，忽略完成回报")
            return False
        return True

    async def fail(self, job_id: int, worker_id: str, error: str, retryable: bool = True) -> JobState | None:
        """
        记录失败；可重试且未用完次数时按指数退避重新排期，否则进入 dead

        Returns:
            任务的新状态；任务已不属于该 worker 时返回 None
        """
        now = self._clock()
        async with self._sessionmaker() as session:
            job = await session.get(SummaryJob, job_id)
            if job is None or job.state != JobState.ACTIVE.value or job.lease_owner != worker_id:
                logger.warning(f"任务 {job_id} 已不属于 worker {worker_id}，忽略失败回报")
                return None

            job.last_error = error[:2000]
            job.lease_expires_at = None
            job.updated_at = now
            if retryable and job.attempts < job.max_attempts:
                delay = self._backoff_base * (2 ** (job.attempts - 1))
                job.state = JobState.DELAYED.value
                job.due_at = now + delay
                logger.warning(
                    f"任务 {job.key} 第 {job.attempts} 次失败，{delay.total_seconds():.0f} 秒后重试: {error}"
                )
            else:
                job.state = JobState.DEAD.value
                job.finished_at = now
                logger.error(f"任务 {job.key} 失败 {job.attempts} 次，已转入 dead: {error}")
            new_state = JobState(job.state)
            await session.commit()
        return new_state

    async def requeue_dead(self, job_id: int) -> bool:
        """运维操作：把 dead 任务重新放回队列（重置尝试次数）"""
        now = self._clock()
        async with self._sessionmaker() as session:
            job = await session.get(SummaryJob, job_id)
            if job is None or job.state != JobState.DEAD.value:
                return False
            job.state = JobState.PENDING.value
            job.attempts = 0
            job.due_at = now
            job.lease_owner = None
            job.finished_at = None
            job.updated_at = now
            try:
                await session.commit()
            except IntegrityError:
                # 同一个 key 已经有新的任务在排队
                await session.rollback()
                return False
        logger.info(f"dead 任务 {job_id} 已重新入队")
        return True

    async def list_jobs(self, state: str | None = None, limit: int = 100) -> Sequence[SummaryJob]:
        async with self._sessionmaker() as session:
            query = select(SummaryJob).order_by(SummaryJob.updated_at.desc()).limit(limit)
            if state:
                query = query.where(SummaryJob.state == state)
            result = await session.execute(query)
            return result.scalars().all()

    async def get_live(self, key: str) -> SummaryJob | None:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(SummaryJob).where(SummaryJob.key == key).where(SummaryJob.state.notin_(TERMINAL_STATES))
            )
            return result.scalar_one_or_none()

    async def latest_for_key(self, key: str) -> SummaryJob | None:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(SummaryJob).where(SummaryJob.key == key).order_by(SummaryJob.id.desc()).limit(1)
            )
            return result.scalar_one_or_none()

    async def counts_by_state(self) -> dict[str, int]:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(SummaryJob.state, func.count(SummaryJob.id)).group_by(SummaryJob.state)
            )
            return {state: count for state, count in result.all()}
