"""摘要 worker 池：多个并发循环从队列领取任务并处理"""

import asyncio
import logging
import os
import socket

from chat_digest.services.job_queue import JobQueue, LeasedJob
from chat_digest.services.summarization_worker import OutcomeStatus, SummarizationWorker

logger = logging.getLogger(__name__)


class WorkerPool:
    """摘要 worker 池"""

    def __init__(
        self,
        job_queue: JobQueue,
        worker: SummarizationWorker,
        *,
        concurrency: int = 2,
        poll_interval: float = 5.0,
        name: str | None = None,
    ) -> None:
        self._queue = job_queue
        self._worker = worker
        self._concurrency = max(1, concurrency)
        self._poll_interval = poll_interval
        self._name = name or f"{socket.gethostname()}-{os.getpid()}"
        self._running = False
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """启动 worker 池"""
        if self._running:
            logger.warning("摘要 worker 池已在运行")
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(self._loop(f"{self._name}-{index}"))
            for index in range(self._concurrency)
        ]
        logger.info(f"摘要 worker 池已启动，并发数 {self._concurrency}")

    async def stop(self) -> None:
        """停止 worker 池"""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("摘要 worker 池已停止")

    async def _loop(self, worker_id: str) -> None:
        while self._running:
            try:
                handled = await self.run_once(worker_id)
            except Exception as e:
                logger.error(f"worker {worker_id} 循环出错: {e}", exc_info=True)
                handled = False

            if not handled:
                await asyncio.sleep(self._poll_interval)

    async def run_once(self, worker_id: str) -> bool:
        """领取并处理一个任务；没有到期任务时返回 False"""
        job = await self._queue.lease(worker_id)
        if job is None:
            return False

        await self._handle(job, worker_id)
        return True

    async def _handle(self, job: LeasedJob, worker_id: str) -> None:
        try:
            outcome = await self._worker.process(job)
        except Exception as e:
            # 未预期的异常按可重试失败处理，不能让 worker 退出
            logger.error(f"处理任务 {job.key} 时出现异常: {e}", exc_info=True)
            await self._queue.fail(job.id, worker_id, f"{type(e).__name__}: {e}", retryable=True)
            return

        if outcome.status == OutcomeStatus.SUCCEEDED:
            await self._queue.complete(job.id, worker_id)
            logger.info(f"任务 {job.key} 完成: {outcome.reason}")
        else:
            await self._queue.fail(
                job.id,
                worker_id,
                outcome.reason,
                retryable=outcome.status == OutcomeStatus.RETRYABLE,
            )
