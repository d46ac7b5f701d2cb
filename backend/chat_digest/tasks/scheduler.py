from apscheduler.schedulers.asyncio import AsyncIOScheduler

from chat_digest.services.window_tracker import WindowTracker
from chat_digest.tasks import jobs


class SchedulerWrapper:
    def __init__(self, window_tracker: WindowTracker, rescan_interval_minutes: int = 15) -> None:
        self._scheduler = AsyncIOScheduler()
        self._window_tracker = window_tracker
        self._rescan_interval_minutes = rescan_interval_minutes
        self._rescan_job_id = "rescan_windows"
        self._is_configured = False

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def _configure_jobs(self) -> None:
        if self._is_configured:
            return

        # 定期补排遗漏的窗口任务
        self._scheduler.add_job(
            jobs.rescan_windows_job,
            "interval",
            minutes=self._rescan_interval_minutes,
            args=[self._window_tracker],
            id=self._rescan_job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self._is_configured = True

    async def start(self) -> None:
        if not self._scheduler.running:
            self._configure_jobs()
            self._scheduler.start()

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
