"""服务装配：按配置显式创建各组件并注入依赖，不使用模块级单例"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from chat_digest.core.config import Settings
from chat_digest.core.db import Database
from chat_digest.core.timeutils import Clock, utcnow
from chat_digest.services.classifier_client import ZeroShotClassifierClient
from chat_digest.services.content_filter import ContentFilter
from chat_digest.services.device_auth import DeviceAuthenticator
from chat_digest.services.ingestion import IngestionService
from chat_digest.services.job_queue import JobQueue
from chat_digest.services.summarization_worker import SummarizationWorker
from chat_digest.services.summary_client import Summarizer, SummaryClient
from chat_digest.services.window_tracker import WindowTracker

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    database: Database
    job_queue: JobQueue
    window_tracker: WindowTracker
    content_filter: ContentFilter
    summarizer: Summarizer
    worker: SummarizationWorker
    ingestion: IngestionService
    authenticator: DeviceAuthenticator
    classifier: ZeroShotClassifierClient | None = None

    async def aclose(self) -> None:
        for client in (self.summarizer, self.classifier):
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()
        await self.database.dispose()


def build_container(
    settings: Settings,
    *,
    summarizer: Summarizer | None = None,
    classifier=None,
    clock: Clock = utcnow,
) -> ServiceContainer:
    database = Database(settings.database_url)
    sessionmaker = database.sessionmaker

    if classifier is None and settings.classifier_enabled:
        classifier = ZeroShotClassifierClient(
            settings.classifier_api_url,
            api_key=settings.classifier_api_key,
            timeout=settings.classifier_timeout_seconds,
        )
    content_filter = ContentFilter(
        classifier,
        threshold=settings.classifier_threshold,
        timeout=settings.classifier_timeout_seconds,
        max_concurrency=settings.classifier_max_concurrency,
    )

    if summarizer is None:
        if not settings.summary_api_key:
            logger.warning("未配置 SUMMARY_API_KEY，摘要服务调用将被拒绝")
        summarizer = SummaryClient(
            base_url=settings.summary_api_base_url,
            api_key=settings.summary_api_key,
            model=settings.summary_model,
            max_tokens=settings.summary_max_tokens,
            timeout=settings.summary_timeout_seconds,
        )

    job_queue = JobQueue(
        sessionmaker,
        max_attempts=settings.job_max_attempts,
        backoff_base_seconds=settings.job_backoff_base_seconds,
        visibility_timeout_seconds=settings.job_visibility_timeout_seconds,
        clock=clock,
    )
    window_tracker = WindowTracker(
        job_queue,
        sessionmaker,
        bucket_size=timedelta(minutes=settings.window_minutes),
        grace_period=timedelta(minutes=settings.grace_period_minutes),
        clock=clock,
    )
    worker = SummarizationWorker(
        sessionmaker,
        summarizer,
        content_filter,
        min_messages=settings.min_messages_for_summary,
        clock=clock,
    )
    ingestion = IngestionService(
        sessionmaker,
        window_tracker,
        allowed_source_apps=settings.source_app_allow_list,
        max_batch_size=settings.max_batch_size,
        clock=clock,
    )
    authenticator = DeviceAuthenticator(sessionmaker, settings.device_token_salt, clock=clock)

    return ServiceContainer(
        settings=settings,
        database=database,
        job_queue=job_queue,
        window_tracker=window_tracker,
        content_filter=content_filter,
        summarizer=summarizer,
        worker=worker,
        ingestion=ingestion,
        authenticator=authenticator,
        classifier=classifier,
    )
