"""消息上报处理

两步流程：先持久化消息（必定落库），再为窗口排任务（尽力而为，可通过重新扫描补救）。
"""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_digest.core.timeutils import Clock, from_epoch_ms, utcnow
from chat_digest.models.device import Device
from chat_digest.schemas.ingest import IngestRequest
from chat_digest.services.repositories.device_repository import DeviceRepository
from chat_digest.services.repositories.message_repository import MessageRepository
from chat_digest.services.window_tracker import WindowTracker

logger = logging.getLogger(__name__)


class IngestValidationError(Exception):
    """批次级校验失败（设备不一致、批次数量不一致等），整批拒绝"""


@dataclass
class IngestResult:
    processed: int = 0
    duplicates: int = 0
    validation_failures: int = 0


class IngestionService:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        window_tracker: WindowTracker,
        *,
        allowed_source_apps: frozenset[str],
        max_batch_size: int = 1000,
        clock: Clock = utcnow,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._tracker = window_tracker
        self._allowed_source_apps = allowed_source_apps
        self._max_batch_size = max_batch_size
        self._clock = clock

    def validate(self, request: IngestRequest, device: Device) -> None:
        if request.device_id != device.id:
            raise IngestValidationError("设备 ID 与认证设备不一致")
        if request.batch_size != len(request.events):
            raise IngestValidationError(
                f"batch_size ({request.batch_size}) 与事件数量 ({len(request.events)}) 不一致"
            )
        if request.batch_size > self._max_batch_size:
            raise IngestValidationError(f"单批最多 {self._max_batch_size} 条消息")

    async def ingest(self, request: IngestRequest, device: Device) -> IngestResult:
        self.validate(request, device)

        result = IngestResult()
        async with self._sessionmaker() as session:
            repo = MessageRepository(session)
            for event in request.events:
                if event.source_app not in self._allowed_source_apps:
                    logger.warning(f"不支持的来源应用: {event.source_app}")
                    result.validation_failures += 1
                    continue

                try:
                    original_timestamp = from_epoch_ms(event.timestamp)
                except (OverflowError, ValueError):
                    logger.warning(f"消息时间超出范围: {event.timestamp}")
                    result.validation_failures += 1
                    continue

                message = await repo.add_message(
                    device_id=device.id,
                    conversation_id=event.conversation_id,
                    sender=event.sender,
                    body=event.body,
                    source_app=event.source_app,
                    original_timestamp=original_timestamp,
                    received_at=self._clock(),
                )
                if message is None:
                    logger.debug(f"重复消息已跳过: 会话 {event.conversation_id} @ {event.timestamp}")
                    result.duplicates += 1
                    continue

                result.processed += 1
                await self._tracker.schedule(event.conversation_id, original_timestamp)

        await self._touch_device(device, request)

        logger.info(
            f"设备 {device.id} 上报完成: 新增 {result.processed} 条，"
            f"重复 {result.duplicates} 条，校验失败 {result.validation_failures} 条"
        )
        return result

    async def _touch_device(self, device: Device, request: IngestRequest) -> None:
        try:
            async with self._sessionmaker() as session:
                await DeviceRepository(session).touch(
                    device.id,
                    seen_at=self._clock(),
                    app_version=request.app_version,
                    platform=request.platform,
                )
        except Exception as e:
            logger.error(f"更新设备 {device.id} 信息失败: {e}", exc_info=True)
