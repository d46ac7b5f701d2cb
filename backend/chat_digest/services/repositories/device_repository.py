from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chat_digest.models.device import Device


class DeviceRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_token_hash(self, token_hash: str) -> Device | None:
        result = await self._session.execute(select(Device).where(Device.token_hash == token_hash))
        return result.scalar_one_or_none()

    async def create(self, *, device_id: str, token_hash: str, platform: str | None = "android") -> Device:
        device = Device(id=device_id, token_hash=token_hash, platform=platform)
        self._session.add(device)
        await self._session.commit()
        await self._session.refresh(device)
        return device

    async def touch(
        self,
        device_id: str,
        *,
        seen_at: datetime,
        app_version: str | None = None,
        platform: str | None = None,
    ) -> None:
        values: dict = {"last_seen": seen_at}
        if app_version:
            values["app_version"] = app_version
        if platform:
            values["platform"] = platform
        await self._session.execute(update(Device).where(Device.id == device_id).values(**values))
        await self._session.commit()
