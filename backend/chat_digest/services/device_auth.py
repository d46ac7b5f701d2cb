"""设备认证：Bearer token 加盐哈希后与设备表比对"""

import hashlib
import logging
import secrets

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_digest.core.timeutils import Clock, utcnow
from chat_digest.models.device import Device
from chat_digest.services.repositories.device_repository import DeviceRepository

logger = logging.getLogger(__name__)


def hash_token(token: str, salt: str) -> str:
    return hashlib.sha256((token + salt).encode("utf-8")).hexdigest()


class DeviceAuthenticator:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        salt: str,
        clock: Clock = utcnow,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._salt = salt
        self._clock = clock

    async def authenticate(self, token: str) -> Device | None:
        token_hash = hash_token(token, self._salt)
        async with self._sessionmaker() as session:
            repo = DeviceRepository(session)
            device = await repo.get_by_token_hash(token_hash)
            if device is None:
                logger.warning(f"设备认证失败，token hash: {token_hash[:8]}...")
                return None
            await repo.touch(device.id, seen_at=self._clock())
        logger.debug(f"设备已认证: {device.id}")
        return device

    async def register(self, device_id: str, platform: str | None = "android") -> tuple[Device, str]:
        """注册新设备，返回 (设备, 明文 token)；明文 token 只在这里出现一次"""
        token = secrets.token_urlsafe(32)
        async with self._sessionmaker() as session:
            device = await DeviceRepository(session).create(
                device_id=device_id,
                token_hash=hash_token(token, self._salt),
                platform=platform,
            )
        logger.info(f"已注册设备: {device_id}")
        return device, token
