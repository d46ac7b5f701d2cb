"""FastAPI 依赖：从 app.state 取服务容器，设备认证与运维接口认证"""

import secrets
from typing import AsyncIterator

from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from chat_digest.models.device import Device
from chat_digest.services.container import ServiceContainer

bearer_scheme = HTTPBearer(auto_error=False)


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


async def get_session(container: ServiceContainer = Depends(get_container)) -> AsyncIterator[AsyncSession]:
    async with container.database.sessionmaker() as session:
        yield session


async def get_current_device(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    container: ServiceContainer = Depends(get_container),
) -> Device:
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise HTTPException(status_code=401, detail="缺少设备 token")

    device = await container.authenticator.authenticate(credentials.credentials)
    if device is None:
        raise HTTPException(status_code=401, detail="设备 token 无效")
    return device


async def require_admin_key(
    x_admin_key: str | None = Header(None),
    container: ServiceContainer = Depends(get_container),
) -> None:
    expected = container.settings.admin_api_key
    if not expected:
        raise HTTPException(status_code=503, detail="未配置运维接口密钥")
    if not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
        raise HTTPException(status_code=403, detail="运维接口密钥无效")
