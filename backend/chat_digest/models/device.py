"""设备模型"""

from sqlalchemy import Column, DateTime, String

from chat_digest.core.db import Base
from chat_digest.core.timeutils import utcnow


class Device(Base):
    """采集端设备，通过 Bearer token 认证"""

    __tablename__ = "devices"

    id = Column(String(255), primary_key=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)  # sha256(token + salt)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_seen = Column(DateTime, default=utcnow, nullable=False, index=True)
    app_version = Column(String(50), nullable=True)
    platform = Column(String(20), default="android", nullable=True)
