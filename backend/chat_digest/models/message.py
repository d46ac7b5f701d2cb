"""消息模型"""

from sqlalchemy import Boolean, Column, DateTime, Index, String, Text, UniqueConstraint

from chat_digest.core.db import Base
from chat_digest.core.timeutils import utcnow


class Message(Base):
    __tablename__ = "messages"
    # 自然键去重：同一设备、会话、原始时间、内容只保存一次（body 以哈希参与唯一约束）
    __table_args__ = (
        UniqueConstraint(
            "device_id", "conversation_id", "original_timestamp", "body_hash", name="uq_message_natural_key"
        ),
        Index("ix_messages_window", "conversation_id", "processed", "original_timestamp"),
    )

    id = Column(String(36), primary_key=True)
    device_id = Column(String(255), nullable=False, index=True)
    conversation_id = Column(String(255), nullable=False, index=True)
    sender = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    body_hash = Column(String(64), nullable=False)
    source_app = Column(String(100), nullable=False)
    original_timestamp = Column(DateTime, nullable=False, index=True)  # 客户端上报的消息时间，窗口划分以此为准
    created_at = Column(DateTime, default=utcnow, nullable=False)  # 服务端接收时间
    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime, nullable=True)
