"""摘要模型"""

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, UniqueConstraint

from chat_digest.core.db import Base
from chat_digest.core.timeutils import utcnow


class Summary(Base):
    __tablename__ = "summaries"
    __table_args__ = (
        UniqueConstraint("conversation_id", "period_start", "period_end", name="uq_summary_period"),
    )

    id = Column(String(36), primary_key=True)
    conversation_id = Column(String(255), nullable=False, index=True)
    summary_text = Column(Text, nullable=False)
    period_start = Column(DateTime, nullable=False, index=True)
    period_end = Column(DateTime, nullable=False)
    message_count = Column(Integer, nullable=False)  # 过滤后送去摘要的消息数
    model = Column(String(100), nullable=False)
    tokens_used = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    # 过滤前后数量、任务 key 等附加信息
    meta = Column("metadata", JSON, nullable=True)
