"""摘要任务队列模型"""

import enum

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, text

from chat_digest.core.db import Base
from chat_digest.core.timeutils import utcnow


class JobState(str, enum.Enum):
    PENDING = "pending"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEAD = "dead"


TERMINAL_STATES = (JobState.COMPLETED.value, JobState.DEAD.value)

# 同一个 key 同时只能存在一个未结束的任务
_LIVE_KEY_CONDITION = text("state NOT IN ('completed', 'dead')")


class SummaryJob(Base):
    __tablename__ = "summary_jobs"
    __table_args__ = (
        Index(
            "uq_summary_jobs_live_key",
            "key",
            unique=True,
            sqlite_where=_LIVE_KEY_CONDITION,
            postgresql_where=_LIVE_KEY_CONDITION,
        ),
        Index("ix_summary_jobs_due", "state", "due_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(512), nullable=False, index=True)  # conversation_id:window_start
    state = Column(String(20), nullable=False, default=JobState.DELAYED.value)
    payload = Column(Text, nullable=False)  # JobPayload 的 JSON
    due_at = Column(DateTime, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    lease_owner = Column(String(255), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
    leased_at = Column(DateTime, nullable=True)  # 最近一次被领取的时间，重新扫描以此判断消息是否晚于该次执行
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    finished_at = Column(DateTime, nullable=True)
