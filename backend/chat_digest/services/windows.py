"""时间窗口划分与任务载荷"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from chat_digest.core.timeutils import EPOCH


def bucket_start(timestamp: datetime, bucket_size: timedelta) -> datetime:
    """把时间向下取整到窗口起点（按 UTC 纪元对齐），恰好在边界上的时间属于以该边界开始的窗口"""
    return EPOCH + (timestamp - EPOCH) // bucket_size * bucket_size


@dataclass(frozen=True)
class Window:
    conversation_id: str
    start: datetime
    end: datetime

    @classmethod
    def containing(cls, conversation_id: str, timestamp: datetime, bucket_size: timedelta) -> Window:
        start = bucket_start(timestamp, bucket_size)
        return cls(conversation_id=conversation_id, start=start, end=start + bucket_size)

    @property
    def key(self) -> str:
        return job_key(self.conversation_id, self.start)

    def to_payload(self) -> JobPayload:
        return JobPayload(conversation_id=self.conversation_id, period_start=self.start, period_end=self.end)


def job_key(conversation_id: str, window_start: datetime) -> str:
    return f"{conversation_id}:{window_start.isoformat()}"


class JobPayload(BaseModel):
    """摘要任务载荷：只保存窗口范围，不保存消息内容"""

    kind: Literal["summarize_window"] = "summarize_window"
    conversation_id: str = Field(..., min_length=1)
    period_start: datetime
    period_end: datetime

    @model_validator(mode="after")
    def check_period(self) -> JobPayload:
        if self.period_end <= self.period_start:
            raise ValueError("period_end 必须晚于 period_start")
        return self

    @property
    def key(self) -> str:
        return job_key(self.conversation_id, self.period_start)
