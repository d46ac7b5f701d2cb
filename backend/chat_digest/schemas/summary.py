from datetime import datetime
from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field


class SummaryItem(BaseModel):
    id: str
    conversation_id: str
    summary_text: str
    period_start: datetime
    period_end: datetime
    message_count: int
    model: str
    tokens_used: int | None = None
    created_at: datetime
    metadata: dict[str, Any] | None = None


class SummaryQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: datetime | None = Field(None, alias="from")
    to: datetime | None = None
    limit: int
    offset: int


class SummaryListResponse(BaseModel):
    conversation_id: str
    items: List[SummaryItem]
    total: int
    count: int
    query: SummaryQuery


class ChatItem(BaseModel):
    conversation_id: str
    summary_count: int
    first_summary_at: datetime
    last_summary_at: datetime
    total_messages: int


class ChatListResponse(BaseModel):
    chats: List[ChatItem]
    total: int


class StatsResponse(BaseModel):
    device_id: str
    total_messages: int
    total_chats: int
    total_summaries: int
    total_tokens_used: int
