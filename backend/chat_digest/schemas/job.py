"""任务队列 Schema"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class JobItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    key: str
    state: str
    due_at: datetime
    attempts: int
    max_attempts: int
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    leased_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime
    finished_at: datetime | None = None


class JobListResponse(BaseModel):
    items: list[JobItem]
    total: int


class RescanResponse(BaseModel):
    enqueued: int
