"""消息上报 Schema"""

from pydantic import BaseModel, ConfigDict, Field


class MessageEvent(BaseModel):
    """单条消息事件"""

    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(..., alias="chatId", min_length=1, description="会话 ID")
    sender: str = Field(..., min_length=1, description="发送者")
    body: str = Field(..., min_length=1, description="消息内容")
    timestamp: int = Field(..., ge=0, description="消息原始时间（Unix 毫秒）")
    source_app: str = Field(..., alias="packageName", min_length=1, description="来源应用包名")


class IngestRequest(BaseModel):
    """批量上报请求"""

    device_id: str = Field(..., min_length=1, description="设备 ID")
    events: list[MessageEvent]
    timestamp: int = Field(..., ge=0, description="批次发送时间（Unix 毫秒）")
    batch_size: int = Field(..., ge=1, le=1000, description="批次消息数，必须等于 events 长度")
    app_version: str | None = None
    platform: str | None = "android"


class IngestResponse(BaseModel):
    """批量上报响应"""

    success: bool = True
    message: str = "Events processed successfully"
    processed_count: int
    duplicates_skipped: int = 0
    validation_failures: int = 0
    timestamp: int
