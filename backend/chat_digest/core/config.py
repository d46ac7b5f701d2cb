import logging
import sys
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,  # 环境变量名不区分大小写
    )

    # 数据库配置（可选，默认使用 SQLite）
    database_url: str = "sqlite+aiosqlite:///./chat_digest.db"

    log_level: str = "INFO"

    # 设备认证与运维接口
    device_token_salt: str = "chat_digest_dev_salt_change_in_prod"
    admin_api_key: str | None = None

    # 采集端只允许这些来源应用（逗号分隔）
    allowed_source_apps: str = Field(
        default="com.whatsapp,com.whatsapp.w4b",
        description="允许的来源应用包名，逗号分隔",
    )
    max_batch_size: int = 1000

    # 时间窗口配置
    window_minutes: int = 60
    grace_period_minutes: int = 5
    min_messages_for_summary: int = 5

    # 任务队列配置
    job_max_attempts: int = 3
    job_backoff_base_seconds: float = 2.0
    job_visibility_timeout_seconds: int = 300

    # 摘要 worker 配置
    worker_enabled: bool = True
    worker_concurrency: int = 2
    worker_poll_interval_seconds: float = 5.0
    rescan_interval_minutes: int = 15

    # 摘要服务（OpenAI 兼容接口）
    summary_api_base_url: str = "https://api.openai.com/v1"
    summary_api_key: str | None = None
    summary_model: str = "gpt-4o-mini"
    summary_max_tokens: int = 1000
    summary_timeout_seconds: float = 60.0

    # 语义分类器（可选，Hugging Face 推理接口格式）
    classifier_enabled: bool = False
    classifier_api_url: str = "https://api-inference.huggingface.co/models/facebook/bart-large-mnli"
    classifier_api_key: str | None = None
    classifier_timeout_seconds: float = 5.0
    classifier_threshold: float = 0.7
    classifier_max_concurrency: int = 8

    @property
    def source_app_allow_list(self) -> frozenset[str]:
        return frozenset(app.strip() for app in self.allowed_source_apps.split(",") if app.strip())


def configure_logging(level: str = "INFO") -> None:
    """配置应用日志"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )
    # 第三方库日志只保留警告以上
    for noisy in ("httpx", "httpcore", "sqlalchemy.engine", "apscheduler"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


@lru_cache
def get_settings() -> Settings:
    return Settings()
