# tests/conftest.py

from datetime import datetime, timedelta

import pytest

from chat_digest.core.config import Settings
from chat_digest.core.timeutils import to_epoch_ms
from chat_digest.schemas.ingest import IngestRequest, MessageEvent
from chat_digest.services.container import build_container
from chat_digest.services.summary_client import SummarizationResult

START = datetime(2024, 1, 15, 12, 0, 0)


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeSummarizer:
    """记录调用的摘要服务；errors 中的异常按顺序抛出"""

    def __init__(self):
        self.calls = []
        self.errors = []

    async def summarize(self, conversation_id, lines, period_start, period_end):
        self.calls.append(
            {
                "conversation_id": conversation_id,
                "lines": list(lines),
                "period_start": period_start,
                "period_end": period_end,
            }
        )
        if self.errors:
            raise self.errors.pop(0)
        return SummarizationResult(
            summary=f"Summary of {len(lines)} messages",
            tokens_used=42,
            model="fake-model",
        )


class FakeClassifier:
    """按消息内容返回预设的分类结果"""

    def __init__(self, results=None, error=None):
        self.results = results or {}
        self.error = error

    async def classify(self, text, candidate_labels):
        if self.error is not None:
            raise self.error
        return self.results.get(text, [("personal conversation", 0.9)])


def make_event(body, timestamp, chat_id="family-chat", sender="Mom", package="com.whatsapp"):
    return MessageEvent(
        chatId=chat_id,
        sender=sender,
        body=body,
        timestamp=to_epoch_ms(timestamp),
        packageName=package,
    )


def make_request(device_id, events):
    return IngestRequest(
        device_id=device_id,
        events=events,
        timestamp=to_epoch_ms(START),
        batch_size=len(events),
        app_version="1.0.0",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def summarizer():
    return FakeSummarizer()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        admin_api_key="admin_secret_key",
        worker_enabled=False,
        classifier_enabled=False,
        window_minutes=60,
        grace_period_minutes=5,
        min_messages_for_summary=5,
        job_max_attempts=3,
        job_backoff_base_seconds=2.0,
        job_visibility_timeout_seconds=300,
    )


@pytest.fixture
async def container(settings, summarizer, clock):
    container = build_container(settings, summarizer=summarizer, clock=clock)
    await container.database.init_models()
    yield container
    await container.aclose()


@pytest.fixture
async def device(container):
    device, _ = await container.authenticator.register("device-1")
    return device
