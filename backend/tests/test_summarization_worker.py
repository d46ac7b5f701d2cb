import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from chat_digest.models.job import JobState
from chat_digest.models.message import Message
from chat_digest.models.summary import Summary
from chat_digest.services.classifier_client import ClassifierError
from chat_digest.services.container import build_container
from chat_digest.services.repositories.summary_repository import SummaryRepository
from chat_digest.services.summarization_worker import OutcomeStatus
from chat_digest.services.summary_client import SummaryBackendError
from chat_digest.tasks.worker import WorkerPool
from tests.conftest import FakeClassifier, make_event, make_request

WINDOW_START = datetime(2024, 1, 15, 10, 0)
WINDOW_END = datetime(2024, 1, 15, 11, 0)
DUE = datetime(2024, 1, 15, 11, 5)


@pytest.fixture(autouse=True)
def morning(clock):
    clock.now = datetime(2024, 1, 15, 10, 0)


@pytest.fixture
def pool(container):
    return WorkerPool(container.job_queue, container.worker, concurrency=1, poll_interval=0.01, name="test")


async def ingest(container, device, bodies, start=WINDOW_START + timedelta(minutes=5), step=timedelta(minutes=10)):
    events = [make_event(body, start + step * i) for i, body in enumerate(bodies)]
    return await container.ingestion.ingest(make_request(device.id, events), device)


async def summaries(container):
    async with container.database.sessionmaker() as session:
        result = await session.execute(select(Summary).order_by(Summary.created_at))
        return result.scalars().all()


async def unprocessed_count(container):
    async with container.database.sessionmaker() as session:
        return await session.scalar(select(func.count(Message.id)).where(Message.processed.is_(False)))


@pytest.mark.asyncio
async def test_family_window_is_summarized_once(container, device, clock, summarizer):
    await ingest(container, device, [f"family message {i}" for i in range(5)])

    jobs = await container.job_queue.list_jobs(state=None)
    assert len(jobs) == 1
    assert jobs[0].key == "family-chat:2024-01-15T10:00:00"
    assert jobs[0].due_at == DUE

    clock.now = DUE - timedelta(seconds=1)
    assert await container.job_queue.lease("early") is None

    clock.now = DUE
    job = await container.job_queue.lease("worker-a")
    outcome = await container.worker.process(job)

    assert outcome.status == OutcomeStatus.SUCCEEDED
    assert outcome.reason == "summarized"
    assert outcome.marked_processed == 5

    stored = await summaries(container)
    assert len(stored) == 1
    assert stored[0].period_start == WINDOW_START
    assert stored[0].period_end == WINDOW_END
    assert stored[0].message_count == 5
    assert stored[0].model == "fake-model"
    assert stored[0].tokens_used == 42
    assert await unprocessed_count(container) == 0

    call = summarizer.calls[0]
    assert [line.body for line in call["lines"]] == [f"family message {i}" for i in range(5)]
    assert call["period_start"] == WINDOW_START


@pytest.mark.asyncio
async def test_lines_are_ordered_by_original_timestamp(container, device, clock, summarizer):
    await ingest(container, device, ["e", "d", "c", "b", "a"], start=WINDOW_START + timedelta(minutes=50), step=timedelta(minutes=-10))

    clock.now = DUE
    await container.worker.process(await container.job_queue.lease("worker-a"))

    assert [line.body for line in summarizer.calls[0]["lines"]] == ["a", "b", "c", "d", "e"]


@pytest.mark.asyncio
async def test_below_minimum_is_skipped_until_fifth_message(container, device, clock, pool, summarizer):
    await ingest(container, device, [f"message {i}" for i in range(4)])

    clock.now = DUE
    assert await pool.run_once("worker-a")
    assert summarizer.calls == []
    assert await summaries(container) == []
    assert await unprocessed_count(container) == 4
    assert (await container.job_queue.counts_by_state()) == {"completed": 1}

    # 窗口已过执行时间，第五条消息（补录）触发一个立即执行的新任务
    await ingest(container, device, ["message 4"], start=WINDOW_START + timedelta(minutes=50))
    assert await pool.run_once("worker-a")

    stored = await summaries(container)
    assert len(stored) == 1
    assert stored[0].message_count == 5
    assert await unprocessed_count(container) == 0


@pytest.mark.asyncio
async def test_blocked_messages_are_filtered_but_marked(container, device, clock, summarizer):
    bodies = [f"dinner plan {i}" for i in range(5)] + ["Click here for a limited time offer"]
    await ingest(container, device, bodies, step=timedelta(minutes=8))

    clock.now = DUE
    outcome = await container.worker.process(await container.job_queue.lease("worker-a"))

    assert outcome.reason == "summarized"
    assert outcome.marked_processed == 6
    assert len(summarizer.calls[0]["lines"]) == 5

    stored = (await summaries(container))[0]
    assert stored.message_count == 5
    assert stored.meta["original_message_count"] == 6
    assert stored.meta["filtered_message_count"] == 5
    assert stored.meta["blocked_message_count"] == 1
    assert stored.meta["job_key"] == "family-chat:2024-01-15T10:00:00"
    assert await unprocessed_count(container) == 0


@pytest.mark.asyncio
async def test_all_filtered_window_is_a_no_op(container, device, clock, summarizer):
    await ingest(container, device, [f"buy now, discount {i}" for i in range(5)])

    clock.now = DUE
    outcome = await container.worker.process(await container.job_queue.lease("worker-a"))

    assert outcome.status == OutcomeStatus.SUCCEEDED
    assert outcome.reason == "all_filtered"
    assert summarizer.calls == []
    assert await summaries(container) == []
    assert await unprocessed_count(container) == 5


@pytest.mark.asyncio
async def test_retry_then_success(container, device, clock, pool, summarizer):
    summarizer.errors = [
        SummaryBackendError("timeout", kind="timeout", retryable=True),
        SummaryBackendError("quota", kind="quota", retryable=True),
    ]
    await ingest(container, device, [f"message {i}" for i in range(5)])

    clock.now = DUE
    assert await pool.run_once("worker-a")
    assert not await pool.run_once("worker-a")

    clock.advance(seconds=2)
    assert await pool.run_once("worker-a")
    clock.advance(seconds=4)
    assert await pool.run_once("worker-a")

    assert len(summarizer.calls) == 3
    assert len(await summaries(container)) == 1
    job = (await container.job_queue.list_jobs(state="completed"))[0]
    assert job.attempts == 3
    assert job.last_error.startswith("quota")


@pytest.mark.asyncio
async def test_retries_exhausted_leaves_messages_unprocessed(container, device, clock, pool, summarizer):
    summarizer.errors = [SummaryBackendError("down", kind="server", retryable=True) for _ in range(3)]
    await ingest(container, device, [f"message {i}" for i in range(5)])

    clock.now = DUE
    for _ in range(3):
        assert await pool.run_once("worker-a")
        clock.advance(minutes=1)

    dead = await container.job_queue.list_jobs(state="dead")
    assert len(dead) == 1
    assert dead[0].attempts == 3
    assert await summaries(container) == []
    assert await unprocessed_count(container) == 5


@pytest.mark.asyncio
async def test_permanent_backend_error_goes_to_dead(container, device, clock, pool, summarizer):
    summarizer.errors = [SummaryBackendError("bad request", kind="rejected", retryable=False)]
    await ingest(container, device, [f"message {i}" for i in range(5)])

    clock.now = DUE
    assert await pool.run_once("worker-a")

    assert (await container.job_queue.counts_by_state()) == {JobState.DEAD.value: 1}
    assert len(summarizer.calls) == 1


@pytest.mark.asyncio
async def test_unexpected_exception_is_retried(container, device, clock, pool, summarizer):
    summarizer.errors = [RuntimeError("boom")]
    await ingest(container, device, [f"message {i}" for i in range(5)])

    clock.now = DUE
    assert await pool.run_once("worker-a")
    job = (await container.job_queue.list_jobs(state="delayed"))[0]
    assert "RuntimeError" in job.last_error

    clock.advance(seconds=2)
    assert await pool.run_once("worker-a")
    assert len(await summaries(container)) == 1


@pytest.mark.asyncio
async def test_existing_summary_only_marks_messages(container, device, clock, summarizer):
    await ingest(container, device, [f"message {i}" for i in range(5)])
    async with container.database.sessionmaker() as session:
        SummaryRepository(session).add_summary(
            conversation_id="family-chat",
            summary_text="already there",
            period_start=WINDOW_START,
            period_end=WINDOW_END,
            message_count=5,
            model="fake-model",
            tokens_used=10,
        )
        await session.commit()

    clock.now = DUE
    outcome = await container.worker.process(await container.job_queue.lease("worker-a"))

    assert outcome.reason == "already_summarized"
    assert outcome.marked_processed == 5
    assert summarizer.calls == []
    assert len(await summaries(container)) == 1
    assert await unprocessed_count(container) == 0


@pytest.mark.asyncio
async def test_duplicate_execution_after_lease_expiry_writes_one_summary(container, device, clock):
    await ingest(container, device, [f"message {i}" for i in range(5)])

    clock.now = DUE
    stale = await container.job_queue.lease("worker-a")
    clock.advance(seconds=301)
    fresh = await container.job_queue.lease("worker-b")
    assert fresh.id == stale.id

    first = await container.worker.process(fresh)
    second = await container.worker.process(stale)

    assert first.reason == "summarized"
    assert second.status == OutcomeStatus.SUCCEEDED
    assert len(await summaries(container)) == 1
    assert await container.job_queue.complete(fresh.id, "worker-b")
    assert not await container.job_queue.complete(stale.id, "worker-a")


@pytest.mark.asyncio
async def test_pool_start_and_stop(container, pool):
    await pool.start()
    assert pool.running
    await pool.stop()
    assert not pool.running


async def run_with_classifier(settings, summarizer, clock, classifier, **overrides):
    """用指定分类器装配容器，跑一个 5 条消息的窗口，返回 (outcome, 摘要列表, 未处理数)"""
    container = build_container(
        settings.model_copy(update=overrides),
        summarizer=summarizer,
        classifier=classifier,
        clock=clock,
    )
    try:
        await container.database.init_models()
        device, _ = await container.authenticator.register("device-1")
        await ingest(container, device, [f"message {i}" for i in range(5)])
        clock.now = DUE
        outcome = await container.worker.process(await container.job_queue.lease("worker-a"))
        return outcome, await summaries(container), await unprocessed_count(container)
    finally:
        await container.aclose()


@pytest.mark.asyncio
async def test_classifier_outage_does_not_block_summary(settings, summarizer, clock):
    classifier = FakeClassifier(error=ClassifierError("service unavailable"))

    outcome, stored, unprocessed = await run_with_classifier(settings, summarizer, clock, classifier)

    assert outcome.status == OutcomeStatus.SUCCEEDED
    assert outcome.reason == "summarized"
    assert len(stored) == 1
    assert stored[0].message_count == 5
    assert unprocessed == 0


@pytest.mark.asyncio
async def test_classifier_timeout_does_not_block_summary(settings, summarizer, clock):
    class SlowClassifier:
        async def classify(self, text, candidate_labels):
            await asyncio.sleep(1)
            return [("spam content", 1.0)]

    outcome, stored, unprocessed = await run_with_classifier(
        settings, summarizer, clock, SlowClassifier(), classifier_timeout_seconds=0.01
    )

    assert outcome.status == OutcomeStatus.SUCCEEDED
    assert len(stored) == 1
    assert stored[0].message_count == 5
    assert unprocessed == 0


@pytest.mark.asyncio
async def test_window_messages_are_classified_concurrently(settings, summarizer, clock):
    class CountingClassifier:
        def __init__(self):
            self.in_flight = 0
            self.peak = 0

        async def classify(self, text, candidate_labels):
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
            await asyncio.sleep(0.02)
            self.in_flight -= 1
            return [("family discussion", 0.9)]

    classifier = CountingClassifier()
    outcome, stored, _ = await run_with_classifier(
        settings, summarizer, clock, classifier, classifier_max_concurrency=3
    )

    assert outcome.reason == "summarized"
    assert classifier.peak == 3
    # 并发分类不改变送去摘要的顺序
    assert [line.body for line in summarizer.calls[0]["lines"]] == [f"message {i}" for i in range(5)]


@pytest.mark.asyncio
async def test_late_messages_below_minimum_after_summary_stay_unprocessed(container, device, clock, pool):
    await ingest(container, device, [f"message {i}" for i in range(5)])
    clock.now = DUE
    assert await pool.run_once("worker-a")
    assert len(await summaries(container)) == 1

    # 已有摘要的窗口补录 2 条消息：先过数量门槛，数量不足直接跳过，不补标记
    await ingest(container, device, ["late 0", "late 1"], start=WINDOW_START + timedelta(minutes=50), step=timedelta(minutes=1))
    job = await container.job_queue.lease("worker-a")
    outcome = await container.worker.process(job)

    assert outcome.reason == "below_minimum"
    assert len(await summaries(container)) == 1
    assert await unprocessed_count(container) == 2
