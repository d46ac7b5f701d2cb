import asyncio

import httpx
import pytest

from chat_digest.services.classifier_client import ClassifierError, ZeroShotClassifierClient
from chat_digest.services.content_filter import ContentFilter, has_blocked_phrase
from tests.conftest import FakeClassifier


def test_blocked_phrase_is_case_insensitive():
    assert has_blocked_phrase("CLICK HERE to win")
    assert has_blocked_phrase("Use promo code SAVE10")
    assert not has_blocked_phrase("Dinner at 7?")


@pytest.mark.asyncio
async def test_rules_only_filter():
    content_filter = ContentFilter()
    assert not content_filter.semantic_enabled
    assert await content_filter.is_blocked("Limited time offer, buy now!")
    assert not await content_filter.is_blocked("See you at grandma's on Sunday")


@pytest.mark.asyncio
async def test_semantic_filter_blocks_confident_spam():
    classifier = FakeClassifier({"hello friend": [("financial scam", 0.95), ("personal conversation", 0.05)]})
    content_filter = ContentFilter(classifier, threshold=0.7)
    assert await content_filter.is_blocked("hello friend")


@pytest.mark.asyncio
async def test_semantic_filter_requires_score_above_threshold():
    classifier = FakeClassifier({"maybe spam": [("spam content", 0.7), ("personal conversation", 0.3)]})
    content_filter = ContentFilter(classifier, threshold=0.7)
    assert not await content_filter.is_blocked("maybe spam")


@pytest.mark.asyncio
async def test_semantic_filter_keeps_benign_labels():
    classifier = FakeClassifier({"family plans": [("family discussion", 0.99)]})
    assert not await ContentFilter(classifier).is_blocked("family plans")


@pytest.mark.asyncio
async def test_classifier_error_fails_open():
    content_filter = ContentFilter(FakeClassifier(error=ClassifierError("service down")))
    assert not await content_filter.is_blocked("anything at all")


@pytest.mark.asyncio
async def test_classifier_timeout_fails_open():
    class SlowClassifier:
        async def classify(self, text, candidate_labels):
            await asyncio.sleep(1)
            return [("spam content", 1.0)]

    content_filter = ContentFilter(SlowClassifier(), timeout=0.01)
    assert not await content_filter.is_blocked("slow message")


@pytest.mark.asyncio
async def test_empty_classifier_result_fails_open():
    content_filter = ContentFilter(FakeClassifier({"odd": []}))
    assert not await content_filter.is_blocked("odd")


@pytest.mark.asyncio
async def test_classifier_client_parses_label_score_lists():
    def handler(request):
        return httpx.Response(200, json={"labels": ["advertisement", "personal conversation"], "scores": [0.2, 0.8]})

    client = ZeroShotClassifierClient("https://classifier.test/model", transport=httpx.MockTransport(handler))
    ranked = await client.classify("hi", ["advertisement", "personal conversation"])
    await client.aclose()
    assert ranked[0] == ("personal conversation", 0.8)


@pytest.mark.asyncio
async def test_classifier_client_parses_list_form():
    def handler(request):
        return httpx.Response(200, json=[{"label": "spam content", "score": 0.9}, {"label": "news sharing", "score": 0.1}])

    client = ZeroShotClassifierClient("https://classifier.test/model", transport=httpx.MockTransport(handler))
    ranked = await client.classify("hi", ["spam content", "news sharing"])
    await client.aclose()
    assert ranked == [("spam content", 0.9), ("news sharing", 0.1)]


@pytest.mark.asyncio
async def test_classifier_client_raises_on_http_error():
    client = ZeroShotClassifierClient(
        "https://classifier.test/model",
        transport=httpx.MockTransport(lambda request: httpx.Response(503, text="loading")),
    )
    with pytest.raises(ClassifierError):
        await client.classify("hi", ["spam content"])
    await client.aclose()
