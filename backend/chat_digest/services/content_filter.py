"""内容过滤：关键词规则 + 可选的语义分类

分类器出错、超时或返回异常时一律放行（fail open），不能因为分类服务故障阻塞摘要流程。
"""

import asyncio
import logging
from typing import Protocol, Sequence

logger = logging.getLogger(__name__)

BLOCKED_PHRASES: tuple[str, ...] = (
    # 垃圾信息
    "click here",
    "limited time",
    "act now",
    "free offer",
    "guaranteed",
    "make money fast",
    "work from home",
    "earn $$",
    "get rich quick",
    # 促销
    "buy now",
    "discount",
    "sale ends",
    "special offer",
    "promo code",
    "save up to",
    "clearance",
    "liquidation",
    "going out of business",
    # 可疑链接 / 转发
    "bit.ly",
    "tinyurl",
    "click link",
    "forward this message",
    "share with friends",
    "send to contacts",
    # 投资类垃圾信息
    "bitcoin",
    "crypto investment",
    "trading signals",
    "forex",
    "investment opportunity",
    "double your money",
    # 钓鱼
    "congratulations you won",
    "you have been selected",
    "claim your prize",
    "verify account",
    "update payment",
)

CANDIDATE_LABELS: tuple[str, ...] = (
    "personal conversation",
    "family discussion",
    "work communication",
    "social planning",
    "news sharing",
    "spam content",
    "promotional material",
    "advertisement",
    "suspicious content",
    "financial scam",
)

BLOCKED_LABELS = frozenset(
    {
        "spam content",
        "promotional material",
        "advertisement",
        "suspicious content",
        "financial scam",
    }
)


class TextClassifier(Protocol):
    async def classify(self, text: str, candidate_labels: Sequence[str]) -> list[tuple[str, float]]: ...


def has_blocked_phrase(text: str, phrases: Sequence[str] = BLOCKED_PHRASES) -> bool:
    lowered = text.lower()
    return any(phrase.lower() in lowered for phrase in phrases)


class ContentFilter:
    def __init__(
        self,
        classifier: TextClassifier | None = None,
        *,
        threshold: float = 0.7,
        timeout: float = 5.0,
        max_concurrency: int = 8,
        phrases: Sequence[str] = BLOCKED_PHRASES,
    ) -> None:
        self._classifier = classifier
        # 限制同时在途的分类请求数，超时只计算请求本身
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._threshold = threshold
        self._timeout = timeout
        self._phrases = tuple(phrase.lower() for phrase in phrases)

    @property
    def semantic_enabled(self) -> bool:
        return self._classifier is not None

    async def is_blocked(self, text: str) -> bool:
        if has_blocked_phrase(text, self._phrases):
            logger.debug("消息命中关键词规则，已过滤")
            return True

        if self._classifier is None:
            return False

        return await self._classify(text)

    async def _classify(self, text: str) -> bool:
        try:
            async with self._semaphore:
                ranked = await asyncio.wait_for(
                    self._classifier.classify(text, CANDIDATE_LABELS),
                    timeout=self._timeout,
                )
            top_label, top_score = ranked[0]
        except asyncio.TimeoutError:
            logger.warning(f"语义分类超时（{self._timeout}s），放行该消息")
            return False
        except Exception as e:
            logger.warning(f"语义分类失败，放行该消息: {e}")
            return False

        logger.debug(f"语义分类结果: {top_label} ({top_score:.3f})")
        return top_label in BLOCKED_LABELS and top_score > self._threshold
