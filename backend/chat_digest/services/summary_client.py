"""摘要服务客户端（OpenAI 兼容的 chat/completions 接口）"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Sequence

import httpx

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful assistant that creates concise, informative summaries of WhatsApp conversations. "
    "Focus on key topics, decisions, and important information while maintaining context."
)


@dataclass(frozen=True)
class ChatLine:
    sender: str
    body: str
    timestamp: datetime


@dataclass(frozen=True)
class SummarizationResult:
    summary: str
    tokens_used: int | None
    model: str


class SummaryBackendError(Exception):
    """
    摘要服务调用失败

    kind: timeout / transport / quota / server / malformed / rejected
    retryable: 是否值得重试（rejected 表示输入或认证被服务端拒绝，重试也不会成功）
    """

    def __init__(self, message: str, *, kind: str, retryable: bool) -> None:
        super().__init__(message)
        self.kind = kind
        self.retryable = retryable


class Summarizer(Protocol):
    async def summarize(
        self,
        conversation_id: str,
        lines: Sequence[ChatLine],
        period_start: datetime,
        period_end: datetime,
    ) -> SummarizationResult: ...


class SummaryClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        model: str = "gpt-4o-mini",
        max_tokens: int = 1000,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._model = model
        self._max_tokens = max_tokens
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    @staticmethod
    def build_prompt(
        conversation_id: str,
        lines: Sequence[ChatLine],
        period_start: datetime,
        period_end: datetime,
    ) -> str:
        formatted = []
        for line in lines:
            timestamp = line.timestamp.strftime("%Y-%m-%d %H:%M:%S")
            formatted.append(f"[{timestamp}] {line.sender}: {line.body}")

        time_range = f"{period_start:%Y-%m-%d %H:%M} - {period_end:%Y-%m-%d %H:%M} UTC"
        return (
            f"Please create a concise summary of this WhatsApp conversation from {time_range}.\n\n"
            f"Chat ID: {conversation_id}\n"
            f"Number of messages: {len(lines)}\n\n"
            "Conversation:\n" + "\n".join(formatted) + "\n\n"
            "Please provide a summary that includes:\n"
            "1. Main topics discussed\n"
            "2. Key decisions or conclusions reached\n"
            "3. Important announcements or updates\n"
            "4. Action items or follow-ups mentioned\n\n"
            "Format the summary in markdown with clear sections. "
            "Keep it informative but concise (max 500 words)."
        )

    async def summarize(
        self,
        conversation_id: str,
        lines: Sequence[ChatLine],
        period_start: datetime,
        period_end: datetime,
    ) -> SummarizationResult:
        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self.build_prompt(conversation_id, lines, period_start, period_end)},
            ],
            "max_tokens": self._max_tokens,
            "temperature": 0.3,
            "presence_penalty": 0.1,
            "frequency_penalty": 0.1,
        }

        logger.info(f"请求摘要服务: 会话 {conversation_id}，{len(lines)} 条消息")
        try:
            response = await self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as exc:
            raise SummaryBackendError(f"摘要服务超时: {exc}", kind="timeout", retryable=True) from exc
        except httpx.HTTPStatusError as exc:
            raise self._status_error(exc) from exc
        except httpx.HTTPError as exc:
            raise SummaryBackendError(f"摘要服务请求失败: {exc}", kind="transport", retryable=True) from exc
        except ValueError as exc:
            raise SummaryBackendError("摘要服务返回的不是 JSON", kind="malformed", retryable=True) from exc

        try:
            summary_text = (data["choices"][0]["message"]["content"] or "").strip()
            model_name = data.get("model") or self._model
            usage = data.get("usage") or {}
            tokens_used = usage.get("total_tokens")
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            logger.error(f"摘要服务返回格式不符合预期: {json.dumps(data, ensure_ascii=False)[:500]}")
            raise SummaryBackendError("摘要服务返回格式不正确", kind="malformed", retryable=True) from exc

        if not summary_text:
            raise SummaryBackendError("摘要服务没有返回内容", kind="malformed", retryable=True)

        logger.info(f"会话 {conversation_id} 摘要生成完成，使用 {tokens_used} tokens（{model_name}）")
        return SummarizationResult(summary=summary_text, tokens_used=tokens_used, model=model_name)

    @staticmethod
    def _status_error(exc: httpx.HTTPStatusError) -> SummaryBackendError:
        status = exc.response.status_code
        detail = exc.response.text[:300]
        if status == 429:
            return SummaryBackendError(f"摘要服务限流或额度不足: {detail}", kind="quota", retryable=True)
        if status == 408 or status >= 500:
            return SummaryBackendError(f"摘要服务异常 ({status}): {detail}", kind="server", retryable=True)
        return SummaryBackendError(f"摘要服务拒绝请求 ({status}): {detail}", kind="rejected", retryable=False)

    async def aclose(self) -> None:
        await self._client.aclose()
