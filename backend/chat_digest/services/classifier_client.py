"""零样本文本分类客户端（Hugging Face 推理接口格式）"""

import logging
from typing import Any, Sequence

import httpx

logger = logging.getLogger(__name__)


class ClassifierError(Exception):
    """分类服务不可用、超时或返回格式不正确"""


class ZeroShotClassifierClient:
    def __init__(
        self,
        api_url: str,
        api_key: str | None = None,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._api_url = api_url
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def classify(self, text: str, candidate_labels: Sequence[str]) -> list[tuple[str, float]]:
        """
        对文本做零样本分类

        Returns:
            按置信度从高到低排列的 (label, score) 列表
        """
        payload = {"inputs": text, "parameters": {"candidate_labels": list(candidate_labels)}}
        try:
            response = await self._client.post(self._api_url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise ClassifierError(f"分类请求失败: {exc}") from exc
        except ValueError as exc:
            raise ClassifierError("分类服务返回的不是 JSON") from exc

        return self._parse(data)

    @staticmethod
    def _parse(data: Any) -> list[tuple[str, float]]:
        # 兼容两种返回格式：{"labels": [...], "scores": [...]} 和 [{"label": ..., "score": ...}]
        try:
            if isinstance(data, dict) and "labels" in data and "scores" in data:
                pairs = [(str(label), float(score)) for label, score in zip(data["labels"], data["scores"])]
            elif isinstance(data, list):
                pairs = [(str(item["label"]), float(item["score"])) for item in data]
            else:
                raise ClassifierError(f"无法识别的分类结果格式: {type(data).__name__}")
        except (KeyError, TypeError, ValueError) as exc:
            raise ClassifierError("分类结果格式不正确") from exc

        if not pairs:
            raise ClassifierError("分类结果为空")
        return sorted(pairs, key=lambda pair: pair[1], reverse=True)

    async def aclose(self) -> None:
        await self._client.aclose()
