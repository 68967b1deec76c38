"""OpenAI 兼容 chat/completions 分类器客户端。

- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

只发送单条 user 消息，temperature 固定为 0，返回第一条 choice 的 content 文本。
"""

from typing import Any, Dict, Optional

import httpx

from recall_core.config.settings import Settings, settings
from recall_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError


class ChatCompletionsClassifier:
    """预取闸门使用的 LLM 分类器。"""

    name = "chat-completions"

    def __init__(self, cfg: Settings = settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._settings = cfg
        self._transport = transport

    async def classify(self, prompt: str) -> str:
        if not self._settings.llm_gate_api_key:
            raise ValidationError(code="MISSING_API_KEY", message="RECALL_LLM_GATE_API_KEY not set")
        payload = self._build_payload(prompt)
        base = self._settings.llm_gate_base_url.rstrip("/")
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.http_timeout,
                trust_env=False,
                transport=self._transport,
            ) as client:
                resp = await client.post(
                    f"{base}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {self._settings.llm_gate_api_key}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="classifier rate limit")
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        return self._parse_response(resp.json())

    def _build_payload(self, prompt: str) -> Dict[str, Any]:
        return {
            "model": self._settings.llm_gate_model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0,
            "stream": False,
        }

    @staticmethod
    def _parse_response(data: Dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices:
            raise ApiError(code="EMPTY_RESPONSE", message="classifier returned no choices")
        msg = choices[0].get("message") or {}
        return msg.get("content") or ""
