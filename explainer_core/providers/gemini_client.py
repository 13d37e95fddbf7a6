"""Google Gemini Provider 适配器。

与 OpenAI 的多轮 messages 不同，Gemini 使用“单个 prompt + 生成配置”：
- 非流式: POST {base_url}/models/{model}:generateContent
- 流式:   POST {base_url}/models/{model}:streamGenerateContent?alt=sse
- 认证: x-goog-api-key: <api_key>

system 指令会被拼入 prompt 文本；回答文本为 candidates[0].content.parts[].text 的拼接。
被安全策略拦截（promptFeedback.blockReason 或 finishReason=SAFETY 且无文本）时
抛出 ProviderResponseError，由 Gateway 归类为内容过滤错误。
"""

import json
from typing import Any, Dict, Iterable, Optional

import httpx

from explainer_core.config.settings import settings
from explainer_core.domain.exceptions import ProviderResponseError, ValidationError
from explainer_core.domain.models import ChatRequest, ChatResult, ChatStreamChunk, ChatUsage
from explainer_core.providers.base import error_message, iter_sse_json
from explainer_core.providers.registry import GEMINI_INFO


SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
]

# 这些 finishReason 表示回答被策略截断
_BLOCKED_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"}


class GeminiClient:
    """Gemini 提供方客户端实现。"""

    name = "gemini"

    def __init__(self, credential: str, cfg=settings):
        if not isinstance(credential, str) or not credential.strip():
            raise ValidationError(code="MISSING_API_KEY", message="Gemini API key not set")
        self._credential = credential.strip()
        self._settings = cfg
        self.model = getattr(cfg, "gemini_model", None) or GEMINI_INFO.model

    def complete(self, req: ChatRequest) -> ChatResult:
        payload = self._build_payload(req)
        with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
            resp = client.post(self._url("generateContent"), json=payload, headers=self._headers())
        if resp.status_code >= 400:
            raise self._http_error(resp.status_code, resp.text)
        data = resp.json()
        chunk = self._parse_chunk(data)
        if not chunk.text:
            raise ProviderResponseError(
                self.name,
                "No response received from Gemini API",
                body=json.dumps(data, ensure_ascii=False),
            )
        return ChatResult(
            provider=self.name,
            model=self.model,
            text=chunk.text,
            finish_reason=chunk.finish_reason,
            usage=chunk.usage,
            raw=data,
        )

    def stream(self, req: ChatRequest) -> Iterable[ChatStreamChunk]:
        payload = self._build_payload(req)
        with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
            with client.stream(
                "POST",
                self._url("streamGenerateContent"),
                params={"alt": "sse"},
                json=payload,
                headers=self._headers(),
            ) as resp:
                if resp.status_code >= 400:
                    body = resp.read().decode("utf-8", errors="replace")
                    raise self._http_error(resp.status_code, body)
                for data in iter_sse_json(resp.iter_lines()):
                    if data.get("error"):
                        raise ProviderResponseError(
                            self.name,
                            error_message(data, "Gemini stream error"),
                            body=json.dumps(data, ensure_ascii=False),
                        )
                    yield self._parse_chunk(data)

    # ---- 辅助方法 ----

    def _url(self, method: str) -> str:
        base = getattr(self._settings, "gemini_base_url", None) or GEMINI_INFO.base_url
        return f"{base.rstrip('/')}/models/{self.model}:{method}"

    def _headers(self) -> Dict[str, str]:
        return {
            "x-goog-api-key": self._credential,
            "Content-Type": "application/json",
        }

    def _build_payload(self, req: ChatRequest) -> dict:
        prompt = req.user_text
        if req.system_text:
            prompt = f"{req.system_text}\n\n{prompt}"
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "maxOutputTokens": req.max_tokens,
                "temperature": req.temperature,
            },
            "safetySettings": SAFETY_SETTINGS,
        }

    def _parse_chunk(self, data: Dict[str, Any]) -> ChatStreamChunk:
        """解析一次 generateContent 响应（流式时为其中一段）。"""

        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise ProviderResponseError(
                self.name,
                f"Prompt blocked by Gemini safety filters (blockReason={block_reason})",
                body=json.dumps(data, ensure_ascii=False),
            )
        text = ""
        finish_reason: Optional[str] = None
        candidates = data.get("candidates") or []
        if candidates:
            first = candidates[0]
            parts = (first.get("content") or {}).get("parts") or []
            text = "".join(p.get("text") or "" for p in parts if isinstance(p, dict))
            finish_reason = first.get("finishReason")
        if not text and finish_reason in _BLOCKED_FINISH_REASONS:
            raise ProviderResponseError(
                self.name,
                f"Response blocked by Gemini safety filters (finishReason={finish_reason})",
                body=json.dumps(data, ensure_ascii=False),
            )
        return ChatStreamChunk(
            provider=self.name,
            model=self.model,
            text=text,
            finish_reason=finish_reason,
            usage=self._parse_usage(data.get("usageMetadata")),
            raw=data,
        )

    @staticmethod
    def _parse_usage(meta: Optional[Dict[str, Any]]) -> Optional[ChatUsage]:
        if not meta:
            return None
        return ChatUsage(
            prompt_tokens=meta.get("promptTokenCount", 0),
            completion_tokens=meta.get("candidatesTokenCount", 0),
            total_tokens=meta.get("totalTokenCount", 0),
        )

    def _http_error(self, status_code: int, body: str) -> ProviderResponseError:
        return ProviderResponseError(
            self.name,
            error_message(body, f"Gemini API error {status_code}"),
            status_code=status_code,
            body=body,
        )
