"""OpenAI Provider 适配器。

使用 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>
- 请求体: system + user 两轮 messages，stream=True 时以 SSE 返回 delta。

本实现只负责 JSON 转换与传输，不做错误归类：HTTP 错误状态、
被内容过滤截断的回答都以 ProviderResponseError 抛出，
网络错误（httpx.RequestError）原样向上抛出，由 Gateway 统一映射。
"""

import json
from typing import Dict, Iterable, Optional

import httpx

from explainer_core.config.settings import settings
from explainer_core.domain.exceptions import ProviderResponseError, ValidationError
from explainer_core.domain.models import ChatRequest, ChatResult, ChatStreamChunk
from explainer_core.providers.base import error_message, iter_sse_json, parse_usage
from explainer_core.providers.registry import OPENAI_INFO


class OpenAIClient:
    """OpenAI 提供方客户端实现。"""

    name = "openai"

    def __init__(self, credential: str, cfg=settings):
        if not isinstance(credential, str) or not credential.strip():
            raise ValidationError(code="MISSING_API_KEY", message="OpenAI API key not set")
        self._credential = credential.strip()
        self._settings = cfg
        self.model = getattr(cfg, "openai_model", None) or OPENAI_INFO.model

    # ---- 非流式 ----

    def complete(self, req: ChatRequest) -> ChatResult:
        payload = self._build_payload(req, stream=False)
        with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
            resp = client.post(self._url(), json=payload, headers=self._headers())
        if resp.status_code >= 400:
            raise self._http_error(resp.status_code, resp.text)
        data = resp.json()
        return self._parse_response(data)

    # ---- 流式 ----

    def stream(self, req: ChatRequest) -> Iterable[ChatStreamChunk]:
        payload = self._build_payload(req, stream=True)
        with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
            with client.stream("POST", self._url(), json=payload, headers=self._headers()) as resp:
                if resp.status_code >= 400:
                    body = resp.read().decode("utf-8", errors="replace")
                    raise self._http_error(resp.status_code, body)
                for data in iter_sse_json(resp.iter_lines()):
                    if data.get("error"):
                        raise ProviderResponseError(
                            self.name,
                            error_message(data, "OpenAI stream error"),
                            body=json.dumps(data, ensure_ascii=False),
                        )
                    chunk = self._parse_stream_chunk(data)
                    if chunk.finish_reason == "content_filter":
                        raise ProviderResponseError(
                            self.name,
                            "Response stopped by content_filter",
                            body=json.dumps(data, ensure_ascii=False),
                        )
                    yield chunk

    # ---- 辅助方法 ----

    def _url(self) -> str:
        base = getattr(self._settings, "openai_base_url", None) or OPENAI_INFO.base_url
        return f"{base.rstrip('/')}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._credential}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, req: ChatRequest, stream: bool) -> dict:
        return {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in req.messages],
            "max_tokens": req.max_tokens,
            "temperature": req.temperature,
            "stream": stream,
        }

    def _parse_response(self, data: dict) -> ChatResult:
        choices = data.get("choices") or []
        if not choices:
            raise ProviderResponseError(self.name, "No response received from OpenAI API", body=json.dumps(data))
        first = choices[0]
        finish_reason = first.get("finish_reason")
        content = (first.get("message") or {}).get("content") or ""
        if not content and finish_reason == "content_filter":
            raise ProviderResponseError(self.name, "Response blocked by content_filter", body=json.dumps(data))
        return ChatResult(
            provider=self.name,
            model=data.get("model") or self.model,
            text=content,
            finish_reason=finish_reason,
            usage=parse_usage(data.get("usage")),
            raw=data,
        )

    def _parse_stream_chunk(self, data: dict) -> ChatStreamChunk:
        text = ""
        finish_reason: Optional[str] = None
        choices = data.get("choices") or []
        if choices:
            delta = choices[0].get("delta") or {}
            text = delta.get("content") or ""
            finish_reason = choices[0].get("finish_reason")
        return ChatStreamChunk(
            provider=self.name,
            model=data.get("model") or self.model,
            text=text,
            finish_reason=finish_reason,
            usage=parse_usage(data.get("usage")),
            raw=data,
        )

    def _http_error(self, status_code: int, body: str) -> ProviderResponseError:
        return ProviderResponseError(
            self.name,
            error_message(body, f"OpenAI API error {status_code}"),
            status_code=status_code,
            body=body,
        )
