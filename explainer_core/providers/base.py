"""Provider 抽象接口。

Gateway 不直接依赖具体厂商的 HTTP 协议，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（OpenAIClient、GeminiClient）。
- 负责：将 ChatRequest 转成具体 API 请求，并把响应 JSON 解析为 ChatResult。
- 不负责错误归类：HTTP 错误以 ProviderResponseError 原样抛出，
  由 Gateway 统一映射。
"""

import json
from typing import Any, Dict, Iterable, Iterator, Protocol

from explainer_core.domain.models import ChatRequest, ChatResult, ChatStreamChunk, ChatUsage


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志。
    - model: 实际请求的模型 ID。
    - complete(req): 执行一次非流式调用，返回统一的 ChatResult。
    - stream(req): 执行一次流式调用，按到达顺序逐个产出增量。
    """

    name: str
    model: str

    def complete(self, req: ChatRequest) -> ChatResult:
        ...

    def stream(self, req: ChatRequest) -> Iterable[ChatStreamChunk]:
        ...


def iter_sse_json(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    """解析 SSE 行，产出每个 data 字段中的 JSON 对象。

    空行、[DONE] 以及无法解析的行会被跳过。
    """

    for line in lines:
        if not line:
            continue
        data_str = line
        if data_str.startswith("data:"):
            data_str = data_str[5:].strip()
        else:
            data_str = data_str.strip()
        if not data_str or data_str == "[DONE]":
            continue
        try:
            payload = json.loads(data_str)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            yield payload


def parse_usage(usage_raw: Dict[str, Any] | None) -> ChatUsage | None:
    if not usage_raw:
        return None
    return ChatUsage(
        prompt_tokens=usage_raw.get("prompt_tokens", 0),
        completion_tokens=usage_raw.get("completion_tokens", 0),
        total_tokens=usage_raw.get("total_tokens", 0),
    )


def error_message(data: Any, default: str) -> str:
    """从错误响应体（dict 或 JSON 字符串）中提取 error.message。"""

    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError:
            return data or default
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
    return default
