"""Provider Gateway：把两个 Provider 统一为一套能力接口。

- initialize/is_ready/describe_provider: 管理当前唯一的 Provider 客户端。
- analyze/stream_analyze/get_coding_insights: 构造提示词并调用客户端，
  流式调用对每段非空文本恰好回调一次 on_chunk。
- test_connection: 诊断用的最小往返请求，永不抛出异常。

客户端抛出的原始错误在这里被映射为统一的错误类型，
这也是整个包中唯一按 ProviderKind 分支的地方。
"""

import json
import logging
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Type

import httpx

from explainer_core.domain.exceptions import (
    BusinessError,
    ContentFilteredError,
    InvalidCredentialError,
    NotReadyError,
    ProviderResponseError,
    RateLimitError,
    TransportError,
    UnknownProviderError,
    ValidationError,
)
from explainer_core.domain.models import (
    CancellationToken,
    ChatRequest,
    CodingSession,
    ConnectionTestResult,
    ProviderConfig,
    ProviderKind,
)
from explainer_core.infrastructure.logging.logger import log_event
from explainer_core.prompts import (
    build_analysis_request,
    build_connection_test_request,
    build_insights_request,
)
from explainer_core.providers import create_provider
from explainer_core.providers.base import ProviderClient
from explainer_core.providers.registry import ProviderInfo, get_provider_info


ClientFactory = Callable[[ProviderConfig], ProviderClient]

# 错误提示中使用的简短厂商名
_SHORT_NAMES: Mapping[ProviderKind, str] = {
    ProviderKind.OPENAI: "OpenAI",
    ProviderKind.GEMINI: "Gemini",
}

_STATUS_ERRORS: Mapping[ProviderKind, Mapping[int, Type[BusinessError]]] = {
    ProviderKind.OPENAI: {401: InvalidCredentialError, 429: RateLimitError},
    ProviderKind.GEMINI: {429: RateLimitError},
}

# 按顺序匹配，先命中者生效
_MARKER_ERRORS: Mapping[ProviderKind, Sequence[Tuple[Type[BusinessError], Tuple[str, ...]]]] = {
    ProviderKind.OPENAI: (
        (InvalidCredentialError, ("invalid_api_key", "Incorrect API key")),
        (RateLimitError, ("rate_limit_exceeded", "insufficient_quota")),
        (ContentFilteredError, ("content_filter", "content_policy_violation")),
    ),
    ProviderKind.GEMINI: (
        (InvalidCredentialError, ("API_KEY_INVALID", "API key not valid")),
        (RateLimitError, ("RESOURCE_EXHAUSTED", "QUOTA_EXCEEDED")),
        (ContentFilteredError, ("SAFETY", "blockReason", "PROHIBITED_CONTENT")),
    ),
}

_ERROR_TEMPLATES: Mapping[Type[BusinessError], Tuple[str, str, int]] = {
    InvalidCredentialError: (
        "INVALID_CREDENTIAL",
        "Invalid {name} API key. Please check your API key in the settings.",
        401,
    ),
    RateLimitError: (
        "RATE_LIMIT",
        "{name} API rate limit or quota exceeded. Please wait and try again.",
        429,
    ),
    ContentFilteredError: (
        "CONTENT_FILTERED",
        "Content blocked by {name} safety filters. Please try different code.",
        400,
    ),
}


def _as_session(item: Any) -> CodingSession:
    if isinstance(item, CodingSession):
        return item
    language = item.get("language") if isinstance(item, Mapping) else None
    if not language:
        raise ValidationError(code="INVALID_HISTORY", message=f"Coding history entry has no language: {item!r}")
    return CodingSession(language=str(language), topic=item.get("topic"))


class ProviderGateway:
    """统一两个 Provider 的网关。

    生命周期：construct -> initialize -> use -> discard。同一时间只持有一个客户端，
    重新 initialize 会完整替换旧客户端。
    """

    def __init__(self, client_factory: Optional[ClientFactory] = None):
        self._client_factory = client_factory or create_provider
        self._client: Optional[ProviderClient] = None
        self._kind: Optional[ProviderKind] = None
        self._initialized = False

    @property
    def kind(self) -> Optional[ProviderKind]:
        return self._kind

    def initialize(self, config: ProviderConfig) -> bool:
        """为 config.kind 创建客户端；构造失败时返回 False 并保持未就绪。"""

        self._client = None
        self._initialized = False
        self._kind = None
        try:
            kind = ProviderKind.parse(config.kind)
            client = self._client_factory(ProviderConfig(kind=kind, credential=config.credential))
        except Exception as exc:
            log_event(
                logging.WARNING,
                "Provider initialization failed",
                {"provider": str(getattr(config.kind, "value", config.kind))},
                error=str(exc),
            )
            return False
        self._client = client
        self._kind = kind
        self._initialized = True
        log_event(logging.INFO, "Provider initialized", {"provider": kind.value}, model=client.model)
        return True

    def is_ready(self) -> bool:
        return self._initialized and self._client is not None and self._kind is not None

    def describe_provider(self) -> Optional[ProviderInfo]:
        return get_provider_info(self._kind)

    def analyze(self, code: str, language: str) -> str:
        """发送一次非流式分析请求，返回完整回答文本。"""

        client, info = self._require_client()
        req = build_analysis_request(code, language, info.max_tokens, info.temperature)
        return self._complete(client, req, "analyze")

    def stream_analyze(
        self,
        code: str,
        language: str,
        on_chunk: Callable[[str], None],
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        """流式分析：每段非空文本按到达顺序同步回调一次 on_chunk。

        返回即表示流结束。迭代中途的任何错误都会中止并向上抛出；
        cancel_token 被取消后不再读取上游，也不再回调。
        """

        client, info = self._require_client()
        req = build_analysis_request(code, language, info.max_tokens, info.temperature)
        log_ctx = self._log_ctx(client, "stream_analyze")
        log_event(logging.INFO, "Calling provider (stream)", log_ctx)

        try:
            iterator = iter(client.stream(req))
        except Exception as exc:
            raise self._translate_error(exc, log_ctx) from exc

        delivered = 0
        cancelled = False
        try:
            while True:
                if cancel_token is not None and cancel_token.cancelled:
                    cancelled = True
                    break
                try:
                    chunk = next(iterator)
                except StopIteration:
                    break
                except Exception as exc:
                    raise self._translate_error(exc, log_ctx, delivered=delivered) from exc
                if cancel_token is not None and cancel_token.cancelled:
                    cancelled = True
                    break
                if not chunk.text:
                    continue
                on_chunk(chunk.text)
                delivered += 1
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

        log_event(
            logging.INFO,
            "Stream cancelled" if cancelled else "Stream completed",
            log_ctx,
            chunks=delivered,
        )

    def get_coding_insights(self, history: Iterable[Any]) -> str:
        """根据代码分析历史生成学习建议。"""

        client, _ = self._require_client()
        sessions = [_as_session(item) for item in history]
        req = build_insights_request(sessions)
        return self._complete(client, req, "get_coding_insights")

    def test_connection(self) -> ConnectionTestResult:
        """最小往返请求，验证密钥可用；所有失败都放入结果的 error 字段。"""

        if not self.is_ready():
            return ConnectionTestResult(success=False, error="Service not initialized")
        info = self.describe_provider()
        label = info.display_name if info else None
        try:
            text = self._complete(self._client, build_connection_test_request(), "test_connection")
        except BusinessError as exc:
            return ConnectionTestResult(success=False, error=exc.message, provider_label=label)
        except Exception as exc:
            # 诊断接口不向外抛出，非预期错误同样记录到结果中
            log_event(logging.ERROR, "Connection test crashed", {"operation": "test_connection"}, error=str(exc))
            return ConnectionTestResult(success=False, error=str(exc) or "Unknown connection error", provider_label=label)
        return ConnectionTestResult(success=True, message=text or "Connection successful", provider_label=label)

    # ---- 辅助方法 ----

    def _require_client(self) -> Tuple[ProviderClient, ProviderInfo]:
        info = self.describe_provider()
        if not self.is_ready() or info is None:
            raise NotReadyError(
                code="NOT_READY",
                message="AI service not initialized. Please configure your API key.",
            )
        return self._client, info

    def _complete(self, client: ProviderClient, req: ChatRequest, operation: str) -> str:
        log_ctx = self._log_ctx(client, operation)
        log_event(logging.INFO, "Calling provider", log_ctx, max_tokens=req.max_tokens)
        try:
            result = client.complete(req)
        except Exception as exc:
            raise self._translate_error(exc, log_ctx) from exc
        if result.usage:
            log_event(logging.INFO, "Token usage", log_ctx, total_tokens=result.usage.total_tokens)
        return result.text

    def _log_ctx(self, client: ProviderClient, operation: str) -> Dict[str, Any]:
        return {
            "provider": self._kind.value if self._kind else None,
            "model": getattr(client, "model", None),
            "operation": operation,
        }

    def _translate_error(self, exc: Exception, log_ctx: Dict[str, Any], **fields: Any) -> BusinessError:
        """把客户端原始错误映射为统一错误类型。"""

        err = self._classify(exc)
        log_event(
            logging.ERROR,
            "Provider call failed",
            log_ctx,
            error_code=err.code,
            error=str(exc),
            **fields,
        )
        return err

    def _classify(self, exc: Exception) -> BusinessError:
        if isinstance(exc, BusinessError):
            return exc
        kind = self._kind or ProviderKind.OPENAI
        name = _SHORT_NAMES[kind]
        if isinstance(exc, (httpx.RequestError, json.JSONDecodeError)):
            return TransportError(
                code="NETWORK_ERROR",
                message=f"Network error. Please check your internet connection. ({exc})",
                provider=kind.value,
            )
        if isinstance(exc, ProviderResponseError):
            error_cls = _STATUS_ERRORS[kind].get(exc.status_code or 0)
            if error_cls is None:
                haystack = f"{exc.message}\n{exc.body or ''}"
                for candidate, markers in _MARKER_ERRORS[kind]:
                    if any(marker in haystack for marker in markers):
                        error_cls = candidate
                        break
            if error_cls is not None:
                code, template, http_status = _ERROR_TEMPLATES[error_cls]
                return error_cls(
                    code=code,
                    message=template.format(name=name),
                    http_status=http_status,
                    provider=kind.value,
                    status_code=exc.status_code,
                    detail=exc.message,
                )
        return UnknownProviderError(
            code="PROVIDER_ERROR",
            message=str(exc) or exc.__class__.__name__,
            http_status=502,
            provider=kind.value,
        )
