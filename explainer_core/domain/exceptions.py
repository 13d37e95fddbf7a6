"""统一业务异常模型。

所有离开 Gateway 边界的错误都继承自 BusinessError，
便于 Orchestrator 或 UI 层做统一捕获并展示为系统消息。

ProviderResponseError 是 Provider 客户端抛出的原始错误，
只在 Gateway 内部流转，由 Gateway 映射为下面的统一错误类型。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "RATE_LIMIT"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、原始状态码等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NotReadyError(BusinessError):
    """Gateway 尚未配置可用的 Provider 客户端，不会发起任何网络请求。"""


class InvalidCredentialError(BusinessError):
    """Provider 拒绝了 API 密钥。"""


class RateLimitError(BusinessError):
    """Provider 报告配额耗尽或限流，不做自动重试。"""


class ContentFilteredError(BusinessError):
    """Provider 因安全/内容策略拒绝回答。"""


class TransportError(BusinessError):
    """网络层错误，例如连接失败、超时或响应体无法解析。"""


class UnknownProviderError(BusinessError):
    """无法归类的 Provider 错误，message 保留原始信息。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class BusyError(BusinessError):
    """已有请求在处理中，Orchestrator 不排队。"""


class ProviderResponseError(Exception):
    """Provider 客户端的原始失败（HTTP 错误状态、被拦截的回答等）。"""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        self.provider = provider
        self.message = message
        self.status_code = status_code
        self.body = body
        super().__init__(message)
