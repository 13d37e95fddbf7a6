"""统一的请求/结果数据模型。

本模块定义了两个 Provider 之间共享的标准数据结构：

- ProviderKind / ProviderConfig: 当前选择的 Provider 与其密钥。
- ChatMessage / ChatRequest: 发给 Provider 的请求（system + user 两轮）。
- ChatResult / ChatStreamChunk: 从 Provider 解析后的统一结果与流式增量。

Provider 客户端（OpenAIClient、GeminiClient）只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional


class ProviderKind(str, Enum):
    """可互换的两个 AI 后端。"""

    OPENAI = "openai"
    GEMINI = "gemini"

    @classmethod
    def parse(cls, value: "str | ProviderKind") -> "ProviderKind":
        """按名称解析，不区分大小写；未知名称抛出 ValueError。"""

        if isinstance(value, ProviderKind):
            return value
        return cls(str(value).strip().lower())


@dataclass
class ProviderConfig:
    """当前生效的 Provider 配置，同一时间只有一份。"""

    kind: ProviderKind
    credential: str

    def __repr__(self) -> str:
        # 避免密钥出现在日志或异常信息里
        return f"ProviderConfig(kind={self.kind.value!r}, credential='***')"


# 发给 Provider 的消息角色
Role = Literal["system", "user", "assistant"]


@dataclass
class ChatMessage:
    role: Role
    content: str


@dataclass
class ChatRequest:
    """一次完整的补全请求。

    messages 固定为 system 指令 + user 内容；OpenAI 原样发送两轮对话，
    Gemini 则把两者拼成单个 prompt。
    """

    messages: list[ChatMessage]
    max_tokens: int = 2000
    temperature: float = 0.7

    @property
    def system_text(self) -> str:
        return "\n\n".join(m.content for m in self.messages if m.role == "system")

    @property
    def user_text(self) -> str:
        return "\n\n".join(m.content for m in self.messages if m.role != "system")


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatResult:
    """一次非流式调用的最终结果。"""

    provider: str
    model: str
    text: str
    finish_reason: Optional[str] = None
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None


@dataclass
class ChatStreamChunk:
    """流式调用的单个增量，text 可能为空（例如仅携带 usage 的尾包）。"""

    provider: str
    model: str
    text: str
    finish_reason: Optional[str] = None
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None


@dataclass
class CodingSession:
    """一次代码分析记录，用于生成学习建议。"""

    language: str
    topic: Optional[str] = None


@dataclass
class ConnectionTestResult:
    """test_connection 的结果，失败信息放在 error 中而不是抛出。"""

    success: bool
    message: Optional[str] = None
    provider_label: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CancellationToken:
    """流式调用的取消标记。

    cancel() 之后 Gateway 不再从上游读取增量，也不再回调 on_chunk。
    """

    _event: threading.Event = field(default_factory=threading.Event, repr=False)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
