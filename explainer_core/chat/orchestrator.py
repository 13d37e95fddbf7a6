"""会话编排核心模块。

ConversationOrchestrator 独占消息列表、会话 ID 与持久化：
调用 ProviderGateway 完成分析请求，把结果（或流式增量）并入消息列表，
并在每次变更后把会话快照写入 KeyValueStore。

状态机：Empty -> Active（追加第一条消息）-> Empty（reset）。
每个请求 Idle -> Busy -> Idle；Busy 期间的新请求以 BusyError 拒绝，不排队。
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Literal, Optional
from uuid import uuid4

from explainer_core.config.settings import settings
from explainer_core.domain.conversation import (
    ConnectionStatus,
    Conversation,
    KeyValueStore,
    Message,
    MessageKind,
    Sender,
    dump_snapshot,
    load_snapshot,
)
from explainer_core.domain.exceptions import BusinessError, BusyError
from explainer_core.domain.models import (
    CancellationToken,
    CodingSession,
    ConnectionTestResult,
    ProviderConfig,
    ProviderKind,
)
from explainer_core.infrastructure.logging.logger import log_event
from explainer_core.infrastructure.storage.kv_store import CONVERSATION_KEY, PROVIDER_KEY, credential_key
from explainer_core.providers.gateway import ProviderGateway
from explainer_core.providers.registry import ProviderInfo


SubmitOutcome = Literal["completed", "failed", "cancelled", "configuration_required"]
Scheduler = Callable[[Callable[[], Any]], None]

# 代码主题取首行的前若干字符
TOPIC_MAX_CHARS = 60


def run_now(task: Callable[[], Any]) -> None:
    task()


def _topic_from_code(code: Optional[str]) -> Optional[str]:
    for line in (code or "").splitlines():
        line = line.strip()
        if line:
            return line[:TOPIC_MAX_CHARS]
    return None


def _credential_looks_valid(kind: ProviderKind, credential: str) -> bool:
    if kind is ProviderKind.OPENAI:
        return credential.startswith("sk-")
    return credential.startswith("AIza") or len(credential) >= 30


class ConversationOrchestrator:
    """驱动 Gateway 的会话状态机。

    - submit / submit_streaming / request_insights: 用户请求，一次只允许一个在途。
    - configure / load_configuration / check_connection: Provider 设置与连通性检查。
    - reset: 开始新会话并删除已保存的快照。
    - messages / busy / connection_status: 供 UI 渲染的只读视图。
    """

    def __init__(
        self,
        gateway: ProviderGateway,
        store: KeyValueStore,
        scheduler: Optional[Scheduler] = None,
        cfg=settings,
    ):
        self._gateway = gateway
        self._store = store
        self._scheduler = scheduler or run_now
        self._settings = cfg
        self._lock = threading.RLock()
        self._messages: List[Message] = []
        self._conversation_id: Optional[str] = None
        self._last_id = 0
        self._busy = False
        self._connection_status = ConnectionStatus.UNCHECKED
        self.restore()

    # ---- 只读视图 ----

    @property
    def messages(self) -> List[Message]:
        with self._lock:
            return [replace(m) for m in self._messages]

    @property
    def conversation_id(self) -> Optional[str]:
        return self._conversation_id

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._connection_status

    @property
    def provider_info(self) -> Optional[ProviderInfo]:
        return self._gateway.describe_provider()

    # ---- 用户请求 ----

    def submit(self, code: str, language: str) -> SubmitOutcome:
        """非流式分析：追加用户消息，再追加助手回答或系统错误消息。"""

        if not self._gateway.is_ready():
            self._log(logging.INFO, "Configuration required", operation="submit")
            return "configuration_required"
        with self._busy_guard():
            self._append(self._new_message("user", code, code=code, language=language))
            try:
                text = self._gateway.analyze(code, language)
            except BusinessError as exc:
                self._append_error("Error", exc, "Please check your API key configuration or try again.")
                return "failed"
            self._append(
                self._new_message(
                    "assistant",
                    text,
                    code=code,
                    language=language,
                    provider=self._gateway.kind,
                    kind="explanation",
                )
            )
            self._log(logging.INFO, "Analysis completed", operation="submit")
            return "completed"

    def submit_streaming(
        self,
        code: str,
        language: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> SubmitOutcome:
        """流式分析：先追加空的占位助手消息，再按 ID 把每段增量拼接进去。"""

        if not self._gateway.is_ready():
            self._log(logging.INFO, "Configuration required", operation="submit_streaming")
            return "configuration_required"
        with self._busy_guard():
            self._append(self._new_message("user", code, code=code, language=language))
            placeholder = self._append(
                self._new_message(
                    "assistant",
                    "",
                    code=code,
                    language=language,
                    streaming=True,
                    provider=self._gateway.kind,
                    kind="explanation",
                )
            )
            placeholder_id = placeholder.id
            try:
                self._gateway.stream_analyze(
                    code,
                    language,
                    lambda chunk: self._fold_chunk(placeholder_id, chunk),
                    cancel_token=cancel_token,
                )
            except BusinessError as exc:
                self._finish_stream(placeholder_id)
                self._append_error("Streaming Error", exc, "Please check your configuration or try again.")
                return "failed"
            self._finish_stream(placeholder_id)
            if cancel_token is not None and cancel_token.cancelled:
                self._log(logging.INFO, "Streaming cancelled", message_id=placeholder_id)
                return "cancelled"
            self._log(logging.INFO, "Streaming completed", message_id=placeholder_id)
            return "completed"

    def request_insights(self) -> SubmitOutcome:
        """根据本会话的代码分析历史请求学习建议。"""

        if not self._gateway.is_ready():
            self._log(logging.INFO, "Configuration required", operation="request_insights")
            return "configuration_required"
        with self._busy_guard():
            history = self.coding_history()
            try:
                text = self._gateway.get_coding_insights(history)
            except BusinessError as exc:
                self._append_error("Insights Error", exc, "Please check your configuration or try again.")
                return "failed"
            self._append(
                self._new_message("assistant", text, provider=self._gateway.kind, kind="insights")
            )
            return "completed"

    def coding_history(self) -> List[CodingSession]:
        with self._lock:
            return [
                CodingSession(language=m.language or "plaintext", topic=_topic_from_code(m.code))
                for m in self._messages
                if m.sender == "user" and m.code
            ]

    def append_system_message(self, content: str, kind: Optional[MessageKind] = None) -> Message:
        """UI 侧追加通知类消息，可与进行中的流式请求并发。"""

        return replace(self._append(self._new_message("system", content, kind=kind)))

    def reset(self) -> None:
        """清空消息与会话 ID，并删除已保存的快照。"""

        with self._lock:
            previous = self._conversation_id
            self._messages = []
            self._conversation_id = None
            self._store.remove(CONVERSATION_KEY)
        self._log(logging.INFO, "Conversation reset", previous_conversation_id=previous)

    # ---- Provider 设置 ----

    def configure(self, kind: "str | ProviderKind", credential: str) -> bool:
        """保存 Provider 选择与密钥并重新初始化 Gateway；成功后安排连通性检查。"""

        with self._lock:
            if self._busy:
                raise BusyError(code="BUSY", message="Cannot change provider while a request is in progress.")
        try:
            provider = ProviderKind.parse(kind)
        except ValueError:
            self._log(logging.WARNING, "Unknown provider", provider=str(kind))
            self._connection_status = ConnectionStatus.UNCHECKED
            return False
        self._store.set(PROVIDER_KEY, provider.value)
        if credential:
            self._store.set(credential_key(provider.value), credential)
        else:
            self._store.remove(credential_key(provider.value))
        return self._activate(provider, credential)

    def load_configuration(self) -> bool:
        """启动时从存储（或 settings）读取 Provider 与密钥并初始化。"""

        raw_kind = self._store.get(PROVIDER_KEY) or getattr(self._settings, "default_provider", None)
        if not raw_kind:
            return False
        try:
            provider = ProviderKind.parse(raw_kind)
        except ValueError:
            self._log(logging.WARNING, "Ignoring unknown stored provider", provider=raw_kind)
            return False
        credential = self._store.get(credential_key(provider.value)) or getattr(
            self._settings, f"{provider.value}_api_key", None
        )
        if not credential:
            return False
        return self._activate(provider, credential)

    def check_connection(self) -> ConnectionTestResult:
        """执行 test_connection 并据此更新 connection_status。"""

        if not self._gateway.is_ready():
            return ConnectionTestResult(success=False, error="Service not initialized")
        self._connection_status = ConnectionStatus.CHECKING
        result = self._gateway.test_connection()
        self._connection_status = ConnectionStatus.SUCCESS if result.success else ConnectionStatus.ERROR
        if result.success:
            self._log(logging.INFO, "Connection test succeeded", provider_label=result.provider_label)
        else:
            self._log(logging.WARNING, "Connection test failed", provider_label=result.provider_label, error=result.error)
        return result

    # ---- 持久化 ----

    def restore(self) -> bool:
        """加载已保存的会话快照；缺失或损坏时视为没有历史会话。"""

        try:
            raw = self._store.get(CONVERSATION_KEY)
        except BusinessError as exc:
            self._log(logging.WARNING, "Conversation store unreadable", error_code=exc.code, error=exc.message)
            return False
        if not raw:
            return False
        try:
            conv = load_snapshot(raw)
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            self._log(logging.WARNING, "Discarding malformed conversation snapshot", error=str(exc))
            self._store.remove(CONVERSATION_KEY)
            return False
        with self._lock:
            for message in conv.messages:
                # 中断的流式消息不会再收到增量
                message.streaming = False
            self._messages = conv.messages
            self._conversation_id = conv.id
            self._last_id = max([self._last_id] + [m.id for m in conv.messages])
        self._log(logging.INFO, "Restored conversation", message_count=len(conv.messages))
        return True

    def _persist(self) -> None:
        with self._lock:
            if not self._messages or not self._conversation_id:
                return
            conv = Conversation(
                id=self._conversation_id,
                messages=list(self._messages),
                last_updated=datetime.now(timezone.utc),
                provider=self._gateway.kind,
            )
            self._store.set(CONVERSATION_KEY, dump_snapshot(conv))

    # ---- 辅助方法 ----

    def _activate(self, provider: ProviderKind, credential: str) -> bool:
        if credential and not _credential_looks_valid(provider, credential):
            self._log(logging.WARNING, "API key format looks unusual", provider=provider.value)
        ok = self._gateway.initialize(ProviderConfig(kind=provider, credential=credential))
        self._connection_status = ConnectionStatus.UNCHECKED
        self._log(logging.INFO if ok else logging.WARNING, "Provider configured", provider=provider.value, success=ok)
        if ok:
            self._scheduler(self.check_connection)
        return ok

    @contextmanager
    def _busy_guard(self) -> Iterator[None]:
        with self._lock:
            if self._busy:
                raise BusyError(code="BUSY", message="A request is already in progress.")
            self._busy = True
        try:
            yield
        finally:
            with self._lock:
                self._busy = False

    def _new_message(self, sender: Sender, content: str, **fields: Any) -> Message:
        with self._lock:
            self._last_id += 1
            message_id = self._last_id
        return Message(
            id=message_id,
            sender=sender,
            content=content,
            timestamp=datetime.now(timezone.utc),
            **fields,
        )

    def _append(self, message: Message) -> Message:
        with self._lock:
            if self._conversation_id is None:
                self._conversation_id = f"c-{uuid4().hex}"
                self._log(logging.INFO, "Created new conversation")
            self._messages.append(message)
            self._persist()
        return message

    def _append_error(self, title: str, exc: BusinessError, hint: str) -> None:
        self._log(logging.ERROR, "Request failed", error_code=exc.code, error=exc.message)
        self._append(
            self._new_message("system", f"❌ **{title}**: {exc.message}\n\n{hint}", kind="error")
        )

    def _find(self, message_id: int) -> Optional[Message]:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def _fold_chunk(self, message_id: int, chunk: str) -> None:
        with self._lock:
            message = self._find(message_id)
            if message is None:
                # 会话在流式过程中被 reset
                return
            message.content += chunk

    def _finish_stream(self, message_id: int) -> None:
        with self._lock:
            message = self._find(message_id)
            if message is None:
                return
            message.streaming = False
            self._persist()

    def _log(self, level: int, message: str, **fields: Any) -> None:
        log_ctx: Dict[str, Any] = {"conversation_id": self._conversation_id}
        log_event(level, message, log_ctx, **fields)
