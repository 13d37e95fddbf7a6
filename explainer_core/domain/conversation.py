import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Protocol

from .models import ProviderKind


Sender = Literal["user", "assistant", "system"]
MessageKind = Literal["explanation", "insights", "error"]


class ConnectionStatus(str, Enum):
    UNCHECKED = "unchecked"
    CHECKING = "checking"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class Message:
    id: int
    sender: Sender
    content: str
    timestamp: datetime
    code: Optional[str] = None
    language: Optional[str] = None
    streaming: bool = False
    provider: Optional[ProviderKind] = None
    kind: Optional[MessageKind] = None


@dataclass
class Conversation:
    """持久化快照对应的会话。"""

    id: str
    messages: List[Message]
    last_updated: datetime
    provider: Optional[ProviderKind] = None
    meta: Dict[str, Any] = field(default_factory=dict)


class KeyValueStore(Protocol):
    """同步、字符串值的持久化键值存储。"""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


def _format_ts(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_ts(raw: Any) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


def message_to_dict(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "sender": message.sender,
        "content": message.content,
        "timestamp": _format_ts(message.timestamp),
        "code": message.code,
        "language": message.language,
        "streaming": message.streaming,
        "provider": message.provider.value if message.provider else None,
        "kind": message.kind,
    }


def message_from_dict(data: Dict[str, Any]) -> Message:
    sender = data["sender"]
    if sender not in ("user", "assistant", "system"):
        raise ValueError(f"Unknown sender: {sender!r}")
    provider = data.get("provider")
    return Message(
        id=int(data["id"]),
        sender=sender,
        content=data.get("content") or "",
        timestamp=_parse_ts(data["timestamp"]),
        code=data.get("code"),
        language=data.get("language"),
        streaming=bool(data.get("streaming", False)),
        provider=ProviderKind.parse(provider) if provider else None,
        kind=data.get("kind"),
    )


def dump_snapshot(conv: Conversation) -> str:
    """序列化为 {id, messages, lastUpdated, provider, messageCount}。"""

    payload = {
        "id": conv.id,
        "messages": [message_to_dict(m) for m in conv.messages],
        "lastUpdated": _format_ts(conv.last_updated),
        "provider": conv.provider.value if conv.provider else None,
        "messageCount": len(conv.messages),
    }
    return json.dumps(payload, ensure_ascii=False)


def load_snapshot(raw: str) -> Conversation:
    """反序列化快照；结构不合法时抛出 ValueError/KeyError/TypeError。"""

    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("Snapshot is not a mapping")
    conv_id = data.get("id")
    if not conv_id:
        raise ValueError("Snapshot has no conversation id")
    messages = [message_from_dict(m) for m in data.get("messages") or []]
    provider = data.get("provider")
    return Conversation(
        id=str(conv_id),
        messages=messages,
        last_updated=_parse_ts(data["lastUpdated"]),
        provider=ProviderKind.parse(provider) if provider else None,
        meta={"messageCount": data.get("messageCount", len(messages))},
    )
