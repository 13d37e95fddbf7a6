import json
import os
import threading
from pathlib import Path
from typing import Dict, Optional
from uuid import uuid4

from explainer_core.config.settings import settings
from explainer_core.domain.conversation import KeyValueStore
from explainer_core.domain.exceptions import BusinessError


# 持久化使用的固定键名
PROVIDER_KEY = "ai-provider"
CONVERSATION_KEY = "ai-code-chat-conversation"


def credential_key(provider: str) -> str:
    """每个 Provider 的密钥单独存放，例如 "openai-api-key"。"""

    return f"{provider}-api-key"


class JsonFileKeyValueStore(KeyValueStore):
    """把全部键值保存在 {root}/kv.json 中，写入时原子替换。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._path = self._root / "kv.json"
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._read().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)

    def _read(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        tmp_path = self._root / f"kv.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))


class InMemoryKeyValueStore(KeyValueStore):
    """进程内存实现，用于测试或无需落盘的场景。"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)
