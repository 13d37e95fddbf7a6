"""Provider 元数据与模型配置。

每个 ProviderKind 对应一份静态的 ProviderInfo：展示名称、图标、
默认模型以及请求默认参数。具体模型可通过 settings 覆盖，
上层只关心 ProviderKind，不直接写死厂商模型 ID。"""

from dataclasses import dataclass
from typing import Mapping, Optional

from explainer_core.domain.models import ProviderKind


@dataclass(frozen=True)
class ProviderInfo:
    """单个 Provider 的静态描述。"""

    kind: ProviderKind
    display_name: str
    model: str
    icon: str
    base_url: str
    max_tokens: int = 2000
    temperature: float = 0.7

    @property
    def label(self) -> str:
        return f"{self.icon} {self.display_name}"


OPENAI_INFO = ProviderInfo(
    kind=ProviderKind.OPENAI,
    display_name="OpenAI (GPT)",
    model="gpt-4-turbo",
    icon="🤖",
    base_url="https://api.openai.com/v1",
)

GEMINI_INFO = ProviderInfo(
    kind=ProviderKind.GEMINI,
    display_name="Google Gemini",
    model="gemini-1.5-flash",
    icon="✨",
    base_url="https://generativelanguage.googleapis.com/v1beta",
)


PROVIDER_REGISTRY: Mapping[ProviderKind, ProviderInfo] = {
    ProviderKind.OPENAI: OPENAI_INFO,
    ProviderKind.GEMINI: GEMINI_INFO,
}


def get_provider_info(kind: Optional[ProviderKind]) -> Optional[ProviderInfo]:
    if kind is None:
        return None
    return PROVIDER_REGISTRY.get(kind)
