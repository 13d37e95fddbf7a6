"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 元数据与模型配置 (registry)。
- 提供各厂商的具体实现 (openai_client、gemini_client)。
- 通过 ProviderGateway 把两者统一为同一套能力接口 (gateway)。
"""

from explainer_core.config.settings import settings
from explainer_core.domain.models import ProviderConfig, ProviderKind
from explainer_core.providers.base import ProviderClient
from explainer_core.providers.gemini_client import GeminiClient
from explainer_core.providers.openai_client import OpenAIClient


def create_provider(config: ProviderConfig, cfg=None) -> ProviderClient:
    """根据 ProviderConfig 创建客户端实例；密钥缺失时抛出 ValidationError。"""

    cfg = cfg or settings
    kind = ProviderKind.parse(config.kind)
    if kind is ProviderKind.GEMINI:
        return GeminiClient(config.credential, cfg)
    return OpenAIClient(config.credential, cfg)
