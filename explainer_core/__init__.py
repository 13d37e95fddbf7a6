"""Explainer Core 顶层包。

该包提供代码讲解助手的核心实现，
包括配置加载、领域模型、Provider 适配与统一网关、
会话编排以及键值持久化等能力。
"""

from explainer_core.api.service import create_orchestrator
from explainer_core.chat.orchestrator import ConversationOrchestrator
from explainer_core.providers.gateway import ProviderGateway

__all__ = ["ConversationOrchestrator", "ProviderGateway", "create_orchestrator"]
