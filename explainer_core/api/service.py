"""对外服务组装模块。

显式创建 Gateway、存储与 Orchestrator，不使用进程级单例；
调用方持有返回的 Orchestrator，并负责其生命周期。
"""

from typing import Optional

from explainer_core.chat.orchestrator import ConversationOrchestrator, Scheduler
from explainer_core.config.settings import settings
from explainer_core.domain.conversation import KeyValueStore
from explainer_core.infrastructure.logging.logger import logger
from explainer_core.infrastructure.storage.kv_store import JsonFileKeyValueStore
from explainer_core.providers.gateway import ProviderGateway


def create_orchestrator(
    store: Optional[KeyValueStore] = None,
    gateway: Optional[ProviderGateway] = None,
    scheduler: Optional[Scheduler] = None,
    cfg=None,
) -> ConversationOrchestrator:
    """组装一个可用的 Orchestrator。

    Args:
        store: 持久化键值存储，默认使用 settings.storage_root 下的 JSON 文件
        gateway: Provider 网关，默认新建一个未配置的实例
        scheduler: 连通性检查的调度方式，默认立即执行
        cfg: 配置对象，默认使用全局 settings

    Returns:
        已恢复上次会话、并按已保存配置初始化 Provider 的 Orchestrator
    """
    cfg = cfg or settings
    orchestrator = ConversationOrchestrator(
        gateway=gateway or ProviderGateway(),
        store=store or JsonFileKeyValueStore(root=cfg.storage_root),
        scheduler=scheduler,
        cfg=cfg,
    )
    configured = orchestrator.load_configuration()
    logger.info(
        "Orchestrator ready",
        extra={"extra": {
            "conversation_id": orchestrator.conversation_id,
            "message_count": len(orchestrator.messages),
            "configured": configured,
        }},
    )
    return orchestrator
