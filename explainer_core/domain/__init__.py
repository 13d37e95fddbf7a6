"""领域层模型与协议。

包含：
- models: ProviderKind / ChatRequest / ChatResult 等 Provider 侧模型。
- conversation: Message、会话快照序列化以及 KeyValueStore 抽象。
- exceptions: 统一的业务异常类型定义。
"""
