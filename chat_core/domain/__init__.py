"""领域层模型与协议。

包含：
- models: 统一的 Message / ChatRequest / ChatResult 模型。
- conversation: Conversation 与 SessionStore 协议。
- exceptions: 业务异常类型定义。
"""
