"""chat_core 顶层包。

提供会话式工具调用 Agent 的核心实现：配置加载、领域模型、
Provider 适配、工具系统、单轮执行器（LangGraph）与会话存储。
"""

from chat_core.agents import AgentConfig, SessionAgent
from chat_core.flows import TurnExecutor, TurnOutcome, run_turn

__all__ = ["AgentConfig", "SessionAgent", "TurnExecutor", "TurnOutcome", "run_turn"]
