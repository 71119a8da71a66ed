from chat_core.agents.session_agent import AgentConfig, SessionAgent

__all__ = ["AgentConfig", "SessionAgent"]
