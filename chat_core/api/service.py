"""对外 API 服务模块。

提供同步的函数接口，返回可直接序列化为 JSON 的字典。
"""

import asyncio
from typing import Any, Dict, List, Optional

from chat_core.agents.session_agent import AgentConfig, SessionAgent
from chat_core.config.settings import settings
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import Message
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage import create_store
from chat_core.providers import create_provider
from chat_core.tools.builtin import default_capabilities
from chat_core.tools.executor import ToolExecutor


_agent: Optional[SessionAgent] = None


def get_default_agent() -> SessionAgent:
    """获取默认的 SessionAgent 实例（单例）。"""
    global _agent
    if _agent is None:
        _agent = SessionAgent(
            store=create_store(),
            provider_client=create_provider(),
            tool_executor=ToolExecutor(default_capabilities(settings)),
            config=AgentConfig.from_settings(settings),
        )
    return _agent


def set_default_agent(agent: Optional[SessionAgent]) -> None:
    """替换默认实例（测试或嵌入场景使用），传 None 则下次重新构建。"""
    global _agent
    _agent = agent


def run_chat(user_input: str, session_id: str) -> Dict[str, Any]:
    """在会话上运行一轮对话。

    Args:
        user_input: 用户输入内容
        session_id: 会话 ID，首次使用时自动创建

    Returns:
        包含会话 ID、回答、本轮新增消息和 token 统计的字典

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    try:
        outcome = asyncio.run(get_default_agent().chat(session_id, user_input))
    except BusinessError as e:
        logger.error(f"Chat failed: {e}", extra={"extra": {
            "session_id": session_id,
            "code": e.code,
            "error": e.message,
        }})
        raise

    return {
        "session_id": session_id,
        "reply": outcome.reply.content,
        "steps": outcome.steps,
        "messages": [_message_dict(m) for m in outcome.new_messages],
        "usage": outcome.usage.as_dict(),
    }


def list_sessions() -> List[str]:
    """列出所有会话 ID。"""
    return asyncio.run(get_default_agent().store.list_sessions())


def get_session_messages(session_id: str) -> List[Dict[str, Any]]:
    """获取会话的所有消息（未知会话返回空列表）。"""
    messages = asyncio.run(get_default_agent().history(session_id))
    return [_message_dict(m) for m in messages]


def _message_dict(message: Message) -> Dict[str, Any]:
    data = message.to_dict()
    if not data["tool_calls"]:
        data.pop("tool_calls")
    if data["tool_call_id"] is None:
        data.pop("tool_call_id")
    return data
