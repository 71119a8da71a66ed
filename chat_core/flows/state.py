"""State definition for the LangGraph turn executor."""

from __future__ import annotations

from typing import List, Optional, TypedDict

from chat_core.domain.models import ChatUsage, Message


class TurnState(TypedDict, total=False):
    """State shared across graph nodes during one turn.

    messages 始终是完整会话（历史 + 本轮新消息），每个节点返回新的列表。
    deadline 为事件循环时钟上的绝对截止时间。
    """

    messages: List[Message]
    steps: int
    max_steps: int
    usage: ChatUsage
    deadline: Optional[float]
    trace_id: str
