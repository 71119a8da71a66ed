from dataclasses import dataclass
from typing import Dict, Iterable, List, Protocol, Tuple

from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import Message
from chat_core.tools.definitions import ToolCall


@dataclass(frozen=True)
class Conversation:
    """某个会话 ID 下按顺序排列的消息序列（不可变）。"""

    session_id: str
    messages: Tuple[Message, ...] = ()

    def __len__(self) -> int:
        return len(self.messages)

    def extend(self, messages: Iterable[Message]) -> "Conversation":
        return Conversation(session_id=self.session_id, messages=self.messages + tuple(messages))

    def unresolved_calls(self) -> List[ToolCall]:
        """返回尚未收到 tool 消息的工具调用，按发起顺序。"""

        pending: Dict[str, ToolCall] = {}
        for msg in self.messages:
            for call in msg.tool_calls:
                pending[call.id] = call
            if msg.role == "tool" and msg.tool_call_id in pending:
                pending.pop(msg.tool_call_id)
        return list(pending.values())

    def validate(self) -> None:
        """校验工具调用与结果的一一对应关系。

        每条 tool 消息必须响应此前恰好一次、且尚未被响应的工具调用。
        """

        seen: Dict[str, bool] = {}
        for idx, msg in enumerate(self.messages):
            for call in msg.tool_calls:
                if call.id in seen:
                    raise ValidationError(
                        code="DUPLICATE_TOOL_CALL",
                        message=f"tool call id {call.id!r} issued twice",
                        index=idx,
                    )
                seen[call.id] = False
            if msg.role != "tool":
                continue
            if msg.tool_call_id not in seen:
                raise ValidationError(
                    code="ORPHAN_TOOL_RESULT",
                    message=f"tool result at {idx} responds to unknown call {msg.tool_call_id!r}",
                    index=idx,
                )
            if seen[msg.tool_call_id]:
                raise ValidationError(
                    code="DUPLICATE_TOOL_RESULT",
                    message=f"tool call {msg.tool_call_id!r} answered twice",
                    index=idx,
                )
            seen[msg.tool_call_id] = True


class SessionStore(Protocol):
    """会话存储协议：会话 ID -> 有序消息历史。

    append 是唯一的写操作，对同一个会话 ID 原子生效：
    并发读取要么看不到、要么看到本次追加的全部消息。
    """

    async def get(self, session_id: str) -> Conversation:
        ...

    async def append(self, session_id: str, messages: Iterable[Message]) -> None:
        ...

    async def list_sessions(self) -> List[str]:
        ...

    async def delete(self, session_id: str) -> None:
        ...
