"""统一的消息与模型调用数据结构。

本模块定义了执行器、会话存储与 Provider 之间共享的标准数据结构：

- Message: 一条对话消息（system/user/assistant/tool），创建后不可变。
- ChatRequest: 发给底层 LLM Provider 的完整请求。
- ChatResult: 从 Provider 解析后的统一响应结果。

Provider 适配器只依赖这些模型，并负责在各自的 API JSON 与这些模型之间做转换。
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

from chat_core.tools.definitions import ToolCall, ToolDef, readonly


# "tool" 即工具结果消息，对应 OpenAI 兼容接口的 role 字段
Role = Literal["system", "user", "assistant", "tool"]


@dataclass(frozen=True)
class Message:
    """一条对话消息，既可用于请求，也可用于响应。

    - role: 消息角色。
    - content: 纯文本内容，可以为空（例如只包含工具调用的助手消息）。
    - tool_calls: 助手消息中模型发起的待执行工具调用，按模型给出的顺序排列。
    - tool_call_id: 仅 tool 消息使用，指向它所响应的那次工具调用。
    - meta: 附加元数据（provider、usage 等），不会发给模型。

    meta 与 ToolCall.arguments 在创建时复制并包装为只读映射，
    存储层返回的消息因此不能被原地修改。
    """

    role: Role
    content: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_call_id: Optional[str] = None
    meta: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))
        object.__setattr__(self, "meta", readonly(self.meta))

    @classmethod
    def user(cls, content: str, **meta: Any) -> "Message":
        return cls(role="user", content=content, meta=meta)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: Tuple[ToolCall, ...] = (), **meta: Any) -> "Message":
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls), meta=meta)

    @classmethod
    def tool_result(cls, call_id: str, content: str, **meta: Any) -> "Message":
        return cls(role="tool", content=content, tool_call_id=call_id, meta=meta)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "tool_calls": [
                {"id": c.id, "name": c.name, "arguments": copy.deepcopy(dict(c.arguments))} for c in self.tool_calls
            ],
            "tool_call_id": self.tool_call_id,
            "meta": copy.deepcopy(dict(self.meta)),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        calls = tuple(
            ToolCall(id=c["id"], name=c["name"], arguments=dict(c.get("arguments") or {}))
            for c in data.get("tool_calls") or []
        )
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            tool_calls=calls,
            tool_call_id=data.get("tool_call_id"),
            meta=dict(data.get("meta") or {}),
        )


@dataclass
class ChatRequest:
    """一次完整的聊天请求。

    执行器根据当前会话生成 ChatRequest，再交给具体 ProviderClient。
    """

    provider: str  # 逻辑 Provider 名，如 "openai"
    model: str  # 逻辑模型名，如 "chat"（再由 registry 映射为真实模型名）
    messages: List[Message]
    temperature: float = 0.7
    top_p: float = 0.95
    max_tokens: Optional[int] = None
    tools: Optional[List[ToolDef]] = None
    tool_choice: Literal["auto", "none", "required"] = "auto"


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "ChatUsage") -> "ChatUsage":
        return ChatUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def as_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class ChatChoice:
    """单个候选回答（目前只用 index=0 的一条）。"""

    index: int
    message: Message
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """一次模型调用的最终结果。

    - provider / model: 逻辑 Provider 与模型名。
    - choices: 一个或多个候选回答。
    - usage: 可选的 token 使用统计。
    - raw: 原始响应 JSON，用于调试。
    """

    provider: str
    model: str
    choices: List[ChatChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None
