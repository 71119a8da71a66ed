"""工具数据结构定义。

这些 dataclass 描述了“工具调用”的 schema，既用于：
- 将可用工具列表暴露给 LLM（ToolDef / ToolParam）。
- 在执行器中保存和执行模型触发的工具调用（ToolCall / ToolResult）。
"""

import copy
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional


def readonly(data: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    """复制一份字典并包装为只读视图，调用方之后修改原字典不会影响它。"""

    return MappingProxyType(copy.deepcopy(dict(data or {})))


@dataclass(frozen=True)
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any] = field(default_factory=lambda: {"type": "string"})


@dataclass(frozen=True)
class ToolDef:
    """一个可供 LLM 调用的工具定义。"""

    name: str
    description: str
    params: Dict[str, ToolParam] = field(default_factory=dict)

    def parameters_schema(self) -> Dict[str, Any]:
        """返回 JSON Schema 形式的参数声明（object 类型）。"""

        properties: Dict[str, Any] = {}
        required: List[str] = []
        for name, param in self.params.items():
            prop = dict(param.schema or {"type": "string"})
            if param.description:
                prop["description"] = param.description
            properties[name] = prop
            if param.required:
                required.append(name)
        return {"type": "object", "properties": properties, "required": required}


@dataclass(frozen=True)
class ToolCall:
    """模型发起的一次工具调用请求。id 在同一会话中唯一。

    arguments 创建后为只读映射，需要可变副本时使用 dict(call.arguments)。
    """

    id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        object.__setattr__(self, "arguments", readonly(self.arguments))


@dataclass
class ToolResult:
    """工具执行结果的封装（文本形式）。"""

    call_id: str
    content: str
    ok: bool = True
