import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import jsonschema

from chat_core.domain.exceptions import CapabilityError, UnknownCapability
from .definitions import ToolCall, ToolDef, ToolResult


ToolFunc = Callable[[Dict[str, Any]], Union[str, Awaitable[str]]]


@dataclass(frozen=True)
class Capability:
    """可供模型调用的工具：定义 + 实现。

    func 接收参数字典，返回文本；可以是普通函数或协程函数。
    """

    definition: ToolDef
    func: ToolFunc

    @property
    def name(self) -> str:
        return self.definition.name


class ToolExecutor:
    """按名称分发工具调用。

    execute() 不会因为工具本身出错而抛异常：未知工具、参数不合法、
    工具内部异常都会变成 ok=False 的 ToolResult，内容为错误描述。
    """

    def __init__(self, capabilities: Optional[Iterable[Capability]] = None):
        self._tools: Dict[str, Capability] = {}
        for cap in capabilities or ():
            self.add(cap)

    def add(self, capability: Capability) -> None:
        if capability.name in self._tools:
            raise ValueError(f"tool {capability.name!r} already registered")
        self._tools[capability.name] = capability

    def register(self, definition: ToolDef, func: ToolFunc) -> Capability:
        cap = Capability(definition=definition, func=func)
        self.add(cap)
        return cap

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def tool_defs(self) -> List[ToolDef]:
        return [cap.definition for cap in self._tools.values()]

    async def invoke(self, call: ToolCall) -> str:
        """执行一次调用并返回文本，失败时抛出 UnknownCapability / CapabilityError。"""

        cap = self._tools.get(call.name)
        if cap is None:
            raise UnknownCapability(call.name, tool_call_id=call.id)
        args = dict(call.arguments)
        try:
            jsonschema.validate(args, cap.definition.parameters_schema())
        except jsonschema.ValidationError as e:
            raise CapabilityError(
                f"invalid arguments for {call.name}: {e.message}",
                code="INVALID_ARGUMENTS",
                tool_name=call.name,
            )
        try:
            if inspect.iscoroutinefunction(cap.func):
                result = await cap.func(args)
            else:
                result = await asyncio.to_thread(cap.func, args)
                if inspect.isawaitable(result):
                    result = await result
        except CapabilityError:
            raise
        except Exception as e:
            raise CapabilityError(f"{call.name} failed: {e}", tool_name=call.name)
        return "" if result is None else str(result)

    async def execute(self, call: ToolCall) -> ToolResult:
        try:
            content = await self.invoke(call)
        except (UnknownCapability, CapabilityError) as e:
            return ToolResult(call_id=call.id, content=f"Error: {e.message}", ok=False)
        return ToolResult(call_id=call.id, content=content)
