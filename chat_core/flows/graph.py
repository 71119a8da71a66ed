"""LangGraph turn executor.

一轮对话的图结构::

    model --(无工具调用)--> END
      |
      +--(有工具调用)--> tools --(未达 max_steps)--> model
                            |
                            +--(已达 max_steps)--> END  => ExecutionLimitExceeded
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Optional, Set, Tuple, TypeVar, Union
from uuid import uuid4

from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph

from chat_core.domain.conversation import Conversation
from chat_core.domain.exceptions import BusinessError, Cancelled, ExecutionLimitExceeded, ModelRejected
from chat_core.domain.models import ChatRequest, ChatUsage, Message
from chat_core.flows.state import TurnState
from chat_core.infrastructure.logging.logger import logger, preview
from chat_core.providers.base import ProviderClient
from chat_core.tools.definitions import ToolCall, ToolResult
from chat_core.tools.executor import ToolExecutor

DEFAULT_MAX_STEPS = 25

T = TypeVar("T")


@dataclass(frozen=True)
class TurnOutcome:
    """一轮对话的结果。

    new_messages 以本轮的用户消息开头，以最终助手回答结尾。
    """

    conversation: Conversation
    new_messages: Tuple[Message, ...]
    steps: int
    usage: ChatUsage

    @property
    def reply(self) -> Message:
        return self.new_messages[-1]


class TurnExecutor:
    """在模型调用与工具执行之间循环，直到模型给出不含工具调用的回答。"""

    def __init__(
        self,
        provider: ProviderClient,
        tools: Optional[ToolExecutor] = None,
        *,
        model: str = "chat",
        system_prompt: Optional[str] = None,
        temperature: float = 0.3,
        max_steps: int = DEFAULT_MAX_STEPS,
        parallel_tool_calls: bool = False,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        self._provider = provider
        self._tools = tools if tools is not None else ToolExecutor()
        self._model = model
        self._system_prompt = system_prompt
        self._temperature = temperature
        self._max_steps = max_steps
        self._parallel = parallel_tool_calls
        self._graph = self._build_graph()

    async def run_turn(
        self,
        conversation: Conversation,
        user_message: Union[str, Message],
        *,
        max_steps: Optional[int] = None,
        deadline: Optional[float] = None,
        trace_id: Optional[str] = None,
    ) -> TurnOutcome:
        """执行一轮对话。

        Args:
            conversation: 此前的会话历史（不会被修改）。
            user_message: 本轮用户输入。
            max_steps: 本轮模型调用次数上限，默认取构造参数。
            deadline: 相对截止时间（秒），到期时中止当前模型/工具调用。
            trace_id: 日志关联 ID，为空时自动生成。

        Raises:
            ExecutionLimitExceeded: 达到 max_steps 仍未得到最终回答，
                异常的 conversation 属性包含已产生的全部消息。
            Cancelled: 截止时间已到。
            ModelUnavailable / ModelRejected: 模型调用失败。
        """

        if isinstance(user_message, str):
            user_message = Message.user(user_message)
        if user_message.role != "user":
            raise ValueError(f"expected a user message, got role {user_message.role!r}")
        limit = self._max_steps if max_steps is None else max_steps
        if limit < 1:
            raise ValueError("max_steps must be >= 1")
        trace_id = trace_id or f"tr-{uuid4().hex}"
        loop = asyncio.get_running_loop()
        history = list(conversation.messages)
        state: TurnState = {
            "messages": history + [user_message],
            "steps": 0,
            "max_steps": limit,
            "usage": ChatUsage(),
            "deadline": loop.time() + deadline if deadline is not None else None,
            "trace_id": trace_id,
        }
        _log(
            logging.INFO,
            "Turn started",
            trace_id,
            session_id=conversation.session_id,
            history=len(history),
            max_steps=limit,
            tools=self._tools.names,
        )
        result: Dict[str, Any] = await self._graph.ainvoke(
            state, config={"recursion_limit": 2 * limit + 2}
        )

        messages: List[Message] = result["messages"]
        updated = Conversation(session_id=conversation.session_id, messages=tuple(messages))
        last = messages[-1]
        if last.role != "assistant" or last.has_tool_calls:
            _log(logging.WARNING, "Reached max steps", trace_id, max_steps=limit)
            raise ExecutionLimitExceeded(limit, conversation=updated, session_id=conversation.session_id)

        outcome = TurnOutcome(
            conversation=updated,
            new_messages=tuple(messages[len(history):]),
            steps=result["steps"],
            usage=result["usage"],
        )
        _log(
            logging.INFO,
            "Turn completed",
            trace_id,
            steps=outcome.steps,
            new_messages=len(outcome.new_messages),
            **outcome.usage.as_dict(),
        )
        return outcome

    # ---- graph ----

    def _build_graph(self) -> CompiledStateGraph:
        graph = StateGraph(TurnState)
        graph.add_node("model", self._model_node)
        graph.add_node("tools", self._tools_node)
        graph.set_entry_point("model")
        graph.add_conditional_edges("model", self._after_model, {"tools": "tools", "end": END})
        graph.add_conditional_edges("tools", self._after_tools, {"model": "model", "end": END})
        return graph.compile()

    @staticmethod
    def _after_model(state: TurnState) -> str:
        return "tools" if state["messages"][-1].has_tool_calls else "end"

    @staticmethod
    def _after_tools(state: TurnState) -> str:
        return "end" if state["steps"] >= state["max_steps"] else "model"

    async def _model_node(self, state: TurnState) -> Dict[str, Any]:
        step = state["steps"] + 1
        trace_id = state["trace_id"]
        messages = state["messages"]
        tool_defs = self._tools.tool_defs()
        req = ChatRequest(
            provider=self._provider.name,
            model=self._model,
            messages=self._with_system(messages),
            temperature=self._temperature,
            tools=tool_defs or None,
            tool_choice="auto",
        )
        _log(
            logging.INFO,
            "Calling provider",
            trace_id,
            step=step,
            provider=self._provider.name,
            model=self._model,
            message_count=len(req.messages),
        )
        try:
            result = await _bounded(self._provider.chat(req), state.get("deadline"), step=step)
        except BusinessError as e:
            e.extra.setdefault("step", step)
            _log(logging.ERROR, "Provider call failed", trace_id, step=step, code=e.code, error=e.message)
            raise
        if not result.choices:
            raise ModelRejected(code="EMPTY_RESPONSE", message="model returned no choices", step=step)

        reply = result.choices[0].message
        usage = result.usage or ChatUsage()
        calls = _ensure_unique_ids(reply.tool_calls, messages)
        assistant = Message(
            role="assistant",
            content=reply.content or "",
            tool_calls=calls,
            meta={"provider": self._provider.name, "step": step, "usage": usage.as_dict()},
        )
        if calls:
            _log(
                logging.INFO,
                "Executing tool calls",
                trace_id,
                step=step,
                tools=[c.name for c in calls],
            )
        return {
            "messages": messages + [assistant],
            "steps": step,
            "usage": state["usage"] + usage,
        }

    async def _tools_node(self, state: TurnState) -> Dict[str, Any]:
        messages = state["messages"]
        calls = messages[-1].tool_calls
        step = state["steps"]
        deadline = state.get("deadline")
        trace_id = state["trace_id"]

        if self._parallel and len(calls) > 1:
            # gather 按传入顺序返回结果，tool 消息顺序与调用顺序一致
            tasks = [asyncio.ensure_future(self._run_call(call, deadline, step, trace_id)) for call in calls]
            try:
                results = await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                raise
        else:
            results = []
            for call in calls:
                results.append(await self._run_call(call, deadline, step, trace_id))

        tool_messages = [
            Message.tool_result(res.call_id, res.content, tool_name=call.name, ok=res.ok)
            for call, res in zip(calls, results)
        ]
        return {"messages": messages + tool_messages}

    async def _run_call(self, call: ToolCall, deadline: Optional[float], step: int, trace_id: str) -> ToolResult:
        _log(
            logging.INFO,
            "Tool call received",
            trace_id,
            step=step,
            tool_name=call.name,
            tool_call_id=call.id,
            tool_args=dict(call.arguments),
        )
        result = await _bounded(self._tools.execute(call), deadline, step=step, tool_name=call.name)
        _log(
            logging.INFO if result.ok else logging.WARNING,
            "Tool execution finished" if result.ok else "Tool execution failed",
            trace_id,
            step=step,
            tool_call_id=call.id,
            result_preview=preview(result.content),
        )
        return result

    def _with_system(self, messages: List[Message]) -> List[Message]:
        if not self._system_prompt:
            return list(messages)
        return [Message(role="system", content=self._system_prompt)] + list(messages)


async def run_turn(
    conversation: Conversation,
    user_message: Union[str, Message],
    tools: Optional[ToolExecutor],
    provider: ProviderClient,
    *,
    max_steps: int = DEFAULT_MAX_STEPS,
    deadline: Optional[float] = None,
    **executor_kwargs: Any,
) -> TurnOutcome:
    """一次性执行一轮对话的便捷入口。"""

    executor = TurnExecutor(provider, tools, max_steps=max_steps, **executor_kwargs)
    return await executor.run_turn(conversation, user_message, deadline=deadline)


async def _bounded(aw: Awaitable[T], deadline: Optional[float], **context: Any) -> T:
    """在截止时间内等待 aw，超时抛出 Cancelled。"""

    if deadline is None:
        return await aw
    remaining = deadline - asyncio.get_running_loop().time()
    if remaining <= 0:
        if asyncio.iscoroutine(aw):
            aw.close()
        raise Cancelled("deadline exceeded", **context)
    try:
        return await asyncio.wait_for(aw, timeout=remaining)
    except asyncio.TimeoutError:
        raise Cancelled("deadline exceeded", **context)


def _ensure_unique_ids(calls: Tuple[ToolCall, ...], messages: List[Message]) -> Tuple[ToolCall, ...]:
    """保证工具调用 ID 在会话内唯一，缺失或重复时重新分配。"""

    if not calls:
        return ()
    seen: Set[str] = {c.id for m in messages for c in m.tool_calls}
    fixed: List[ToolCall] = []
    for call in calls:
        call_id = call.id
        if not call_id or call_id in seen:
            call_id = f"call_{uuid4().hex[:16]}"
            call = ToolCall(id=call_id, name=call.name, arguments=call.arguments)
        seen.add(call_id)
        fixed.append(call)
    return tuple(fixed)


def _log(level: int, message: str, trace_id: str, **fields: Any) -> None:
    payload = {"trace_id": trace_id}
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})
