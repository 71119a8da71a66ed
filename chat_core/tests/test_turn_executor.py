import asyncio

import pytest

from chat_core.domain.conversation import Conversation
from chat_core.domain.exceptions import Cancelled, ExecutionLimitExceeded, NetworkError
from chat_core.domain.models import ChatChoice, ChatResult, ChatUsage, Message
from chat_core.flows.graph import TurnExecutor, run_turn
from chat_core.tools.builtin import make_weather
from chat_core.tools.definitions import ToolCall, ToolDef, ToolParam
from chat_core.tools.executor import ToolExecutor


def _result(message, usage=None):
    return ChatResult(provider="fake", model="chat", choices=[ChatChoice(index=0, message=message)], usage=usage, raw={})


class ScriptedProvider:
    """按顺序返回预设回复；用完后重复最后一条。"""

    name = "fake"

    def __init__(self, replies):
        self._replies = list(replies)
        self.requests = []

    async def chat(self, req):
        self.requests.append(req)
        idx = min(len(self.requests), len(self._replies)) - 1
        return _result(self._replies[idx], ChatUsage(1, 1, 2))


class AlwaysToolProvider:
    name = "fake"

    def __init__(self):
        self.calls = 0

    async def chat(self, req):
        self.calls += 1
        call = ToolCall(id=f"c{self.calls}", name="get_current_weather", arguments={"location": "Paris"})
        return _result(Message.assistant("", tool_calls=(call,)))


def _echo_tools():
    tools = ToolExecutor([make_weather()])
    tools.register(
        ToolDef(
            name="echo",
            description="echo text",
            params={"text": ToolParam(name="text", description="text", required=True)},
        ),
        lambda args: f"echo:{args['text']}",
    )
    return tools


def test_plain_reply_makes_one_model_call():
    provider = ScriptedProvider([Message.assistant("How can I assist you today?")])
    outcome = asyncio.run(run_turn(Conversation("s1"), "I'm Nemo!", ToolExecutor(), provider))
    assert len(provider.requests) == 1
    assert outcome.steps == 1
    assert [m.role for m in outcome.new_messages] == ["user", "assistant"]
    assert outcome.reply.content == "How can I assist you today?"
    assert outcome.usage.total_tokens == 2


def test_loop_bound_raises_after_max_steps():
    provider = AlwaysToolProvider()
    executor = TurnExecutor(provider, ToolExecutor([make_weather()]), max_steps=3)
    with pytest.raises(ExecutionLimitExceeded) as info:
        asyncio.run(executor.run_turn(Conversation("s1"), "loop forever"))
    assert provider.calls == 3
    partial = info.value.conversation
    assert partial is not None
    # user + 3 * (assistant, tool)
    assert len(partial.messages) == 7
    partial.validate()
    assert partial.unresolved_calls() == []
    assert info.value.extra["step"] == 3


def test_unknown_tool_is_reported_and_loop_continues():
    call = ToolCall(id="x1", name="nonexistent", arguments={})
    provider = ScriptedProvider([
        Message.assistant("", tool_calls=(call,)),
        Message.assistant("recovered"),
    ])
    outcome = asyncio.run(run_turn(Conversation("s1"), "hi", _echo_tools(), provider))
    tool_msg = outcome.new_messages[2]
    assert tool_msg.role == "tool"
    assert tool_msg.tool_call_id == "x1"
    assert tool_msg.content.startswith("Error:")
    assert "nonexistent" in tool_msg.content
    assert tool_msg.meta["ok"] is False
    assert outcome.reply.content == "recovered"
    assert outcome.steps == 2


def test_tool_failure_and_bad_arguments_become_tool_results():
    tools = ToolExecutor()

    def boom(args):
        raise RuntimeError("boom")

    tools.register(ToolDef(name="boom", description="always fails"), boom)
    tools.add(make_weather())
    provider = ScriptedProvider([
        Message.assistant("", tool_calls=(
            ToolCall(id="a", name="boom", arguments={}),
            ToolCall(id="b", name="get_current_weather", arguments={}),
        )),
        Message.assistant("sorry"),
    ])
    outcome = asyncio.run(run_turn(Conversation("s1"), "hi", tools, provider))
    first, second = outcome.new_messages[2], outcome.new_messages[3]
    assert "boom" in first.content and first.content.startswith("Error:")
    assert "invalid arguments" in second.content
    # 错误内容会在下一次调用中回传给模型
    last_request = provider.requests[-1]
    assert [m.role for m in last_request.messages][-2:] == ["tool", "tool"]


def test_weather_scenario_appends_four_messages():
    call = ToolCall(id="call_1", name="get_current_weather", arguments={"location": "San Francisco, CA"})
    provider = ScriptedProvider([
        Message.assistant("", tool_calls=(call,)),
        Message.assistant("It's sunny and 72F in San Francisco."),
    ])
    outcome = asyncio.run(
        run_turn(Conversation("s2"), "What's the weather in SF?", ToolExecutor([make_weather()]), provider)
    )
    assert [m.role for m in outcome.new_messages] == ["user", "assistant", "tool", "assistant"]
    assert "San Francisco, CA" in outcome.new_messages[2].content
    assert len(provider.requests) == 2
    assert provider.requests[0].tools[0].name == "get_current_weather"
    outcome.conversation.validate()


def test_same_tool_twice_matched_by_id():
    provider = ScriptedProvider([
        Message.assistant("", tool_calls=(
            ToolCall(id="e1", name="echo", arguments={"text": "one"}),
            ToolCall(id="e2", name="echo", arguments={"text": "two"}),
        )),
        Message.assistant("done"),
    ])
    outcome = asyncio.run(run_turn(Conversation("s1"), "hi", _echo_tools(), provider))
    results = {m.tool_call_id: m.content for m in outcome.new_messages if m.role == "tool"}
    assert results == {"e1": "echo:one", "e2": "echo:two"}


def test_parallel_calls_keep_emitted_order():
    tools = ToolExecutor()

    async def slow(args):
        await asyncio.sleep(args["delay"])
        return args["tag"]

    tools.register(
        ToolDef(
            name="slow",
            description="sleep then return tag",
            params={
                "delay": ToolParam(name="delay", description="", required=True, schema={"type": "number"}),
                "tag": ToolParam(name="tag", description="", required=True),
            },
        ),
        slow,
    )
    provider = ScriptedProvider([
        Message.assistant("", tool_calls=(
            ToolCall(id="p1", name="slow", arguments={"delay": 0.05, "tag": "first"}),
            ToolCall(id="p2", name="slow", arguments={"delay": 0.0, "tag": "second"}),
        )),
        Message.assistant("done"),
    ])
    executor = TurnExecutor(provider, tools, parallel_tool_calls=True)
    outcome = asyncio.run(executor.run_turn(Conversation("s1"), "go"))
    tool_msgs = [m for m in outcome.new_messages if m.role == "tool"]
    assert [m.tool_call_id for m in tool_msgs] == ["p1", "p2"]
    assert [m.content for m in tool_msgs] == ["first", "second"]


def test_deadline_cancels_outstanding_model_call():
    class SlowProvider:
        name = "fake"

        async def chat(self, req):
            await asyncio.sleep(5)
            return _result(Message.assistant("too late"))

    history = Conversation("s1", (Message.user("earlier"), Message.assistant("ok")))
    with pytest.raises(Cancelled) as info:
        asyncio.run(run_turn(history, "hi", ToolExecutor(), SlowProvider(), deadline=0.05))
    assert info.value.extra["step"] == 1
    assert len(history.messages) == 2


def _tools_with_sleeper():
    tools = ToolExecutor()

    async def sleeper(args):
        await asyncio.sleep(args["delay"])
        return "woke"

    tools.register(
        ToolDef(
            name="sleeper",
            description="sleep for delay seconds",
            params={"delay": ToolParam(name="delay", description="", required=True, schema={"type": "number"})},
        ),
        sleeper,
    )
    return tools


@pytest.mark.parametrize("parallel", [False, True])
def test_deadline_cancels_outstanding_tool_call(parallel):
    provider = ScriptedProvider([
        Message.assistant("", tool_calls=(
            ToolCall(id="t1", name="sleeper", arguments={"delay": 0}),
            ToolCall(id="t2", name="sleeper", arguments={"delay": 5}),
        )),
        Message.assistant("never reached"),
    ])
    executor = TurnExecutor(provider, _tools_with_sleeper(), parallel_tool_calls=parallel)
    with pytest.raises(Cancelled) as info:
        asyncio.run(executor.run_turn(Conversation("s1"), "nap", deadline=0.1))
    assert info.value.extra["tool_name"] == "sleeper"
    assert info.value.extra["step"] == 1
    assert len(provider.requests) == 1


def test_explicit_zero_max_steps_is_rejected():
    provider = ScriptedProvider([Message.assistant("hello")])
    executor = TurnExecutor(provider, ToolExecutor(), max_steps=5)
    with pytest.raises(ValueError):
        asyncio.run(executor.run_turn(Conversation("s1"), "hi", max_steps=0))
    with pytest.raises(ValueError):
        asyncio.run(run_turn(Conversation("s1"), "hi", ToolExecutor(), provider, max_steps=0))
    assert provider.requests == []


def test_model_failure_carries_step():
    class FlakyProvider:
        name = "fake"

        def __init__(self):
            self.calls = 0

        async def chat(self, req):
            self.calls += 1
            if self.calls == 2:
                raise NetworkError(code="NETWORK_ERROR", message="connection reset")
            call = ToolCall(id="w1", name="get_current_weather", arguments={"location": "Oslo"})
            return _result(Message.assistant("", tool_calls=(call,)))

    with pytest.raises(NetworkError) as info:
        asyncio.run(run_turn(Conversation("s1"), "hi", ToolExecutor([make_weather()]), FlakyProvider()))
    assert info.value.extra["step"] == 2


def test_system_prompt_sent_but_not_recorded():
    provider = ScriptedProvider([Message.assistant("hello")])
    executor = TurnExecutor(provider, ToolExecutor(), system_prompt="be brief")
    outcome = asyncio.run(executor.run_turn(Conversation("s1"), "hi"))
    assert provider.requests[0].messages[0].role == "system"
    assert provider.requests[0].tools is None
    assert all(m.role != "system" for m in outcome.conversation.messages)


def test_colliding_call_ids_are_reassigned():
    # 厂商在缺少 id 时常用下标作为 id，多步之间会重复
    provider = ScriptedProvider([
        Message.assistant("", tool_calls=(ToolCall(id="tool_call_0", name="echo", arguments={"text": "a"}),)),
        Message.assistant("", tool_calls=(ToolCall(id="tool_call_0", name="echo", arguments={"text": "b"}),)),
        Message.assistant("done"),
    ])
    outcome = asyncio.run(run_turn(Conversation("s1"), "hi", _echo_tools(), provider))
    outcome.conversation.validate()
    ids = [c.id for m in outcome.new_messages for c in m.tool_calls]
    assert len(set(ids)) == 2
    assert ids[0] == "tool_call_0"


def test_rejects_non_user_message():
    provider = ScriptedProvider([Message.assistant("x")])
    with pytest.raises(ValueError):
        asyncio.run(run_turn(Conversation("s1"), Message.assistant("nope"), ToolExecutor(), provider))
