"""Minimal demonstration of a session-scoped agent with tools.

Requires OPENAI_API_KEY (or another provider key plus DEFAULT_PROVIDER);
TAVILY_API_KEY enables web_search.
"""

import asyncio

from chat_core.agents import AgentConfig, SessionAgent
from chat_core.config.settings import settings
from chat_core.infrastructure.storage import create_store
from chat_core.providers import create_provider
from chat_core.tools.builtin import default_capabilities
from chat_core.tools.executor import ToolExecutor


async def main() -> None:
    agent = SessionAgent(
        store=create_store(),
        provider_client=create_provider(),
        tool_executor=ToolExecutor(default_capabilities(settings)),
        config=AgentConfig.from_settings(settings),
    )
    for question in ["I'm Nemo!", "What's the weather in SF?", "What's my name?"]:
        outcome = await agent.chat("demo", question)
        print("User:", question)
        print("Agent:", outcome.reply.content)


if __name__ == "__main__":
    asyncio.run(main())
