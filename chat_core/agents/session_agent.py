"""会话级 Agent。

把会话存储与单轮执行器串起来：读取历史 -> 执行一轮 -> 整体追加本轮消息。
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import SessionStore
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import Message
from chat_core.flows.graph import TurnExecutor, TurnOutcome
from chat_core.infrastructure.locks import KeyedLock
from chat_core.infrastructure.logging.logger import logger
from chat_core.prompts import load_system_prompt, render_prompt
from chat_core.providers.base import ProviderClient
from chat_core.tools.executor import ToolExecutor


@dataclass
class AgentConfig:
    model: str = "chat"
    max_steps: int = 25
    temperature: float = 0.3
    parallel_tool_calls: bool = False
    turn_timeout: Optional[float] = None  # 单轮截止时间（秒）
    prompt_name: Optional[str] = "assistant"
    prompt_vars: Optional[Dict[str, Any]] = None

    @classmethod
    def from_settings(cls, cfg=settings) -> "AgentConfig":
        return cls(
            model=cfg.default_model,
            max_steps=cfg.max_steps,
            temperature=cfg.temperature,
            parallel_tool_calls=cfg.parallel_tool_calls,
            turn_timeout=cfg.turn_timeout,
        )


class SessionAgent:
    def __init__(
        self,
        store: SessionStore,
        provider_client: ProviderClient,
        tool_executor: Optional[ToolExecutor] = None,
        config: Optional[AgentConfig] = None,
    ):
        self._store = store
        self._config = config or AgentConfig()
        system_prompt = None
        if self._config.prompt_name:
            system_prompt = render_prompt(
                load_system_prompt(self._config.prompt_name),
                self._config.prompt_vars,
            )
        self._executor = TurnExecutor(
            provider_client,
            tool_executor,
            model=self._config.model,
            system_prompt=system_prompt,
            temperature=self._config.temperature,
            max_steps=self._config.max_steps,
            parallel_tool_calls=self._config.parallel_tool_calls,
        )
        self._turn_locks = KeyedLock()

    @property
    def store(self) -> SessionStore:
        return self._store

    async def chat(
        self,
        session_id: str,
        user_input: Union[str, Message],
        *,
        deadline: Optional[float] = None,
        max_steps: Optional[int] = None,
    ) -> TurnOutcome:
        """在指定会话上执行一轮对话并持久化。

        同一会话上的多轮对话串行执行；任何致命错误都不会写入存储。
        """

        trace_id = f"tr-{uuid4().hex}"
        log_ctx: Dict[str, Any] = {"trace_id": trace_id, "session_id": session_id}
        start_time = time.time()
        if deadline is None:
            deadline = self._config.turn_timeout

        async with self._turn_locks.hold(session_id):
            conversation = await self._store.get(session_id)
            try:
                outcome = await self._executor.run_turn(
                    conversation,
                    user_input,
                    max_steps=max_steps,
                    deadline=deadline,
                    trace_id=trace_id,
                )
            except BusinessError as e:
                e.extra.setdefault("session_id", session_id)
                self._log(logging.ERROR, "Turn failed", log_ctx, code=e.code, error=e.message, **_context(e))
                raise
            await self._store.append(session_id, outcome.new_messages)

        self._log(
            logging.INFO,
            "Stored turn",
            log_ctx,
            new_messages=len(outcome.new_messages),
            steps=outcome.steps,
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        return outcome

    async def history(self, session_id: str) -> Tuple[Message, ...]:
        conversation = await self._store.get(session_id)
        return conversation.messages

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})


def _context(error: BusinessError) -> Dict[str, Any]:
    return {k: error.extra[k] for k in ("step", "tool_name") if k in error.extra}
