"""OpenAI 兼容协议的 Provider 适配器。

OpenAI、Moonshot/Kimi、GLM/BigModel 均提供 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

本模块负责：

1. 接收统一的 ChatRequest。
2. 将其转换为 chat/completions 请求格式（含 tools）。
3. 调用 HTTP 接口并把网络/API 异常映射为 ModelUnavailable / ModelRejected。
4. 将响应 JSON 解析为统一的 ChatResult / Message 结构（含工具调用）。
"""

import json
from typing import Any, Dict, List, Optional

import httpx

from chat_core.domain.exceptions import (
    ApiError,
    ModelRejected,
    ModelUnavailable,
    NetworkError,
    RateLimitError,
)
from chat_core.domain.models import ChatChoice, ChatRequest, ChatResult, ChatUsage, Message
from chat_core.providers.registry import ModelConfig, ProviderConfig
from chat_core.tools.definitions import ToolCall, ToolDef


class OpenAICompatClient:
    """chat/completions 协议的通用客户端。

    - name: Provider 名称（供日志/调试使用），取自 ProviderConfig。
    - chat: 对外统一调用入口，返回 ChatResult。
    """

    def __init__(self, provider_cfg: ProviderConfig, settings):
        # Settings 里包含 base_url、api_key、超时等配置
        self._cfg = provider_cfg
        self._settings = settings
        self.name = provider_cfg.name

    async def chat(self, req: ChatRequest) -> ChatResult:
        """执行一次非流式对话调用。

        步骤：
        1. 读取模型配置（logical model -> provider model）。
        2. 构造 HTTP 请求 payload。
        3. 发送请求并捕获网络错误/限流/服务端错误。
        4. 使用统一的解析函数构造 ChatResult。
        """

        api_key = getattr(self._settings, self._cfg.api_key_field, None)
        if not api_key:
            # 配置缺失同样视为模型拒绝，保证 chat 只抛 ModelUnavailable / ModelRejected
            raise ModelRejected(
                code="MISSING_API_KEY",
                message=f"{self._cfg.api_key_field.upper()} not set",
                provider=self.name,
            )
        model_cfg = self._model_config(req.model)
        payload = self._build_payload(req, model_cfg)
        base = getattr(self._settings, self._cfg.base_url_field, None) or self._cfg.base_url
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(
                    f"{base.rstrip('/')}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise NetworkError(code="NETWORK_ERROR", message=str(e), provider=self.name)
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message=f"{self.name} rate limit", http_status=429, provider=self.name)
        if resp.status_code >= 500:
            raise ModelUnavailable(message=resp.text, http_status=resp.status_code, provider=self.name)
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code, provider=self.name)
        try:
            data = resp.json()
        except ValueError as e:
            raise ModelRejected(code="BAD_RESPONSE", message=f"invalid JSON from {self.name}: {e}", provider=self.name)
        return self._parse_response(data, req)

    def _model_config(self, logical_name: str) -> ModelConfig:
        try:
            return self._cfg.models[logical_name]
        except KeyError:
            raise ModelRejected(
                code="UNKNOWN_MODEL",
                message=f"{self.name} has no model {logical_name!r}",
                provider=self.name,
            )

    def _build_payload(self, req: ChatRequest, model_cfg: ModelConfig) -> dict:
        """将 ChatRequest 转成 chat/completions 请求 JSON。"""

        payload: Dict[str, Any] = {
            "model": model_cfg.provider_model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "temperature": model_cfg.default_temperature if req.temperature is None else req.temperature,
            "max_tokens": req.max_tokens or model_cfg.max_tokens,
            "top_p": req.top_p,
        }
        if req.tools:
            payload["tools"] = [self._serialize_tool(tool) for tool in req.tools]
            payload["tool_choice"] = req.tool_choice
        return payload

    def _parse_response(self, data: Any, req: ChatRequest) -> ChatResult:
        """将原始响应 JSON 解析为统一的 ChatResult。

        响应结构不符合 chat/completions 约定时抛出 ModelRejected(BAD_RESPONSE)。
        """

        if not isinstance(data, dict):
            raise self._bad_response(f"expected JSON object, got {type(data).__name__}")
        raw_choices = data.get("choices") or []
        if not isinstance(raw_choices, list):
            raise self._bad_response("'choices' is not a list")
        if not raw_choices:
            raise ModelRejected(code="EMPTY_RESPONSE", message=f"{self.name} returned no choices", provider=self.name)
        choices: List[ChatChoice] = []
        for i, ch in enumerate(raw_choices):
            if not isinstance(ch, dict):
                raise self._bad_response(f"choice {i} is not an object")
            msg = ch.get("message") or {}
            if not isinstance(msg, dict):
                raise self._bad_response(f"choice {i} message is not an object")
            choices.append(
                ChatChoice(index=i, message=self._build_message(msg), finish_reason=ch.get("finish_reason"))
            )
        usage_raw = data.get("usage") or {}
        if not isinstance(usage_raw, dict):
            usage_raw = {}
        usage = ChatUsage(
            prompt_tokens=usage_raw.get("prompt_tokens") or 0,
            completion_tokens=usage_raw.get("completion_tokens") or 0,
            total_tokens=usage_raw.get("total_tokens") or 0,
        )
        return ChatResult(provider=self.name, model=req.model, choices=choices, usage=usage, raw=data)

    def _bad_response(self, detail: str) -> ModelRejected:
        return ModelRejected(code="BAD_RESPONSE", message=f"malformed response from {self.name}: {detail}", provider=self.name)

    @staticmethod
    def _serialize_tool(tool: ToolDef) -> Dict[str, Any]:
        """把内部的 ToolDef 转成 function tool 描述。"""

        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters_schema(),
            },
        }

    def _build_message(self, payload: Dict[str, Any]) -> Message:
        """将单条厂商 message 转换为 Message，同时解析 tool_calls。"""

        raw_calls = payload.get("tool_calls") or []
        if not isinstance(raw_calls, list):
            raise self._bad_response("'tool_calls' is not a list")
        tool_calls: List[ToolCall] = []
        for idx, call in enumerate(raw_calls):
            if not isinstance(call, dict):
                raise self._bad_response(f"tool call {idx} is not an object")
            func = call.get("function") or {}
            if not isinstance(func, dict):
                raise self._bad_response(f"tool call {idx} function is not an object")
            tool_calls.append(
                ToolCall(
                    id=str(call.get("id") or f"tool_call_{idx}"),
                    name=str(func.get("name") or call.get("name") or ""),
                    arguments=self._parse_arguments(func.get("arguments")),
                )
            )

        # 部分模型仍会返回旧版 function_call 字段
        function_call: Optional[Dict[str, Any]] = payload.get("function_call")
        if function_call:
            if not isinstance(function_call, dict):
                raise self._bad_response("'function_call' is not an object")
            tool_calls.append(
                ToolCall(
                    id=str(function_call.get("id") or "function_call"),
                    name=str(function_call.get("name") or ""),
                    arguments=self._parse_arguments(function_call.get("arguments")),
                )
            )
        content = payload.get("content")
        return Message(
            role="assistant",
            content=content if isinstance(content, str) else "",
            tool_calls=tuple(tool_calls),
        )

    @staticmethod
    def _parse_arguments(raw: Any) -> Dict[str, Any]:
        """解析工具调用的 arguments 字段。

        多数厂商把 arguments 作为 JSON 字符串返回，这里做一层 json.loads，
        失败时保留原始字符串到 `_raw`，交给工具层的 schema 校验报错。
        """

        if isinstance(raw, dict):
            return raw
        if isinstance(raw, str):
            if not raw.strip():
                return {}
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                return {"_raw": raw}
            return parsed if isinstance(parsed, dict) else {"_raw": raw}
        return {}

    @staticmethod
    def _message_to_payload(message: Message) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": message.role, "content": message.content or None}
        if message.tool_calls:
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(dict(call.arguments), ensure_ascii=False),
                    },
                }
                for call in message.tool_calls
            ]
        if message.tool_call_id:
            payload["tool_call_id"] = message.tool_call_id
        if payload["content"] is None and message.role != "assistant":
            payload["content"] = ""
        return payload
