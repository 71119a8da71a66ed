"""Provider 抽象接口。

执行器不直接依赖具体厂商的 HTTP 接口，而是依赖此协议：

- 每个厂商（或每种兼容协议）实现一个 ProviderClient。
- 负责：将 ChatRequest 转成具体 API 请求，并把响应 JSON 解析为 ChatResult。
- 失败时只抛出 ModelUnavailable / ModelRejected 及其子类。
"""

from typing import Protocol

from chat_core.domain.models import ChatRequest, ChatResult


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    - name: Provider 名称，用于日志/统计。
    - chat(req): 执行一次非流式对话调用，返回统一的 ChatResult。
    """

    name: str

    async def chat(self, req: ChatRequest) -> ChatResult:
        ...
