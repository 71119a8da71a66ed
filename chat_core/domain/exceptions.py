"""统一业务异常模型。

所有跨模块抛出的业务级错误都继承自 BusinessError，
便于在 API 层或调用方做统一捕获与提示。

按对一轮对话的影响分为两类：

- 可恢复：UnknownCapability / CapabilityError。由工具层抛出，
  执行器将其转为 tool 消息回传给模型，循环继续。
- 致命：ModelUnavailable / ModelRejected / ExecutionLimitExceeded / Cancelled。
  终止本轮对话并抛给调用方，不写入会话存储。
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from chat_core.domain.conversation import Conversation


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 step、tool_name、session_id）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


# ---- 工具调用（可恢复） ----


class UnknownCapability(BusinessError):
    """模型请求了未注册的工具。"""

    def __init__(self, name: str, **extra):
        super().__init__(code="UNKNOWN_TOOL", message=f"unknown tool '{name}'", tool_name=name, **extra)


class CapabilityError(BusinessError):
    """工具执行失败或参数不符合声明的 schema。"""

    def __init__(self, message: str, code: str = "TOOL_ERROR", **extra):
        super().__init__(code=code, message=message, **extra)


# ---- 模型调用（致命） ----


class ModelUnavailable(BusinessError):
    """模型暂时不可用：网络失败、限流或服务端 5xx。"""

    def __init__(self, code: str = "MODEL_UNAVAILABLE", message: str = "model unavailable", http_status: int = 503, **extra):
        super().__init__(code=code, message=message, http_status=http_status, **extra)


class NetworkError(ModelUnavailable):
    """网络层错误，例如连接失败、超时等。"""


class RateLimitError(ModelUnavailable):
    """Provider 限流错误，由上层负责重试/退避策略。"""


class ModelRejected(BusinessError):
    """模型拒绝了请求（4xx）或返回了无法解析的结果。"""

    def __init__(self, code: str = "MODEL_REJECTED", message: str = "model rejected request", http_status: int = 400, **extra):
        super().__init__(code=code, message=message, http_status=http_status, **extra)


class ApiError(ModelRejected):
    """第三方 API 返回 4xx 错误时抛出。"""


# ---- 循环控制（致命） ----


class ExecutionLimitExceeded(BusinessError):
    """模型调用次数达到 max_steps 仍未给出最终回答。

    conversation 保存截至目前产生的全部消息，供调用方排查。
    """

    def __init__(self, max_steps: int, conversation: "Optional[Conversation]" = None, **extra):
        super().__init__(
            code="EXECUTION_LIMIT",
            message=f"no final answer after {max_steps} model calls",
            http_status=500,
            step=max_steps,
            **extra,
        )
        self.max_steps = max_steps
        self.conversation = conversation


class Cancelled(BusinessError):
    """调用方给定的截止时间已到，本轮对话被取消。"""

    def __init__(self, message: str = "turn cancelled", **extra):
        super().__init__(code="CANCELLED", message=message, http_status=408, **extra)
