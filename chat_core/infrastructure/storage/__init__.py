"""会话存储实现：进程内 (memory_store) 与 JSONL 文件 (json_store)。"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.domain.conversation import SessionStore
from chat_core.domain.exceptions import ValidationError
from chat_core.infrastructure.storage.json_store import JsonSessionStore
from chat_core.infrastructure.storage.memory_store import InMemorySessionStore


def create_store(backend: Optional[str] = None) -> SessionStore:
    """根据配置创建会话存储，默认取 settings.session_backend。"""

    name = (backend or settings.session_backend).lower()
    if name == "memory":
        return InMemorySessionStore()
    if name == "json":
        return JsonSessionStore(root=settings.storage_root)
    raise ValidationError(code="UNKNOWN_BACKEND", message=f"unknown session backend {name!r}")


__all__ = ["InMemorySessionStore", "JsonSessionStore", "create_store"]
