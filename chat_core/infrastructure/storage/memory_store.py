"""进程内会话存储。"""

from typing import Dict, Iterable, List, Tuple

from chat_core.domain.conversation import Conversation, SessionStore
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import Message
from chat_core.infrastructure.locks import KeyedLock


class InMemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._sessions: Dict[str, Tuple[Message, ...]] = {}
        self._locks = KeyedLock()

    async def get(self, session_id: str) -> Conversation:
        return Conversation(session_id=session_id, messages=self._sessions.get(session_id, ()))

    async def append(self, session_id: str, messages: Iterable[Message]) -> None:
        batch = tuple(messages)
        if not batch:
            return
        async with self._locks.hold(session_id):
            # 整体替换元组，读者只会看到追加前或追加后的完整状态
            self._sessions[session_id] = self._sessions.get(session_id, ()) + batch

    async def list_sessions(self) -> List[str]:
        return sorted(self._sessions)

    async def delete(self, session_id: str) -> None:
        async with self._locks.hold(session_id):
            if session_id not in self._sessions:
                raise BusinessError(code="SESSION_NOT_FOUND", message=session_id, http_status=404)
            del self._sessions[session_id]
