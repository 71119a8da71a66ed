import json
import os
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, SessionStore
from chat_core.domain.exceptions import BusinessError, ValidationError
from chat_core.domain.models import Message
from chat_core.infrastructure.locks import KeyedLock
from chat_core.infrastructure.logging.logger import logger

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class JsonSessionStore(SessionStore):
    """以 JSONL 文件持久化的会话存储。

    目录结构::

        <root>/sessions/<session_id>/messages.jsonl
        <root>/sessions/<session_id>/meta.json
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._sessions_root = self._root / "sessions"
        self._sessions_root.mkdir(parents=True, exist_ok=True)
        self._locks = KeyedLock()

    async def get(self, session_id: str) -> Conversation:
        msgs_path = self._session_dir(session_id) / "messages.jsonl"
        if not msgs_path.exists():
            return Conversation(session_id=session_id)
        try:
            lines = msgs_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), session_id=session_id)
        messages: List[Message] = []
        for line_no, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                messages.append(Message.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                raise BusinessError(
                    code="STORE_READ_ERROR",
                    message=f"corrupt record at line {line_no}: {e}",
                    session_id=session_id,
                )
        return Conversation(session_id=session_id, messages=tuple(messages))

    async def append(self, session_id: str, messages: Iterable[Message]) -> None:
        batch = list(messages)
        if not batch:
            return
        sdir = self._session_dir(session_id)
        msgs_path = sdir / "messages.jsonl"
        # 一次写入整批记录，避免并发读取看到半轮对话
        data = "".join(json.dumps(m.to_dict(), ensure_ascii=False) + "\n" for m in batch).encode("utf-8")
        async with self._locks.hold(session_id):
            try:
                sdir.mkdir(parents=True, exist_ok=True)
                start = msgs_path.stat().st_size if msgs_path.exists() else 0
            except OSError as e:
                raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), session_id=session_id)
            try:
                with msgs_path.open("ab") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                self._rollback(msgs_path, start, session_id)
                raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), session_id=session_id)
            self._touch_meta(sdir, session_id, len(batch))
        logger.info(
            "Appended messages",
            extra={"extra": {"session_id": session_id, "count": len(batch)}},
        )

    async def list_sessions(self) -> List[str]:
        return sorted(
            p.name for p in self._sessions_root.iterdir() if (p / "messages.jsonl").exists()
        )

    async def delete(self, session_id: str) -> None:
        sdir = self._session_dir(session_id)
        async with self._locks.hold(session_id):
            if not sdir.exists():
                raise BusinessError(code="SESSION_NOT_FOUND", message=session_id, http_status=404)
            try:
                shutil.rmtree(sdir)
            except OSError as e:
                raise BusinessError(code="STORE_DELETE_ERROR", message=str(e), session_id=session_id)

    def session_meta(self, session_id: str) -> Dict[str, Any]:
        """返回会话元数据（创建/更新时间、消息条数）。"""

        sdir = self._session_dir(session_id)
        if not sdir.exists():
            raise BusinessError(code="SESSION_NOT_FOUND", message=session_id, http_status=404)
        return self._read_meta(sdir)

    def _session_dir(self, session_id: str) -> Path:
        if not _SESSION_ID_RE.match(session_id or "") or session_id in {".", ".."}:
            raise ValidationError(code="INVALID_SESSION_ID", message=repr(session_id))
        return self._sessions_root / session_id

    @staticmethod
    def _rollback(msgs_path: Path, size: int, session_id: str) -> None:
        """写入失败时把 messages.jsonl 截断回写入前的长度，丢弃半条记录。"""

        try:
            os.truncate(msgs_path, size)
        except OSError as e:
            logger.error(
                "Failed to roll back partial write",
                extra={"extra": {"session_id": session_id, "size": size, "error": str(e)}},
            )

    def _touch_meta(self, sdir: Path, session_id: str, added: int) -> None:
        # 消息已落盘，meta 更新失败只记日志，不影响本次 append 的结果
        try:
            meta = self._read_meta(sdir)
            now = _iso(datetime.now(timezone.utc))
            meta.setdefault("session_id", session_id)
            meta.setdefault("created_at", now)
            meta["updated_at"] = now
            meta["message_count"] = int(meta.get("message_count", 0)) + added
            self._write_meta(sdir, meta)
        except BusinessError as e:
            logger.warning(
                "Failed to update session meta",
                extra={"extra": {"session_id": session_id, "code": e.code, "error": e.message}},
            )

    @staticmethod
    def _read_meta(sdir: Path) -> Dict[str, Any]:
        meta_path = sdir / "meta.json"
        if not meta_path.exists():
            return {}
        try:
            return json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))

    @staticmethod
    def _write_meta(sdir: Path, meta: Dict[str, Any]) -> None:
        meta_path = sdir / "meta.json"
        tmp_path = sdir / f"meta.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(meta, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
