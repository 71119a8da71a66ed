import asyncio
import json
import tempfile
from pathlib import Path

import pytest

from chat_core.domain.exceptions import BusinessError, ValidationError
from chat_core.domain.models import Message
from chat_core.infrastructure.storage.json_store import JsonSessionStore
from chat_core.tools.definitions import ToolCall


def test_json_store_append_and_reload():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonSessionStore(root=root)
        call = ToolCall(id="c1", name="web_search", arguments={"query": "langgraph"})
        batch = [
            Message.user("search please"),
            Message.assistant("", tool_calls=(call,)),
            Message.tool_result("c1", "[]"),
            Message.assistant("nothing found"),
        ]
        asyncio.run(store.append("s1", batch))

        reloaded = asyncio.run(JsonSessionStore(root=root).get("s1"))
        assert reloaded.messages == tuple(batch)
        meta = store.session_meta("s1")
        assert meta["message_count"] == 4
        assert meta["created_at"] <= meta["updated_at"]
        lines = (root / "sessions" / "s1" / "messages.jsonl").read_text(encoding="utf-8").splitlines()
        assert json.loads(lines[1])["tool_calls"][0]["name"] == "web_search"


def test_json_store_get_is_idempotent_and_unseen_is_empty():
    with tempfile.TemporaryDirectory() as d:
        store = JsonSessionStore(root=Path(d))
        assert asyncio.run(store.get("fresh")).messages == ()
        asyncio.run(store.append("s1", [Message.user("a"), Message.assistant("b")]))
        assert asyncio.run(store.get("s1")) == asyncio.run(store.get("s1"))


def test_json_store_list_and_delete():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonSessionStore(root=root)
        asyncio.run(store.append("b", [Message.user("x")]))
        asyncio.run(store.append("a", [Message.user("y")]))
        assert asyncio.run(store.list_sessions()) == ["a", "b"]
        asyncio.run(store.delete("a"))
        assert not (root / "sessions" / "a").exists()
        assert asyncio.run(store.list_sessions()) == ["b"]
        with pytest.raises(BusinessError) as info:
            asyncio.run(store.delete("a"))
        assert info.value.code == "SESSION_NOT_FOUND"


def test_json_store_rejects_path_like_session_ids():
    with tempfile.TemporaryDirectory() as d:
        store = JsonSessionStore(root=Path(d))
        for bad in ["../escape", "..", "a/b", ""]:
            with pytest.raises(ValidationError):
                asyncio.run(store.get(bad))


def test_json_store_corrupt_line_is_reported():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d)
        store = JsonSessionStore(root=root)
        asyncio.run(store.append("s1", [Message.user("ok")]))
        with (root / "sessions" / "s1" / "messages.jsonl").open("a", encoding="utf-8") as f:
            f.write("{not json\n")
        with pytest.raises(BusinessError) as info:
            asyncio.run(store.get("s1"))
        assert info.value.code == "STORE_READ_ERROR"


def test_json_store_failed_write_is_rolled_back(monkeypatch):
    with tempfile.TemporaryDirectory() as d:
        store = JsonSessionStore(root=Path(d))
        asyncio.run(store.append("s1", [Message.user("first")]))

        real_open = Path.open

        class HalfWrite:
            def __init__(self, f):
                self._f = f

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                self._f.close()
                return False

            def write(self, data):
                self._f.write(data[: len(data) // 2])
                self._f.flush()
                raise OSError("disk full")

        def flaky_open(self, mode="r", *args, **kwargs):
            f = real_open(self, mode, *args, **kwargs)
            if self.name == "messages.jsonl" and "a" in mode:
                return HalfWrite(f)
            return f

        monkeypatch.setattr(Path, "open", flaky_open)
        with pytest.raises(BusinessError) as info:
            asyncio.run(store.append("s1", [Message.user("second"), Message.assistant("lost reply")]))
        assert info.value.code == "STORE_WRITE_ERROR"
        monkeypatch.undo()

        assert [m.content for m in asyncio.run(store.get("s1")).messages] == ["first"]
        asyncio.run(store.append("s1", [Message.user("third")]))
        assert [m.content for m in asyncio.run(store.get("s1")).messages] == ["first", "third"]


def test_json_store_meta_failure_does_not_fail_append(monkeypatch):
    with tempfile.TemporaryDirectory() as d:
        store = JsonSessionStore(root=Path(d))

        def broken_meta(sdir, meta):
            raise BusinessError(code="STORE_WRITE_ERROR", message="read-only meta")

        monkeypatch.setattr(JsonSessionStore, "_write_meta", staticmethod(broken_meta))
        asyncio.run(store.append("s1", [Message.user("kept")]))
        assert [m.content for m in asyncio.run(store.get("s1")).messages] == ["kept"]
