"""
Tests for conversation history files and attached context files.

Run with:
$ pytest -q
"""

from datetime import date
from pathlib import Path

from loomcode.agent.context_files import resolve_context
from loomcode.core.schema import (
    ChatMessage,
    Role,
)
from loomcode.memory.history_store import JsonHistoryStore


def _msgs(*texts: str):
    roles = [Role.USER, Role.ASSISTANT]
    return [ChatMessage(role=roles[i % 2], content=t) for i, t in enumerate(texts)]


def test_history_is_kept_per_day(tmp_path: Path) -> None:
    """Each day gets its own file; earlier days stay readable."""

    day = [date(2024, 5, 1)]
    store = JsonHistoryStore(tmp_path, "s1", today=lambda: day[0])
    store.save_history(_msgs("hi", "hello"))

    assert (tmp_path / "s1" / "2024-05-01.json").is_file()
    day[0] = date(2024, 5, 2)
    assert store.load_history() == []
    assert [m.text() for m in store.load_history_for_date(date(2024, 5, 1))] == ["hi", "hello"]


def test_sessions_index_keeps_the_most_recent(tmp_path: Path) -> None:
    """Saving upserts by session id and only max_sessions entries are kept."""

    store = JsonHistoryStore(tmp_path, "main", max_sessions=2)
    store.save_session("a", _msgs("1"))
    store.save_session("b", _msgs("2"))
    store.save_session("a", _msgs("1", "1b"))
    store.save_session("c", _msgs("3"))

    ids = {s["session_id"] for s in store.list_sessions()}
    assert ids == {"a", "c"}
    assert [m.text() for m in store.load_session("a")] == ["1", "1b"]
    assert store.load_session("b") is None


def test_clear_history(tmp_path: Path) -> None:
    """Clearing removes today's file and the session entry."""

    store = JsonHistoryStore(tmp_path, "s1")
    store.save_history(_msgs("hi"))
    store.clear_history()
    assert store.load_history() == []
    assert store.load_session("s1") is None


def test_corrupt_history_is_ignored(tmp_path: Path) -> None:
    """An unreadable file loads as an empty history."""

    store = JsonHistoryStore(tmp_path, "s1", today=lambda: date(2024, 1, 1))
    (tmp_path / "s1").mkdir()
    (tmp_path / "s1" / "2024-01-01.json").write_text("{not json", encoding="utf-8")
    assert store.load_history() == []


def test_context_block_format(tmp_path: Path) -> None:
    """Files are wrapped in tagged blocks; long files are truncated."""

    (tmp_path / "a.py").write_text("x = 1", encoding="utf-8")
    (tmp_path / "long.txt").write_text("\n".join(str(i) for i in range(10)), encoding="utf-8")

    block = resolve_context(["a.py", "long.txt", "gone.txt"], tmp_path, max_lines=3)

    assert block.startswith("\n\n<context>\n")
    assert block.endswith("</context>\n")
    assert '<file path="a.py">\nx = 1\n</file>' in block
    assert '<file path="long.txt" truncated="true">\n0\n1\n2\n... (content truncated)\n</file>' in block
    assert '<file path="gone.txt" error="true">Could not read file.</file>' in block
    assert resolve_context([], tmp_path) == ""
