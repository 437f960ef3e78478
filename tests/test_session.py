"""Session persistence and idle eviction."""

import json
from datetime import datetime, timedelta

import pytest

from nekobot.session.manager import Session, SessionManager


@pytest.fixture
def manager(tmp_path) -> SessionManager:
    return SessionManager(tmp_path / "sessions", idle_timeout_minutes=10)


def test_origin_defaults_to_key(manager: SessionManager) -> None:
    assert manager.get_or_create("telegram:42").origin == "telegram:42"
    assert manager.get_or_create("cli:default", origin="cli:me").origin == "cli:me"


def test_save_and_reload(tmp_path, manager: SessionManager) -> None:
    session = manager.get_or_create("telegram:42")
    session.add_message("user", "hi")
    session.add_message("assistant", "hello", tools_used=["memory_write"])
    manager.save(session)

    path = tmp_path / "sessions" / "telegram_42.jsonl"
    lines = path.read_text().splitlines()
    assert json.loads(lines[0])["_type"] == "metadata"
    assert len(lines) == 3

    fresh = SessionManager(tmp_path / "sessions")
    loaded = fresh.get_or_create("telegram:42")
    assert loaded.origin == "telegram:42"
    assert [m["content"] for m in loaded.messages] == ["hi", "hello"]
    assert loaded.messages[1]["tools_used"] == ["memory_write"]
    assert loaded.get_history() == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ]


def test_history_window() -> None:
    session = Session(key="k")
    for i in range(5):
        session.add_message("user", str(i))
    assert [m["content"] for m in session.get_history(2)] == ["3", "4"]
    assert session.get_history(0) == []


def test_clear_keeps_origin(tmp_path, manager: SessionManager) -> None:
    session = manager.get_or_create("cli:default", origin="cli:me")
    session.add_message("user", "x")
    manager.save(session)
    manager.clear("cli:default")

    reloaded = SessionManager(tmp_path / "sessions").get_or_create("cli:default")
    assert reloaded.messages == []
    assert reloaded.origin == "cli:me"


def test_corrupt_file_moved_aside(tmp_path, manager: SessionManager) -> None:
    path = tmp_path / "sessions" / "telegram_7.jsonl"
    path.write_text("{broken\n")
    session = manager.get_or_create("telegram:7")
    assert session.messages == []
    assert (tmp_path / "sessions" / "telegram_7.jsonl.corrupt").read_text() == "{broken\n"
    assert not path.exists()


def test_evict_idle(manager: SessionManager) -> None:
    stale = manager.get_or_create("a:1")
    stale.updated_at = datetime.now() - timedelta(minutes=30)
    manager.get_or_create("b:2")
    assert manager.evict_idle() == ["a:1"]
    assert manager.active_keys == ["b:2"]


async def test_evict_skips_locked_sessions(manager: SessionManager) -> None:
    session = manager.get_or_create("a:1")
    session.updated_at = datetime.now() - timedelta(hours=1)
    async with manager.lock("a:1"):
        assert manager.evict_idle() == []
    assert manager.evict_idle() == ["a:1"]


def test_list_and_delete(manager: SessionManager) -> None:
    for key in ("cli:one", "telegram:2"):
        session = manager.get_or_create(key)
        session.add_message("user", "x")
        manager.save(session)
    keys = {s["key"] for s in manager.list_sessions()}
    assert keys == {"cli:one", "telegram:2"}

    assert manager.delete("cli:one") is True
    assert manager.delete("cli:one") is False
    assert [s["key"] for s in manager.list_sessions()] == ["telegram:2"]
