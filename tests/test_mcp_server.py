"""Tests for the MCP server tool functions."""

import json

import pytest

from opswatch.models import Event, EventLevel, Memory, MemoryCategory, Session, SessionStatus
from opswatch.store import OpsStore
from opswatch.stream import format_log_line

from conftest import assistant_text, init_line, result_line


@pytest.fixture
def mcp_state(tmp_path, monkeypatch):
    """Initialized state dir with a finished session, events and memories."""
    state = tmp_path / "state"
    state.mkdir()
    store = OpsStore(state / "opswatch.db")
    store.initialize()

    session = store.insert_session(Session(id=None, tier=1, model="haiku",
                                           prompt_text="check everything"))
    log_path = state / "session-1.log"
    with log_path.open("w", encoding="utf-8") as f:
        for raw in (init_line(), assistant_text("Checking nginx"), result_line()):
            f.write(format_log_line(raw))
    store.set_session_log_path(session.id, str(log_path))
    store.finalize_session(session.id, SessionStatus.FAILED, 1)

    store.insert_event(Event(id=None, session_id=session.id, level=EventLevel.CRITICAL,
                             message="nginx down", service="nginx"))
    store.insert_event(Event(id=None, session_id=session.id, level=EventLevel.INFO,
                             message="nas healthy", service="nas"))
    store.insert_memory(Memory(id=None, category=MemoryCategory.TIMING,
                               observation="Jellyfin needs 60s", service="jellyfin"))
    store.close()

    monkeypatch.setenv("OPSWATCH_STATE_DIR", str(state))
    return state


class TestSessionTools:

    def test_list_sessions(self, mcp_state):
        from opswatch.mcp_server import list_sessions
        result = list_sessions()
        assert result.startswith("[#1] [failed]")

    def test_list_sessions_json(self, mcp_state):
        from opswatch.mcp_server import list_sessions
        data = json.loads(list_sessions(status="failed", format="json"))
        assert data[0]["prompt_text"] == "check everything"

    def test_get_session(self, mcp_state):
        from opswatch.mcp_server import get_session
        assert "Session #1 [failed]" in get_session(1)
        assert get_session(42) == "Session not found: 42"

    def test_session_log(self, mcp_state):
        from opswatch.mcp_server import session_log
        text = session_log(1)
        assert "Checking nginx" in text
        assert session_log(1, tail=1).startswith("--- session complete")


class TestEventTools:

    def test_list_events(self, mcp_state):
        from opswatch.mcp_server import list_events
        result = list_events(level="critical")
        assert "nginx down" in result
        assert "nas healthy" not in result

    def test_list_events_by_service_json(self, mcp_state):
        from opswatch.mcp_server import list_events
        data = json.loads(list_events(service="nas", format="json"))
        assert [e["message"] for e in data] == ["nas healthy"]


class TestMemoryTools:

    def test_list_memories(self, mcp_state):
        from opswatch.mcp_server import list_memories
        assert "Jellyfin needs 60s" in list_memories()

    def test_create_update_delete(self, mcp_state):
        from opswatch.mcp_server import create_memory, delete_memory, list_memories, update_memory
        created = create_memory("dependency", "Nextcloud needs postgres", service="nextcloud")
        assert created.startswith("[2] nextcloud [dependency]")

        updated = update_memory(2, confidence=0.1)
        assert "[inactive]" in updated
        assert "Nextcloud" not in list_memories()
        assert "Nextcloud" in list_memories(include_inactive=True)

        assert delete_memory(2) == "Deleted memory 2"
        assert delete_memory(2) == "Memory not found: 2"

    def test_memory_context(self, mcp_state):
        from opswatch.mcp_server import memory_context
        text = memory_context()
        assert text.startswith("## Operational Memory (1 of 1 memories")
        assert memory_context(budget=0) == "(no memory context)"


class TestCooldownTools:

    def test_permit_and_status(self, mcp_state):
        from opswatch.cooldown import CooldownEngine, CooldownLedger
        from opswatch.mcp_server import cooldown_permit, cooldown_status
        from opswatch.models import ActionClass

        assert cooldown_permit("nginx", "redeploy") == "redeploy of nginx: permitted"
        CooldownEngine(CooldownLedger(mcp_state / "cooldown.json")).record(
            "nginx", ActionClass.REDEPLOY, success=True,
        )
        assert cooldown_permit("nginx", "redeploy") == "redeploy of nginx: in cooldown"
        data = json.loads(cooldown_status(format="json"))
        assert data[0]["service"] == "nginx"


def test_uninitialized(tmp_path, monkeypatch):
    monkeypatch.setenv("OPSWATCH_STATE_DIR", str(tmp_path / "missing"))
    from opswatch.mcp_server import list_sessions
    with pytest.raises(FileNotFoundError):
        list_sessions()
