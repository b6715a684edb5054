"""Tests for the opswatch CLI."""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from opswatch.cli import cli
from opswatch.models import Event, EventLevel, Session, SessionStatus
from opswatch.store import OpsStore

from conftest import FakeProcess, FakeRunner, assistant_text, init_line, result_line


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("OPSWATCH_STATE_DIR", raising=False)
    with patch("opswatch.cli.configure_logging"):
        yield


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def state_dir(runner, tmp_path):
    """An initialized state directory."""
    path = tmp_path / "state"
    result = runner.invoke(cli, ["-d", str(path), "init"])
    assert result.exit_code == 0
    return path


def _invoke(runner, state_dir, *args):
    return runner.invoke(cli, ["-d", str(state_dir), *args])


def _open(state_dir) -> OpsStore:
    return OpsStore(state_dir / "opswatch.db")


class TestInit:

    def test_init_creates_state(self, runner, tmp_path):
        path = tmp_path / "state"
        result = runner.invoke(cli, ["-d", str(path), "init"])
        assert result.exit_code == 0
        assert (path / "opswatch.db").exists()
        assert (path / "results").is_dir()
        assert "opswatch initialized" in result.output

    def test_init_already_initialized(self, runner, state_dir):
        result = _invoke(runner, state_dir, "init")
        assert "already initialized" in result.output

    def test_commands_require_init(self, runner, tmp_path):
        result = runner.invoke(cli, ["-d", str(tmp_path / "nope"), "sessions"])
        assert result.exit_code == 1
        assert "not initialized" in result.output


class TestRun:

    def _fake_runner(self, *lines, exit_code=0):
        fake = FakeRunner(FakeProcess(list(lines), exit_code=exit_code))
        return patch("opswatch.supervisor.CLIRunner", return_value=fake)

    def test_run_streams_output(self, runner, state_dir):
        with self._fake_runner(init_line(), assistant_text("Checking nginx"), result_line()):
            result = _invoke(runner, state_dir, "run", "-p", "check nginx")
        assert result.exit_code == 0, result.output
        assert "Checking nginx" in result.output
        assert "Session #1 succeeded." in result.output

        store = _open(state_dir)
        session = store.get_session(1)
        store.close()
        assert session.status == SessionStatus.SUCCEEDED
        assert session.prompt_text == "check nginx"

    def test_run_failure_exit_code(self, runner, state_dir):
        with self._fake_runner(init_line(), exit_code=1):
            result = _invoke(runner, state_dir, "run", "-p", "check")
        assert result.exit_code == 2
        assert "failed" in result.output

    def test_run_from_prompt_file(self, runner, state_dir, tmp_path):
        prompt = tmp_path / "prompt.md"
        prompt.write_text("Check the NAS.")
        with self._fake_runner(init_line(), result_line()):
            result = _invoke(runner, state_dir, "run", "-t", "2", "-f", str(prompt))
        assert result.exit_code == 0
        store = _open(state_dir)
        session = store.get_session(1)
        store.close()
        assert session.prompt_text == "Check the NAS."
        assert session.tier == 2

    def test_run_requires_prompt(self, runner, state_dir):
        result = _invoke(runner, state_dir, "run")
        assert result.exit_code == 1
        assert "Provide --prompt" in result.output

    def test_run_refuses_while_running(self, runner, state_dir):
        store = _open(state_dir)
        store.insert_session(Session(id=None, tier=1, model="haiku"))
        store.close()
        result = _invoke(runner, state_dir, "run", "-p", "check")
        assert result.exit_code == 1
        assert "already running" in result.output

    def test_run_invalid_tier(self, runner, state_dir):
        result = _invoke(runner, state_dir, "run", "-t", "7", "-p", "check")
        assert result.exit_code == 1
        assert "Tier must be between" in result.output

    def test_run_blocked_by_cooldown(self, runner, state_dir):
        _invoke(runner, state_dir, "cooldown", "record", "nginx", "redeploy")
        result = _invoke(runner, state_dir, "run", "-t", "2", "-p", "redeploy",
                         "--remediate", "nginx:redeploy")
        assert result.exit_code == 1
        assert "cooldown" in result.output

    def test_run_bad_remediation(self, runner, state_dir):
        result = _invoke(runner, state_dir, "run", "-p", "x", "--remediate", "nginx")
        assert result.exit_code != 0


class TestSessions:

    @pytest.fixture
    def populated(self, state_dir):
        store = _open(state_dir)
        first = store.insert_session(Session(id=None, tier=1, model="haiku"))
        store.finalize_session(first.id, SessionStatus.FAILED, 1)
        second = store.insert_session(Session(id=None, tier=2, model="sonnet",
                                              parent_session_id=first.id))
        store.finalize_session(second.id, SessionStatus.KILLED, -15)
        store.insert_event(Event(id=None, session_id=first.id, level=EventLevel.CRITICAL,
                                 message="nginx down", service="nginx"))
        store.insert_event(Event(id=None, session_id=first.id, level=EventLevel.INFO,
                                 message="nas fine", service="nas"))
        store.close()
        return state_dir

    def test_sessions_list(self, runner, populated):
        result = _invoke(runner, populated, "sessions")
        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert lines[0].startswith("[#2] [killed]")
        assert lines[1].startswith("[#1] [failed]")

    def test_sessions_filter_json(self, runner, populated):
        result = _invoke(runner, populated, "sessions", "-s", "failed", "-f", "json")
        data = json.loads(result.output)
        assert [s["id"] for s in data] == [1]

    def test_show(self, runner, populated):
        result = _invoke(runner, populated, "show", "1")
        assert result.exit_code == 0
        assert "Session #1 [failed]" in result.output
        assert "Escalations:" in result.output

    def test_show_missing(self, runner, populated):
        result = _invoke(runner, populated, "show", "99")
        assert result.exit_code == 1

    def test_chain(self, runner, populated):
        result = _invoke(runner, populated, "chain", "2")
        lines = result.output.strip().splitlines()
        assert lines[0].startswith("[#1]")
        assert lines[1].startswith("[#2]")

    def test_events_filtered(self, runner, populated):
        result = _invoke(runner, populated, "events", "-l", "critical")
        assert "nginx down" in result.output
        assert "nas fine" not in result.output

    def test_events_bad_level(self, runner, populated):
        result = _invoke(runner, populated, "events", "-l", "loud")
        assert result.exit_code == 1

    def test_log_without_file(self, runner, populated):
        result = _invoke(runner, populated, "log", "1")
        assert "(no log)" in result.output

    def test_recover(self, runner, state_dir):
        store = _open(state_dir)
        store.insert_session(Session(id=None, tier=1, model="haiku"))
        store.close()
        result = _invoke(runner, state_dir, "recover")
        assert "Recovered 1 session(s)." in result.output

    def test_status_json(self, runner, populated):
        result = _invoke(runner, populated, "status", "-f", "json")
        data = json.loads(result.output)
        assert data["sessions"] == 2
        assert data["events"] == 2
        assert data["running_session"] is None


class TestMemories:

    def test_add_and_list(self, runner, state_dir):
        result = _invoke(runner, state_dir, "memories", "add", "-c", "timing",
                         "-o", "Jellyfin needs 60s", "-s", "jellyfin")
        assert result.exit_code == 0
        assert "(confidence: 0.70)" in result.output

        result = _invoke(runner, state_dir, "memories", "ls")
        assert "Jellyfin needs 60s" in result.output

    def test_low_confidence_hidden_by_default(self, runner, state_dir):
        _invoke(runner, state_dir, "memories", "add", "-c", "behavior",
                "-o", "Flaky idea", "--confidence", "0.1")
        assert "Flaky idea" not in _invoke(runner, state_dir, "memories", "ls").output
        assert "Flaky idea" in _invoke(runner, state_dir, "memories", "ls", "--all").output

    def test_edit_reactivates(self, runner, state_dir):
        _invoke(runner, state_dir, "memories", "add", "-c", "behavior",
                "-o", "Flaky idea", "--confidence", "0.1")
        result = _invoke(runner, state_dir, "memories", "edit", "1", "--confidence", "0.5")
        assert result.exit_code == 0
        assert "[inactive]" not in result.output

    def test_edit_missing(self, runner, state_dir):
        result = _invoke(runner, state_dir, "memories", "edit", "5", "-o", "x")
        assert result.exit_code == 1
        assert "Memory not found" in result.output

    def test_rm(self, runner, state_dir):
        _invoke(runner, state_dir, "memories", "add", "-c", "timing", "-o", "x")
        assert _invoke(runner, state_dir, "memories", "rm", "1").exit_code == 0
        assert _invoke(runner, state_dir, "memories", "rm", "1").exit_code == 1

    def test_context(self, runner, state_dir):
        assert "(no memory context)" in _invoke(runner, state_dir, "context").output
        _invoke(runner, state_dir, "memories", "add", "-c", "timing", "-o", "Slow boot",
                "-s", "plex")
        result = _invoke(runner, state_dir, "context")
        assert "## Operational Memory (1 of 1 memories" in result.output
        assert "### plex" in result.output


class TestCooldown:

    def test_check_record_and_clear(self, runner, state_dir):
        assert _invoke(runner, state_dir, "cooldown", "check", "nginx", "restart").exit_code == 0
        _invoke(runner, state_dir, "cooldown", "record", "nginx", "restart")
        _invoke(runner, state_dir, "cooldown", "record", "nginx", "restart",
                "--failure", "-e", "exit 1")
        result = _invoke(runner, state_dir, "cooldown", "check", "nginx", "restart")
        assert result.exit_code == 1
        assert "in cooldown" in result.output

        _invoke(runner, state_dir, "cooldown", "health", "nginx")
        _invoke(runner, state_dir, "cooldown", "health", "nginx")
        assert _invoke(runner, state_dir, "cooldown", "check", "nginx", "restart").exit_code == 0

    def test_status_json(self, runner, state_dir):
        _invoke(runner, state_dir, "cooldown", "record", "app", "redeploy")
        data = json.loads(_invoke(runner, state_dir, "cooldown", "status", "-f", "json").output)
        assert data[0]["service"] == "app"
        assert data[0]["redeploy_permitted"] is False

    def test_prune(self, runner, state_dir):
        result = _invoke(runner, state_dir, "cooldown", "prune")
        assert "Pruned 0 attempt(s)." in result.output
