"""Shared fixtures for opswatch tests."""

import json
import os
import threading

import pytest

from opswatch.config import Config
from opswatch.models import Memory, MemoryCategory
from opswatch.store import OpsStore


@pytest.fixture
def store(tmp_path):
    """Empty initialized store."""
    s = OpsStore(tmp_path / "opswatch.db")
    s.initialize()
    yield s
    s.close()


@pytest.fixture
def config(tmp_path):
    """Config rooted in a temp state dir with a short kill grace."""
    return Config(state_dir=tmp_path / "state", kill_grace_seconds=0.5)


@pytest.fixture
def seeded_store(store):
    """Store with a handful of memories across services."""
    memories = [
        Memory(id=None, service="jellyfin", category=MemoryCategory.TIMING,
               observation="Jellyfin takes about 60 seconds to become healthy after restart"),
        Memory(id=None, service="postgres", category=MemoryCategory.DEPENDENCY,
               observation="Nextcloud fails when postgres is restarting", confidence=0.9),
        Memory(id=None, service=None, category=MemoryCategory.MAINTENANCE,
               observation="Backups run nightly at 03:00 and saturate disk IO", confidence=0.5),
    ]
    for m in memories:
        store.insert_memory(m)
    return store


# --- stream-json builders ---

def init_line() -> str:
    return json.dumps({"type": "system", "subtype": "init", "session_id": "abc"})


def assistant_text(*texts: str) -> str:
    return json.dumps({
        "type": "assistant",
        "message": {"content": [{"type": "text", "text": t} for t in texts]},
    })


def tool_use(name: str, tool_input: dict) -> str:
    return json.dumps({
        "type": "assistant",
        "message": {"content": [
            {"type": "tool_use", "id": "tu_1", "name": name, "input": tool_input},
        ]},
    })


def tool_result(content) -> str:
    return json.dumps({
        "type": "user",
        "message": {"content": [
            {"type": "tool_result", "tool_use_id": "tu_1", "content": content},
        ]},
    })


def result_line(response: str = "All services healthy.", is_error: bool = False,
                cost: float = 0.0123, turns: int = 4, duration_ms: int = 5200) -> str:
    return json.dumps({
        "type": "result",
        "subtype": "error" if is_error else "success",
        "is_error": is_error,
        "result": response,
        "total_cost_usd": cost,
        "num_turns": turns,
        "duration_ms": duration_ms,
    })


# --- fake agent processes ---

class FakeProcess:
    """Agent stand-in backed by a real pipe.

    Scripted lines are written up front. With ``hold_open`` the pipe stays
    open (the agent "keeps working") until terminate/kill. With
    ``ignore_term`` only kill ends it.
    """

    def __init__(self, lines: list[str], exit_code: int = 0,
                 hold_open: bool = False, ignore_term: bool = False):
        read_fd, write_fd = os.pipe()
        self.stdout = os.fdopen(read_fd, "rb")
        self._writer = os.fdopen(write_fd, "wb")
        self.exit_code = exit_code
        self.ignore_term = ignore_term
        self.terminated = False
        self.killed = False
        self._exited = threading.Event()
        for line in lines:
            self._writer.write(line.encode("utf-8") + b"\n")
        self._writer.flush()
        if not hold_open:
            self._close(exit_code)

    def _close(self, exit_code: int) -> None:
        self.exit_code = exit_code
        if not self._writer.closed:
            self._writer.close()
        self._exited.set()

    def write(self, line: str) -> None:
        self._writer.write(line.encode("utf-8") + b"\n")
        self._writer.flush()

    def finish(self, exit_code: int = 0) -> None:
        self._close(exit_code)

    def wait(self, timeout=None) -> int:
        self._exited.wait(timeout)
        return self.exit_code

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_term:
            self._close(-15)

    def kill(self) -> None:
        self.killed = True
        self._close(-9)


class FakeRunner:
    """ProcessRunner that hands out scripted processes and records invocations."""

    def __init__(self, *processes):
        self.processes = list(processes)
        self.invocations = []

    def start(self, invocation):
        self.invocations.append(invocation)
        return self.processes.pop(0)


class BrokenRunner:
    def start(self, invocation):
        raise FileNotFoundError("claude: command not found")
