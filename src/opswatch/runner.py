"""Agent process boundary: spawns the agent CLI and exposes its output stream."""

import logging
import os
import signal
import subprocess
from dataclasses import dataclass, field
from typing import BinaryIO, Protocol

logger = logging.getLogger(__name__)


@dataclass
class AgentInvocation:
    """Everything the agent process is given."""
    model: str
    prompt: str
    allowed_tools: list[str]
    system_prompt: str = ""
    env: dict[str, str] = field(default_factory=dict)


class AgentProcess(Protocol):
    """A running agent. ``stdout`` yields raw stream-json bytes."""

    stdout: BinaryIO

    def wait(self, timeout: float | None = None) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class ProcessRunner(Protocol):
    def start(self, invocation: AgentInvocation) -> AgentProcess: ...


class SubprocessAgent:
    """Wraps a Popen started in its own process group so signals reach children."""

    def __init__(self, proc: subprocess.Popen):
        self._proc = proc
        self.stdout = proc.stdout
        self.pid = proc.pid

    def wait(self, timeout: float | None = None) -> int:
        return self._proc.wait(timeout=timeout)

    def _signal_group(self, sig: int) -> None:
        try:
            os.killpg(os.getpgid(self.pid), sig)
        except (ProcessLookupError, PermissionError):
            pass

    def terminate(self) -> None:
        self._signal_group(signal.SIGTERM)

    def kill(self) -> None:
        self._signal_group(signal.SIGKILL)


class CLIRunner:
    """Starts the agent CLI in stream-json mode."""

    def __init__(self, agent_bin: str = "claude"):
        self.agent_bin = agent_bin

    def build_args(self, invocation: AgentInvocation) -> list[str]:
        args = [
            self.agent_bin,
            "--model", invocation.model,
            "-p", invocation.prompt,
            "--output-format", "stream-json",
            "--verbose",
        ]
        if invocation.allowed_tools:
            args += ["--allowedTools", ",".join(invocation.allowed_tools)]
        if invocation.system_prompt:
            args += ["--append-system-prompt", invocation.system_prompt]
        return args

    def start(self, invocation: AgentInvocation) -> AgentProcess:
        args = self.build_args(invocation)
        env = {**os.environ, **invocation.env}
        logger.debug("Spawning %s with model %s", self.agent_bin, invocation.model)
        proc = subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            env=env,
            start_new_session=True,
        )
        return SubprocessAgent(proc)
