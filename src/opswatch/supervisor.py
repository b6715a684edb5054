"""Session supervisor: runs one agent session at a time and records what it does."""

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Iterator

from opswatch.config import Config
from opswatch.context import MemoryContextBuilder
from opswatch.cooldown import CooldownEngine
from opswatch.hub import FanoutHub, HubRegistry
from opswatch.markers import CooldownMarker, parse_markers
from opswatch.models import (
    ActionClass, RemediationTarget, ResultInfo, Session, SessionStatus, TriggerKind,
)
from opswatch.reconcile import MarkerReconciler, SimilarityPolicy
from opswatch.runner import AgentInvocation, AgentProcess, CLIRunner, ProcessRunner
from opswatch.store import OpsStore
from opswatch.stream import classify, format_log_line, render_log
from opswatch.summarize import Summarizer

logger = logging.getLogger(__name__)


class AlreadyRunningError(RuntimeError):
    """A session is already running; the caller may retry later."""


class CooldownActiveError(RuntimeError):
    """The remediation target is rate-limited."""


@dataclass
class _ActiveSession:
    session_id: int
    tier: int
    hub: FanoutHub
    log_path: Path
    log_file: IO[str]
    remediation: RemediationTarget | None = None
    process: AgentProcess | None = None
    thread: threading.Thread | None = None
    result: ResultInfo | None = None
    lines_seen: int = 0
    last_line: str | None = None
    reported_attempts: set[tuple[str, ActionClass]] = field(default_factory=set)
    cancel_requested: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)


class SessionSupervisor:
    """Owns the agent subprocess lifecycle.

    ``start`` returns as soon as the process is spawned; a reader thread
    drains its output, and the single terminal update happens when that
    thread sees the stream end. The exclusivity slot is a plain lock that is
    acquired without blocking.
    """

    def __init__(
        self,
        store: OpsStore,
        config: Config,
        hubs: HubRegistry | None = None,
        runner: ProcessRunner | None = None,
        cooldown: CooldownEngine | None = None,
        summarizer: Summarizer | None = None,
    ):
        self.store = store
        self.config = config
        self.hubs = hubs or HubRegistry()
        self.runner = runner or CLIRunner(config.agent_bin)
        self.cooldown = cooldown
        self.summarizer = summarizer
        self.reconciler = MarkerReconciler(store, SimilarityPolicy(
            reinforce_threshold=config.reinforce_threshold,
            contradict_threshold=config.contradict_threshold,
        ))
        self._slot = threading.Lock()
        self._state_lock = threading.Lock()
        self._active: _ActiveSession | None = None
        self._summary_threads: list[threading.Thread] = []

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    def start(
        self,
        tier: int,
        model: str | None,
        prompt_text: str,
        trigger: TriggerKind | str = TriggerKind.MANUAL,
        parent_session_id: int | None = None,
        remediation: RemediationTarget | None = None,
    ) -> int:
        """Spawn a session and return its id without waiting for it to finish.

        Raises AlreadyRunningError while another session holds the slot and
        CooldownActiveError when the remediation target is rate-limited.
        """
        trigger = TriggerKind(trigger)
        tools = self.config.allowed_tools(tier)
        model = model or self.config.tier_model(tier)
        if parent_session_id is not None and self.store.get_session(parent_session_id) is None:
            raise ValueError(f"Parent session not found: {parent_session_id}")

        if not self._slot.acquire(blocking=False):
            raise AlreadyRunningError("A session is already running")

        active = None
        try:
            if remediation is not None and self.cooldown is not None:
                if not self.cooldown.permit(remediation.service, remediation.action):
                    raise CooldownActiveError(
                        f"{remediation.action.value} of {remediation.service} is in cooldown"
                    )

            context = MemoryContextBuilder(self.store, self.config.memory_budget).build()
            if context.included:
                logger.info("Injecting %d of %d memories (~%d tokens)",
                            context.included, context.total, context.tokens)

            session = self.store.insert_session(Session(
                id=None, tier=tier, model=model, trigger=trigger,
                prompt_text=prompt_text, parent_session_id=parent_session_id,
            ))
            active = self._open_session(session, remediation)
        except BaseException:
            if active is None:
                self._slot.release()
            raise

        system_prompt = f"Environment: {self.config.env_context()}"
        if context.text:
            system_prompt += "\n\n" + context.text

        invocation = AgentInvocation(
            model=model, prompt=prompt_text, allowed_tools=tools, system_prompt=system_prompt,
        )
        try:
            active.process = self.runner.start(invocation)
        except OSError as e:
            logger.error("Failed to spawn agent for session %d: %s", active.session_id, e)
            self._finish(active, SessionStatus.FAILED, None)
            return active.session_id

        logger.info("Session %d started (tier %d, model %s, trigger %s)",
                    active.session_id, tier, model, trigger.value)
        active.thread = threading.Thread(
            target=self._drain, args=(active,), name=f"session-{active.session_id}", daemon=True,
        )
        # Only a session with a process and a started reader is visible to cancel().
        with self._state_lock:
            self._active = active
            active.thread.start()
        return active.session_id

    def _open_session(self, session: Session, remediation: RemediationTarget | None) -> _ActiveSession:
        results_dir = Path(self.config.results_dir)
        results_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        log_path = results_dir / f"session-{session.id}-{stamp}.log"
        try:
            # surrogateescape writes undecodable agent bytes back out unchanged.
            log_file = log_path.open("a", encoding="utf-8", errors="surrogateescape")
        except OSError:
            self.store.finalize_session(session.id, SessionStatus.FAILED, None)
            raise
        self.store.set_session_log_path(session.id, str(log_path))
        return _ActiveSession(
            session_id=session.id,
            tier=session.tier,
            hub=self.hubs.create(session.id),
            log_path=log_path,
            log_file=log_file,
            remediation=remediation,
        )

    # ------------------------------------------------------------------
    # Output draining
    # ------------------------------------------------------------------

    def _drain(self, active: _ActiveSession) -> None:
        status = SessionStatus.FAILED
        exit_code = None
        try:
            self._read_output(active)
            exit_code = active.process.wait()
            status = self._terminal_status(active, exit_code)
        finally:
            self._finish(active, status, exit_code)

    def _read_output(self, active: _ActiveSession) -> None:
        stdout = active.process.stdout
        try:
            for chunk in iter(stdout.readline, b""):
                try:
                    self._handle_line(active, chunk)
                except Exception:
                    logger.exception("Handling output line of session %d failed", active.session_id)
        except (OSError, ValueError) as e:
            # Nobody drains the pipe any more; make sure wait() can return.
            logger.error("Reading output of session %d failed: %s", active.session_id, e)
            active.process.kill()

    def _terminal_status(self, active: _ActiveSession, exit_code: int) -> SessionStatus:
        if active.cancel_requested.is_set():
            return SessionStatus.KILLED
        if active.result is not None and not active.result.is_error and exit_code == 0:
            return SessionStatus.SUCCEEDED
        if active.result is None:
            logger.warning("Session %d exited with %s and no result record",
                           active.session_id, exit_code)
        return SessionStatus.FAILED

    def _handle_line(self, active: _ActiveSession, chunk: bytes) -> None:
        line = chunk.rstrip(b"\r\n")
        # The durable log comes first and must not depend on anything below.
        try:
            active.log_file.write(format_log_line(line.decode("utf-8", errors="surrogateescape")))
            active.log_file.flush()
        except OSError as e:
            logger.error("Writing log for session %d failed: %s", active.session_id, e)

        classification = classify(line.decode("utf-8", errors="replace"))
        if classification.display is not None:
            active.hub.publish(classification.display)
            active.lines_seen += 1
            active.last_line = classification.display
        if classification.result is not None:
            active.result = classification.result

        for marker in parse_markers(classification.text):
            if isinstance(marker, CooldownMarker):
                self._record_reported_attempt(active, marker)
                continue
            try:
                self.reconciler.apply(marker, active.session_id, active.tier)
            except (sqlite3.Error, ValueError) as e:
                logger.error("Dropping %s from session %d: %s",
                             type(marker).__name__, active.session_id, e)

    def _record_reported_attempt(self, active: _ActiveSession, marker: CooldownMarker) -> None:
        if self.cooldown is None:
            logger.warning("Session %d reported a %s of %s but no cooldown ledger is configured",
                           active.session_id, marker.action.value, marker.service)
            return
        try:
            self.cooldown.record(
                marker.service, marker.action, success=marker.success,
                error=None if marker.success else marker.message,
            )
        except OSError as e:
            logger.error("Recording cooldown for session %d failed: %s", active.session_id, e)
            return
        active.reported_attempts.add((marker.service, marker.action))
        logger.info("Session %d reported %s of %s: %s", active.session_id,
                    marker.action.value, marker.service, "success" if marker.success else "failure")

    def _finish(self, active: _ActiveSession, status: SessionStatus, exit_code: int | None) -> None:
        try:
            self.store.finalize_session(active.session_id, status, exit_code, active.result)
        except (sqlite3.Error, ValueError) as e:
            logger.error("Finalizing session %d failed: %s", active.session_id, e)

        target = active.remediation
        if target is not None and self.cooldown is not None \
                and (target.service, target.action) not in active.reported_attempts:
            succeeded = status == SessionStatus.SUCCEEDED
            try:
                self.cooldown.record(
                    target.service, target.action,
                    success=succeeded, error=None if succeeded else f"session {status.value}",
                )
            except OSError as e:
                logger.error("Recording cooldown for session %d failed: %s", active.session_id, e)

        try:
            active.log_file.close()
        except OSError:
            pass
        active.hub.close()
        self.hubs.remove(active.session_id)
        logger.info("Session %d finished: %s (exit %s)", active.session_id, status.value, exit_code)

        response = active.result.response if active.result else ""
        if status == SessionStatus.SUCCEEDED and self.summarizer is not None \
                and self.summarizer.enabled and response:
            thread = threading.Thread(
                target=self.summarizer.summarize_session,
                args=(self.store, active.session_id, response),
                name=f"summary-{active.session_id}",
                daemon=True,
            )
            self._summary_threads = [t for t in self._summary_threads if t.is_alive()]
            self._summary_threads.append(thread)
            thread.start()

        with self._state_lock:
            if self._active is active:
                self._active = None
        self._slot.release()
        active.done.set()

    # ------------------------------------------------------------------
    # Control and views
    # ------------------------------------------------------------------

    def cancel(self, timeout: float | None = None) -> bool:
        """Terminate the running session and wait for its reader to finish.

        Returns False when nothing is running. When this returns True the
        session row already carries its terminal status.
        """
        with self._state_lock:
            active = self._active
        if active is None or active.thread is None:
            return False

        active.cancel_requested.set()
        logger.info("Cancelling session %d", active.session_id)
        active.process.terminate()
        active.thread.join(self.config.kill_grace_seconds)
        if active.thread.is_alive():
            logger.warning("Session %d did not exit after SIGTERM; killing", active.session_id)
            active.process.kill()
            active.thread.join(timeout)
        return not active.thread.is_alive()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the running session (if any) has finished."""
        with self._state_lock:
            active = self._active
        if active is None:
            return True
        return active.done.wait(timeout)

    def wait_for_summaries(self, timeout: float | None = None) -> None:
        for thread in list(self._summary_threads):
            thread.join(timeout)

    def is_running(self) -> bool:
        return self._slot.locked()

    def active_session_id(self) -> int | None:
        with self._state_lock:
            return self._active.session_id if self._active else None

    def snapshot(self) -> dict | None:
        """Live in-memory view of the running session."""
        with self._state_lock:
            active = self._active
        if active is None:
            return None
        return {
            "session_id": active.session_id,
            "tier": active.tier,
            "lines_seen": active.lines_seen,
            "last_line": active.last_line,
            "result": active.result,
        }

    def stream(self, session_id: int) -> Iterator[str]:
        """Live lines for a running session, or a replay of its durable log."""
        hub = self.hubs.get(session_id)
        if hub is not None:
            return iter(hub.subscribe())
        session = self.store.get_session(session_id)
        if session is None or not session.log_path:
            return iter([])
        return iter(render_log(Path(session.log_path)))
