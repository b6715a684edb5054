"""Data models for opswatch sessions, events, memories and cooldowns."""

from dataclasses import dataclass, field
from enum import Enum


class SessionStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    KILLED = "killed"


class TriggerKind(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    API = "api"
    ALERT = "alert"
    ESCALATION = "escalation"


class EventLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class MemoryCategory(str, Enum):
    TIMING = "timing"
    DEPENDENCY = "dependency"
    BEHAVIOR = "behavior"
    REMEDIATION = "remediation"
    MAINTENANCE = "maintenance"


class ActionClass(str, Enum):
    RESTART = "restart"
    REDEPLOY = "redeploy"


@dataclass
class Session:
    id: int | None
    tier: int
    model: str
    status: SessionStatus = SessionStatus.RUNNING
    started_at: str = ""
    ended_at: str | None = None
    exit_code: int | None = None
    trigger: TriggerKind = TriggerKind.MANUAL
    prompt_text: str = ""
    log_path: str | None = None
    response: str | None = None
    cost_usd: float | None = None
    num_turns: int | None = None
    duration_ms: int | None = None
    parent_session_id: int | None = None
    summary: str | None = None


@dataclass
class Event:
    id: int | None
    session_id: int | None
    level: EventLevel
    message: str
    service: str | None = None
    created_at: str = ""


@dataclass
class Memory:
    id: int | None
    category: MemoryCategory
    observation: str
    service: str | None = None
    confidence: float = 0.7
    active: bool = True
    created_at: str = ""
    updated_at: str = ""
    session_id: int | None = None
    tier: int | None = None
    decayed_weeks: int = 0


@dataclass
class ResultInfo:
    """Metadata carried by the agent's terminal result record."""
    response: str = ""
    cost_usd: float = 0.0
    num_turns: int = 0
    duration_ms: int = 0
    is_error: bool = False


@dataclass
class RemediationTarget:
    service: str
    action: ActionClass


@dataclass
class CooldownAttempt:
    timestamp: str
    success: bool
    error: str | None = None


@dataclass
class CooldownRecord:
    service: str
    restarts: list[CooldownAttempt] = field(default_factory=list)
    redeploys: list[CooldownAttempt] = field(default_factory=list)
    consecutive_healthy: int = 0

    def attempts(self, action: ActionClass) -> list[CooldownAttempt]:
        return self.restarts if action == ActionClass.RESTART else self.redeploys


@dataclass
class CooldownSummary:
    service: str
    restarts_in_window: int
    redeploys_in_window: int
    restart_permitted: bool
    redeploy_permitted: bool
    consecutive_healthy: int
    last_attempt: str | None = None


@dataclass
class MemoryContext:
    text: str
    included: int
    total: int
    tokens: int
