"""Output formatters for sessions, events, memories and cooldowns."""

import json
from dataclasses import asdict
from datetime import datetime, timezone
from enum import Enum

from opswatch.models import CooldownSummary, Event, Memory, Session


def _short_timestamp(ts: str | None) -> str:
    """Convert ISO timestamp to compact form: '2026-02-23 14:30'."""
    if not ts:
        return "-"
    return ts[:16].replace("T", " ")


def _relative_time(iso_ts: str) -> str:
    """Convert ISO timestamp to relative time like '2h ago', '30m ago'."""
    try:
        dt = datetime.fromisoformat(iso_ts.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        seconds = int((datetime.now(timezone.utc) - dt).total_seconds())
        if seconds < 60:
            return "just now"
        if seconds < 3600:
            return f"{seconds // 60}m ago"
        if seconds < 86400:
            return f"{seconds // 3600}h ago"
        return f"{seconds // 86400}d ago"
    except (ValueError, TypeError):
        return iso_ts[:16]


def _jsonable(obj) -> dict:
    d = asdict(obj)
    for key, value in d.items():
        if isinstance(value, Enum):
            d[key] = value.value
    return d


def format_session_compact(session: Session) -> str:
    """Single-line compact format for a session."""
    parent = f" (escalated from #{session.parent_session_id})" if session.parent_session_id else ""
    metrics = ""
    if session.num_turns is not None:
        metrics = f" — turns={session.num_turns}, cost=${session.cost_usd or 0:.4f}"
    exit_part = f" exit={session.exit_code}" if session.exit_code is not None else ""
    return (
        f"[#{session.id}] [{session.status.value}] tier {session.tier} {session.model} "
        f"({session.trigger.value}){parent} — started {_relative_time(session.started_at)}"
        f"{exit_part}{metrics}"
    )


def format_sessions_compact(sessions: list[Session]) -> str:
    if not sessions:
        return "(no sessions)"
    return "\n".join(format_session_compact(s) for s in sessions)


def format_session_detail(session: Session) -> str:
    """Multi-line detail view for one session."""
    lines = [
        f"Session #{session.id} [{session.status.value}]",
        f"Tier: {session.tier}  Model: {session.model}  Trigger: {session.trigger.value}",
        f"Started: {_short_timestamp(session.started_at)}  Ended: {_short_timestamp(session.ended_at)}",
    ]
    if session.parent_session_id:
        lines.append(f"Parent: #{session.parent_session_id}")
    if session.exit_code is not None:
        lines.append(f"Exit code: {session.exit_code}")
    if session.num_turns is not None:
        lines.append(
            f"Turns: {session.num_turns}  Cost: ${session.cost_usd or 0:.4f}  "
            f"Duration: {session.duration_ms}ms"
        )
    if session.log_path:
        lines.append(f"Log: {session.log_path}")
    if session.summary:
        lines.append(f"\nSummary: {session.summary}")
    if session.response:
        lines.append(f"\nResponse:\n{session.response}")
    return "\n".join(lines)


def format_sessions_json(sessions: list[Session]) -> str:
    return json.dumps([_jsonable(s) for s in sessions], indent=2)


def format_event_compact(event: Event) -> str:
    """Single-line compact format for one event."""
    ts = _short_timestamp(event.created_at)
    service = f" [{event.service}]" if event.service else ""
    session = f" (session #{event.session_id})" if event.session_id else ""
    return f"[{ts}] [{event.level.value}]{service} {event.message}{session}"


def format_events_compact(events: list[Event]) -> str:
    if not events:
        return "(no events)"
    return "\n".join(format_event_compact(e) for e in events)


def format_events_json(events: list[Event]) -> str:
    return json.dumps([_jsonable(e) for e in events], indent=2)


def format_memory_compact(memory: Memory) -> str:
    scope = memory.service or "general"
    state = "" if memory.active else " [inactive]"
    origin = f" (session #{memory.session_id})" if memory.session_id else " (operator)"
    return (
        f"[{memory.id}] {scope} [{memory.category.value}] {memory.observation} "
        f"(confidence: {memory.confidence:.2f}){state}{origin}"
    )


def format_memories_compact(memories: list[Memory]) -> str:
    if not memories:
        return "(no memories)"
    return "\n".join(format_memory_compact(m) for m in memories)


def format_memories_json(memories: list[Memory]) -> str:
    return json.dumps([_jsonable(m) for m in memories], indent=2)


def format_cooldown_compact(summary: CooldownSummary) -> str:
    restart = "ok" if summary.restart_permitted else "BLOCKED"
    redeploy = "ok" if summary.redeploy_permitted else "BLOCKED"
    last = f", last attempt {_relative_time(summary.last_attempt)}" if summary.last_attempt else ""
    return (
        f"{summary.service}: restarts {summary.restarts_in_window}/2 in 4h ({restart}), "
        f"redeploys {summary.redeploys_in_window}/1 in 24h ({redeploy}), "
        f"healthy streak {summary.consecutive_healthy}{last}"
    )


def format_cooldowns_compact(summaries: list[CooldownSummary]) -> str:
    if not summaries:
        return "(no cooldown records)"
    return "\n".join(format_cooldown_compact(s) for s in summaries)


def format_cooldowns_json(summaries: list[CooldownSummary]) -> str:
    return json.dumps([asdict(s) for s in summaries], indent=2)
