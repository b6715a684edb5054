"""opswatch MCP server: read sessions, events and cooldowns, and curate memory."""

import os
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from opswatch.config import Config
from opswatch.context import MemoryContextBuilder
from opswatch.cooldown import CooldownEngine, CooldownLedger
from opswatch.formatting import (
    format_cooldowns_compact, format_cooldowns_json,
    format_events_compact, format_events_json,
    format_memories_compact, format_memories_json, format_memory_compact,
    format_session_detail, format_sessions_compact, format_sessions_json,
)
from opswatch.logging_utils import configure_logging
from opswatch.models import ActionClass, Memory, MemoryCategory
from opswatch.query import parse_category, parse_levels, parse_since, parse_status
from opswatch.store import DEFAULT_CONFIDENCE, OpsStore
from opswatch.stream import render_log

mcp = FastMCP("opswatch", instructions=(
    "opswatch records infrastructure investigation sessions, the events they "
    "surfaced, and the operational memory learned from them. Check cooldowns "
    "before recommending a restart or redeploy."
))


def _get_config() -> Config:
    state_dir = os.environ.get("OPSWATCH_STATE_DIR")
    return Config.from_env(state_dir=Path(state_dir) if state_dir else None)


def _get_store() -> OpsStore:
    """Get OpsStore for the configured state directory."""
    config = _get_config()
    if not config.db_path.exists():
        raise FileNotFoundError(
            f"opswatch not initialized in {config.state_dir}. "
            f"Run 'opswatch init' first."
        )
    return OpsStore(config.db_path)


def _get_cooldown() -> CooldownEngine:
    return CooldownEngine(CooldownLedger(_get_config().cooldown_path))


@mcp.tool()
def list_sessions(
    status: str | None = None,
    limit: int = 20,
    offset: int = 0,
    format: str = "compact",
) -> str:
    """List sessions, newest first.

    Args:
        status: Filter by status: running, succeeded, failed, killed
        limit: Maximum results (default 20)
        offset: Skip this many results (pagination)
        format: Output format: "compact" or "json"
    """
    store = _get_store()
    try:
        results = store.list_sessions(limit=limit, offset=offset, status=parse_status(status))
        if format == "json":
            return format_sessions_json(results)
        return format_sessions_compact(results)
    finally:
        store.close()


@mcp.tool()
def get_session(session_id: int) -> str:
    """Show one session with its metadata, summary and response."""
    store = _get_store()
    try:
        session = store.get_session(session_id)
        if session is None:
            return f"Session not found: {session_id}"
        return format_session_detail(session)
    finally:
        store.close()


@mcp.tool()
def session_log(session_id: int, tail: int = 200) -> str:
    """Rendered output of a session, regenerated from its durable log.

    Args:
        session_id: Session to render
        tail: Only return the last N lines (0 for all)
    """
    store = _get_store()
    try:
        session = store.get_session(session_id)
    finally:
        store.close()
    if session is None:
        return f"Session not found: {session_id}"
    if not session.log_path:
        return "(no log)"
    lines = render_log(Path(session.log_path))
    if tail:
        lines = lines[-tail:]
    return "\n".join(lines) if lines else "(empty log)"


@mcp.tool()
def list_events(
    level: str | None = None,
    service: str | None = None,
    since: str | None = None,
    session_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
    format: str = "compact",
) -> str:
    """List events surfaced by sessions.

    Args:
        level: Comma-separated levels: info,warning,critical
        service: Filter by service name
        since: Time filter: "24h", "7d", "2w", or ISO date
        session_id: Only events from this session
        limit: Maximum results (default 50)
        offset: Skip this many results (pagination)
        format: Output format: "compact" or "json"
    """
    store = _get_store()
    try:
        results = store.list_events(
            levels=parse_levels(level) if level else None,
            service=service,
            since=parse_since(since) if since else None,
            session_id=session_id, limit=limit, offset=offset,
        )
        if format == "json":
            return format_events_json(results)
        return format_events_compact(results)
    finally:
        store.close()


@mcp.tool()
def list_memories(
    service: str | None = None,
    category: str | None = None,
    include_inactive: bool = False,
    limit: int = 100,
    format: str = "compact",
) -> str:
    """List operational memories, highest confidence first.

    Args:
        service: Filter by service scope
        category: One of: timing, dependency, behavior, remediation, maintenance
        include_inactive: Also show memories that fell below the confidence floor
        limit: Maximum results (default 100)
        format: Output format: "compact" or "json"
    """
    store = _get_store()
    try:
        results = store.list_memories(
            service=service, category=parse_category(category),
            active=None if include_inactive else True, limit=limit,
        )
        if format == "json":
            return format_memories_json(results)
        return format_memories_compact(results)
    finally:
        store.close()


@mcp.tool()
def create_memory(
    category: str,
    observation: str,
    service: str | None = None,
    confidence: float = DEFAULT_CONFIDENCE,
) -> str:
    """Add an operator memory (not tied to any session).

    Args:
        category: One of: timing, dependency, behavior, remediation, maintenance
        observation: What was learned
        service: Service scope, or omit for general knowledge
        confidence: Initial confidence 0.0-1.0 (default 0.7)
    """
    store = _get_store()
    try:
        memory = store.insert_memory(Memory(
            id=None, category=MemoryCategory(category), observation=observation,
            service=service, confidence=confidence,
        ))
        return format_memory_compact(memory)
    finally:
        store.close()


@mcp.tool()
def update_memory(
    memory_id: int,
    observation: str | None = None,
    confidence: float | None = None,
    active: bool | None = None,
) -> str:
    """Edit a memory. Raising confidence back to 0.3 or more reactivates it.

    Args:
        memory_id: Memory to edit
        observation: New observation text
        confidence: New confidence 0.0-1.0
        active: Force the active flag
    """
    store = _get_store()
    try:
        memory = store.update_memory(
            memory_id, observation=observation, confidence=confidence, active=active,
        )
        return format_memory_compact(memory)
    finally:
        store.close()


@mcp.tool()
def delete_memory(memory_id: int) -> str:
    """Delete a memory permanently."""
    store = _get_store()
    try:
        if store.delete_memory(memory_id):
            return f"Deleted memory {memory_id}"
        return f"Memory not found: {memory_id}"
    finally:
        store.close()


@mcp.tool()
def memory_context(budget: int | None = None) -> str:
    """The memory block the next session would receive in its system prompt."""
    config = _get_config()
    store = _get_store()
    try:
        rendered = MemoryContextBuilder(
            store, config.memory_budget if budget is None else budget,
        ).build()
        return rendered.text or "(no memory context)"
    finally:
        store.close()


@mcp.tool()
def cooldown_status(service: str | None = None, format: str = "compact") -> str:
    """Cooldown state for one service or all known services.

    Args:
        service: Service name, or omit for all
        format: Output format: "compact" or "json"
    """
    engine = _get_cooldown()
    summaries = [engine.summary(service)] if service else engine.summaries()
    if format == "json":
        return format_cooldowns_json(summaries)
    return format_cooldowns_compact(summaries)


@mcp.tool()
def cooldown_permit(service: str, action: str) -> str:
    """Whether a restart or redeploy of a service is currently allowed.

    Args:
        service: Service name
        action: "restart" or "redeploy"
    """
    permitted = _get_cooldown().permit(service, ActionClass(action))
    return f"{action} of {service}: {'permitted' if permitted else 'in cooldown'}"


def main():
    """Entry point for opswatch-mcp console script."""
    configure_logging(_get_config().log_level)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
