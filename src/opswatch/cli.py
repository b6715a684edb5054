"""opswatch CLI: supervised infrastructure investigation sessions."""

import json
import sys
from datetime import timedelta
from pathlib import Path

import click

from opswatch.config import Config
from opswatch.context import MemoryContextBuilder
from opswatch.cooldown import CooldownEngine, CooldownLedger
from opswatch.formatting import (
    format_cooldown_compact, format_cooldowns_compact, format_cooldowns_json,
    format_events_compact, format_events_json,
    format_memories_compact, format_memories_json, format_memory_compact,
    format_session_detail, format_sessions_compact, format_sessions_json,
)
from opswatch.logging_utils import configure_logging
from opswatch.models import ActionClass, Memory, MemoryCategory, RemediationTarget
from opswatch.query import parse_category, parse_levels, parse_since, parse_status
from opswatch.store import DEFAULT_CONFIDENCE, OpsStore
from opswatch.stream import render_log
from opswatch.summarize import Summarizer
from opswatch.supervisor import AlreadyRunningError, CooldownActiveError, SessionSupervisor

CATEGORIES = [c.value for c in MemoryCategory]
ACTIONS = [a.value for a in ActionClass]
TRIGGERS = ["scheduled", "manual", "api", "alert", "escalation"]


def _get_store(config: Config) -> OpsStore:
    """Get an initialized OpsStore for the configured state directory."""
    if not config.db_path.exists():
        click.echo(f"Error: opswatch not initialized in {config.state_dir}", err=True)
        click.echo("Run 'opswatch init' first.", err=True)
        sys.exit(1)
    return OpsStore(config.db_path)


def _get_cooldown(config: Config) -> CooldownEngine:
    return CooldownEngine(CooldownLedger(config.cooldown_path))


def _parse_remediation(value: str | None) -> RemediationTarget | None:
    if not value:
        return None
    service, sep, action = value.partition(":")
    if not sep or not service:
        raise click.BadParameter("expected SERVICE:ACTION, e.g. nginx:restart")
    try:
        return RemediationTarget(service=service, action=ActionClass(action))
    except ValueError:
        raise click.BadParameter(f"action must be one of {', '.join(ACTIONS)}")


@click.group()
@click.option("--state-dir", "-d", default=None, type=click.Path(path_type=Path),
              help="State directory (default: $OPSWATCH_STATE_DIR or .opswatch)")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, state_dir, verbose):
    """opswatch: supervised infrastructure investigation sessions."""
    ctx.ensure_object(dict)
    config = Config.from_env(state_dir=state_dir)
    configure_logging("DEBUG" if verbose else config.log_level)
    ctx.obj["config"] = config


@cli.command()
@click.pass_context
def init(ctx):
    """Create the state directory and database."""
    config = ctx.obj["config"]
    if config.db_path.exists():
        click.echo(f"opswatch already initialized in {config.state_dir}")
        return

    config.state_dir.mkdir(parents=True, exist_ok=True)
    config.results_dir.mkdir(parents=True, exist_ok=True)
    store = OpsStore(config.db_path)
    store.initialize()
    store.close()
    click.echo(f"opswatch initialized in {config.state_dir}")


@cli.command()
@click.option("--tier", "-t", default=1, type=int, help="Capability tier (default: 1)")
@click.option("--model", "-m", default=None, help="Model override (default: tier model)")
@click.option("--prompt", "-p", "prompt_text", default=None, help="Prompt text")
@click.option("--prompt-file", "-f", default=None, type=click.Path(exists=True, path_type=Path),
              help="Read the prompt from a file")
@click.option("--trigger", default="manual", type=click.Choice(TRIGGERS))
@click.option("--parent", "parent_id", default=None, type=int, help="Parent session (escalation)")
@click.option("--remediate", default=None, help="Remediation target SERVICE:ACTION")
@click.pass_context
def run(ctx, tier, model, prompt_text, prompt_file, trigger, parent_id, remediate):
    """Start a session and follow its output. Ctrl-C cancels it."""
    config = ctx.obj["config"]
    if prompt_file is not None:
        prompt_text = prompt_file.read_text(encoding="utf-8")
    if not prompt_text:
        click.echo("Error: Provide --prompt or --prompt-file.", err=True)
        sys.exit(1)
    remediation = _parse_remediation(remediate)

    store = _get_store(config)
    try:
        running = store.running_session()
        if running is not None:
            click.echo(f"Error: Session #{running.id} is already running.", err=True)
            sys.exit(1)

        supervisor = SessionSupervisor(
            store, config,
            cooldown=_get_cooldown(config),
            summarizer=Summarizer(config.anthropic_api_key, config.summary_model),
        )
        try:
            session_id = supervisor.start(
                tier, model, prompt_text, trigger=trigger,
                parent_session_id=parent_id, remediation=remediation,
            )
        except (AlreadyRunningError, CooldownActiveError, ValueError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

        click.echo(f"Session #{session_id} started.", err=True)
        try:
            for line in supervisor.stream(session_id):
                click.echo(line)
            supervisor.wait()
        except KeyboardInterrupt:
            click.echo("Cancelling...", err=True)
            supervisor.cancel()

        supervisor.wait_for_summaries(timeout=60)
        session = store.get_session(session_id)
        click.echo(f"Session #{session_id} {session.status.value}.", err=True)
        if session.status.value != "succeeded":
            sys.exit(2)
    finally:
        store.close()


@cli.command()
@click.option("--status", "-s", "status_str", default=None,
              type=click.Choice(["running", "succeeded", "failed", "killed"]))
@click.option("--limit", "-n", default=20, help="Max results")
@click.option("--offset", default=0, help="Skip this many (pagination)")
@click.option("--format", "-f", "fmt", default="compact",
              type=click.Choice(["compact", "json"]))
@click.pass_context
def sessions(ctx, status_str, limit, offset, fmt):
    """List sessions, newest first."""
    store = _get_store(ctx.obj["config"])
    results = store.list_sessions(limit=limit, offset=offset, status=parse_status(status_str))
    if fmt == "json":
        click.echo(format_sessions_json(results))
    else:
        click.echo(format_sessions_compact(results))
    store.close()


@cli.command()
@click.argument("session_id", type=int)
@click.pass_context
def show(ctx, session_id):
    """Show one session in detail."""
    store = _get_store(ctx.obj["config"])
    try:
        session = store.get_session(session_id)
        if session is None:
            click.echo(f"Error: Session not found: {session_id}", err=True)
            sys.exit(1)
        click.echo(format_session_detail(session))
        children = store.get_child_sessions(session_id)
        if children:
            click.echo("\nEscalations:")
            click.echo(format_sessions_compact(children))
    finally:
        store.close()


@cli.command()
@click.argument("session_id", type=int)
@click.pass_context
def log(ctx, session_id):
    """Render a session's output from its durable log."""
    store = _get_store(ctx.obj["config"])
    try:
        session = store.get_session(session_id)
        if session is None:
            click.echo(f"Error: Session not found: {session_id}", err=True)
            sys.exit(1)
        if not session.log_path:
            click.echo("(no log)")
            return
        for line in render_log(Path(session.log_path)):
            click.echo(line)
    finally:
        store.close()


@cli.command()
@click.argument("session_id", type=int)
@click.pass_context
def chain(ctx, session_id):
    """Show the escalation chain ending at a session."""
    store = _get_store(ctx.obj["config"])
    results = store.get_escalation_chain(session_id)
    click.echo(format_sessions_compact(results))
    store.close()


@cli.command()
@click.option("--level", "-l", default=None, help="Level(s), comma-separated: info,warning,critical")
@click.option("--service", "-s", default=None, help="Filter by service")
@click.option("--since", default=None, help="Time filter: 24h, 7d, or ISO date")
@click.option("--session", "session_id", default=None, type=int, help="Filter by session")
@click.option("--limit", "-n", default=50, help="Max results")
@click.option("--offset", default=0, help="Skip this many (pagination)")
@click.option("--format", "-f", "fmt", default="compact",
              type=click.Choice(["compact", "json"]))
@click.pass_context
def events(ctx, level, service, since, session_id, limit, offset, fmt):
    """List events surfaced by sessions."""
    store = _get_store(ctx.obj["config"])
    try:
        levels = parse_levels(level) if level else None
        results = store.list_events(
            levels=levels, service=service,
            since=parse_since(since) if since else None,
            session_id=session_id, limit=limit, offset=offset,
        )
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        store.close()

    if fmt == "json":
        click.echo(format_events_json(results))
    else:
        click.echo(format_events_compact(results))


# --- Memory commands ---

@cli.group()
def memories():
    """Operational memory."""


@memories.command("ls")
@click.option("--service", "-s", default=None, help="Filter by service")
@click.option("--category", "-c", default=None, type=click.Choice(CATEGORIES))
@click.option("--all", "show_all", is_flag=True, help="Include inactive memories")
@click.option("--limit", "-n", default=100, help="Max results")
@click.option("--offset", default=0, help="Skip this many (pagination)")
@click.option("--format", "-f", "fmt", default="compact",
              type=click.Choice(["compact", "json"]))
@click.pass_context
def memories_ls(ctx, service, category, show_all, limit, offset, fmt):
    """List memories, highest confidence first."""
    store = _get_store(ctx.obj["config"])
    results = store.list_memories(
        service=service, category=parse_category(category),
        active=None if show_all else True, limit=limit, offset=offset,
    )
    store.close()
    if fmt == "json":
        click.echo(format_memories_json(results))
    else:
        click.echo(format_memories_compact(results))


@memories.command("add")
@click.option("--category", "-c", required=True, type=click.Choice(CATEGORIES))
@click.option("--observation", "-o", required=True, help="What was learned")
@click.option("--service", "-s", default=None, help="Service scope (default: general)")
@click.option("--confidence", default=DEFAULT_CONFIDENCE, type=float,
              help="Initial confidence (default: 0.7)")
@click.pass_context
def memories_add(ctx, category, observation, service, confidence):
    """Add an operator memory."""
    store = _get_store(ctx.obj["config"])
    try:
        memory = store.insert_memory(Memory(
            id=None, category=MemoryCategory(category), observation=observation,
            service=service, confidence=confidence,
        ))
        click.echo(format_memory_compact(memory))
    finally:
        store.close()


@memories.command("edit")
@click.argument("memory_id", type=int)
@click.option("--observation", "-o", default=None, help="New observation text")
@click.option("--confidence", default=None, type=float, help="New confidence")
@click.option("--active/--inactive", default=None, help="Force the active flag")
@click.pass_context
def memories_edit(ctx, memory_id, observation, confidence, active):
    """Edit a memory."""
    store = _get_store(ctx.obj["config"])
    try:
        memory = store.update_memory(
            memory_id, observation=observation, confidence=confidence, active=active,
        )
        click.echo(format_memory_compact(memory))
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        store.close()


@memories.command("rm")
@click.argument("memory_id", type=int)
@click.pass_context
def memories_rm(ctx, memory_id):
    """Delete a memory permanently."""
    store = _get_store(ctx.obj["config"])
    try:
        if not store.delete_memory(memory_id):
            click.echo(f"Error: Memory not found: {memory_id}", err=True)
            sys.exit(1)
        click.echo(f"Deleted memory {memory_id}")
    finally:
        store.close()


@cli.command()
@click.option("--budget", "-b", default=None, type=int, help="Token budget (default: config)")
@click.pass_context
def context(ctx, budget):
    """Show the memory context the next session would receive."""
    config = ctx.obj["config"]
    store = _get_store(config)
    rendered = MemoryContextBuilder(
        store, config.memory_budget if budget is None else budget,
    ).build()
    store.close()
    click.echo(rendered.text or "(no memory context)")


# --- Cooldown commands ---

@cli.group()
def cooldown():
    """Remediation cooldowns."""


@cooldown.command("status")
@click.argument("service", required=False)
@click.option("--format", "-f", "fmt", default="compact",
              type=click.Choice(["compact", "json"]))
@click.pass_context
def cooldown_status(ctx, service, fmt):
    """Show cooldown state for one or all services."""
    engine = _get_cooldown(ctx.obj["config"])
    summaries = [engine.summary(service)] if service else engine.summaries()
    if fmt == "json":
        click.echo(format_cooldowns_json(summaries))
    else:
        click.echo(format_cooldowns_compact(summaries))


@cooldown.command("check")
@click.argument("service")
@click.argument("action", type=click.Choice(ACTIONS))
@click.pass_context
def cooldown_check(ctx, service, action):
    """Exit 0 if the action is permitted, 1 otherwise."""
    engine = _get_cooldown(ctx.obj["config"])
    if engine.permit(service, ActionClass(action)):
        click.echo(f"{action} of {service}: permitted")
    else:
        click.echo(f"{action} of {service}: in cooldown")
        sys.exit(1)


@cooldown.command("record")
@click.argument("service")
@click.argument("action", type=click.Choice(ACTIONS))
@click.option("--success/--failure", default=True, help="Outcome of the attempt")
@click.option("--error", "-e", default=None, help="Error message for a failed attempt")
@click.pass_context
def cooldown_record(ctx, service, action, success, error):
    """Record a remediation attempt."""
    engine = _get_cooldown(ctx.obj["config"])
    engine.record(service, ActionClass(action), success=success, error=error)
    click.echo(format_cooldown_compact(engine.summary(service)))


@cooldown.command("health")
@click.argument("service")
@click.option("--healthy/--unhealthy", default=True, help="Result of the health evaluation")
@click.pass_context
def cooldown_health(ctx, service, healthy):
    """Record a health evaluation."""
    engine = _get_cooldown(ctx.obj["config"])
    engine.on_health_evaluation(service, healthy)
    click.echo(format_cooldown_compact(engine.summary(service)))


@cooldown.command("prune")
@click.option("--margin-hours", default=24, type=int, help="Extra retention beyond 24h")
@click.pass_context
def cooldown_prune(ctx, margin_hours):
    """Drop attempts that no window can see anymore."""
    engine = _get_cooldown(ctx.obj["config"])
    removed = engine.prune(timedelta(hours=margin_hours))
    click.echo(f"Pruned {removed} attempt(s).")


@cli.command()
@click.pass_context
def recover(ctx):
    """Mark sessions left running by a dead process as failed."""
    store = _get_store(ctx.obj["config"])
    count = store.mark_orphaned_sessions()
    store.close()
    click.echo(f"Recovered {count} session(s).")


@cli.command()
@click.option("--format", "-f", "fmt", default="compact",
              type=click.Choice(["compact", "json"]))
@click.pass_context
def status(ctx, fmt):
    """Show opswatch status."""
    config = ctx.obj["config"]
    store = _get_store(config)
    running = store.running_session()
    data = {
        "state_dir": str(config.state_dir),
        "sessions": store.count_sessions(),
        "running_session": running.id if running else None,
        "events": store.count_events(),
        "active_memories": store.count_memories(active=True),
        "inactive_memories": store.count_memories(active=False),
        "cooldown_services": len(_get_cooldown(config).summaries()),
    }
    store.close()

    if fmt == "json":
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(f"State dir:    {data['state_dir']}")
        click.echo(f"Sessions:     {data['sessions']}")
        click.echo(f"Running:      {'#' + str(running.id) if running else 'none'}")
        click.echo(f"Events:       {data['events']}")
        click.echo(f"Memories:     {data['active_memories']} active, "
                   f"{data['inactive_memories']} inactive")
        click.echo(f"Cooldowns:    {data['cooldown_services']} service(s)")
