"""Command-line interface for inspecting and driving the agent mesh."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from typing import Any, List, Optional

import structlog
import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import Settings, get_settings
from .control import send_and_await_turn_end
from .errors import CoordinationError
from .guard import check_write, normalize_reservation_paths, validate_reservation_pattern
from .messaging import (
    format_inbox_delivery,
    format_message_event,
    normalize_limit,
    process_inbox,
    send_broadcast,
    send_direct,
    tail,
    thread,
)
from .models import AgentRegistration, InboxMessage, RegistrationOwner
from .registry import (
    build_registration,
    claim_agent_name,
    list_active,
    read_registration,
    resolve_role,
    unregister,
    update_reservations,
)
from .spawn import DepthState, SpawnOrchestrator, SpawnRequest, SpawnTask, build_completion_summary
from .storage import MeshPaths, collect_lock_status
from .utils import generate_agent_name, sanitize_agent_name

console = Console()

_LOGGING_CONFIGURED = False


def configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "run_id", "name"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level)
    # filelock logs every acquire/release at DEBUG
    logging.getLogger("filelock").setLevel(logging.INFO)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    _LOGGING_CONFIGURED = True


app = typer.Typer(help="Coordinate cooperating agents over a shared directory.", no_args_is_help=True)


@app.callback()
def _app_callback() -> None:
    configure_logging(get_settings())


def _paths() -> MeshPaths:
    return MeshPaths.from_settings(get_settings())


def _fail(exc: CoordinationError) -> typer.Exit:
    console.print(f"[red]{escape(str(exc))}[/] [dim]({exc.error_type})[/]")
    return typer.Exit(code=1)


def _require_registration(paths: MeshPaths, name: str) -> AgentRegistration:
    registration = read_registration(paths.registration_path(name))
    if registration is None:
        raise typer.BadParameter(f"Agent '{name}' is not registered")
    return registration


@app.command("register")
def register_agent(
    name: Optional[str] = typer.Option(None, help="Agent name; generated when omitted."),
    model: str = typer.Option("unknown", help="Model the agent runs on."),
    session_id: Optional[str] = typer.Option(None, "--session-id", help="Session id; random when omitted."),
    session_file: Optional[str] = typer.Option(None, "--session-file", help="Session file path."),
    pid: Optional[int] = typer.Option(None, help="Owning process id; defaults to the calling shell."),
    cwd: Optional[str] = typer.Option(None, help="Working directory to advertise."),
) -> None:
    """Register an agent, falling back to numbered names when the generated one is taken."""
    paths = _paths()
    explicit = name is not None
    preferred = sanitize_agent_name(name) if name else generate_agent_name()
    if not preferred:
        raise typer.BadParameter("Agent name must contain letters or digits")
    owner_pid = pid if pid is not None else os.getppid()
    session = session_id or str(uuid.uuid4())
    role = resolve_role(DepthState.from_env().depth, has_spawned=False)

    def _build(candidate: str) -> AgentRegistration:
        return build_registration(
            candidate,
            session_id=session,
            session_file=session_file,
            model=model,
            cwd=cwd,
            role=role,
            pid=owner_pid,
        )

    claimed = claim_agent_name(paths, _build, preferred, explicit=explicit)
    if claimed is None:
        console.print(f"[red]Could not register '{preferred}': name held by a live agent.[/]")
        raise typer.Exit(code=1)
    console.print(f"[green]Registered[/] {claimed} (pid {owner_pid}, session {session})")


@app.command("unregister")
def unregister_agent(
    name: str = typer.Argument(..., help="Agent to remove."),
    pid: Optional[int] = typer.Option(None, help="Only remove if the stored pid matches."),
    session_id: Optional[str] = typer.Option(None, "--session-id", help="Also require this session id."),
) -> None:
    """Remove a registration, optionally guarded by its owner token."""
    owner = RegistrationOwner(pid=pid, session_id=session_id) if pid is not None else None
    removed = unregister(_paths(), name, owner)
    if not removed:
        console.print(f"[yellow]No registration removed for {name}.[/]")
        raise typer.Exit(code=1)
    console.print(f"[green]Unregistered[/] {name}")


@app.command("agents")
def list_agents() -> None:
    """List live agents and their reservations."""
    agents = list_active(_paths())
    if not agents:
        console.print("No active agents.")
        return
    table = Table(title="Active Agents", show_lines=False)
    table.add_column("Name")
    table.add_column("Role")
    table.add_column("PID")
    table.add_column("Session")
    table.add_column("Model")
    table.add_column("Reservations")
    table.add_column("Last Seen")
    for agent in agents:
        reservations = ", ".join(r.pattern for r in agent.reservations or [])
        table.add_row(
            agent.name,
            agent.role or "",
            str(agent.pid),
            f"{agent.session_id[:8]}...",
            agent.model,
            reservations,
            agent.last_seen_at,
        )
    console.print(table)


@app.command("send")
def send_message(
    to: str = typer.Argument(..., help="Recipient agent."),
    text: str = typer.Argument(..., help="Message text."),
    sender: str = typer.Option(..., "--from", help="Sending agent name."),
    urgent: bool = typer.Option(False, help="Interrupt the recipient instead of queueing."),
    reply_to: Optional[str] = typer.Option(None, "--reply-to", help="Message id being answered."),
) -> None:
    """Send a direct message."""
    try:
        message = send_direct(_paths(), sender, to, text, reply_to=reply_to, urgent=urgent)
    except CoordinationError as exc:
        raise _fail(exc) from exc
    console.print(f"[green]Sent[/] {message.id} to {to}")


@app.command("broadcast")
def broadcast_message(
    text: str = typer.Argument(..., help="Message text."),
    sender: str = typer.Option(..., "--from", help="Sending agent name."),
    urgent: bool = typer.Option(False, help="Interrupt recipients instead of queueing."),
) -> None:
    """Send a message to every live peer."""
    try:
        result = send_broadcast(_paths(), sender, text, urgent=urgent)
    except CoordinationError as exc:
        raise _fail(exc) from exc
    console.print(f"[green]Delivered[/] to {len(result.delivered)}: {', '.join(result.delivered) or '-'}")
    if result.failed:
        console.print(f"[red]Failed[/] for {len(result.failed)}: {', '.join(result.failed)}")
        raise typer.Exit(code=1)


@app.command("inbox")
def drain_inbox(
    agent: str = typer.Argument(..., help="Agent whose inbox to drain."),
    as_json: bool = typer.Option(False, "--json", help="Print raw messages as JSON lines."),
) -> None:
    """Print and consume pending inbox messages."""

    def _print(message: InboxMessage) -> None:
        if as_json:
            typer.echo(json.dumps(message.to_wire()))
            return
        console.print(f"[bold]{message.timestamp}[/] ({'interrupt' if message.urgent else 'queue'})")
        console.print(format_inbox_delivery(message))

    count = process_inbox(_paths(), agent, _print)
    if not as_json:
        console.print(f"[dim]{count} message(s) delivered[/]")


@app.command("feed")
def show_feed(
    limit: int = typer.Option(20, help="How many recent events to show."),
) -> None:
    """Show the most recent messages across the mesh."""
    settings = get_settings()
    events = tail(_paths(), normalize_limit(limit, 20, settings.message_history_limit))
    if not events:
        console.print("No messages in feed.")
        return
    for event in events:
        console.print(format_message_event(event), markup=False)


@app.command("thread")
def show_thread(
    agent: str = typer.Argument(..., help="One side of the conversation."),
    peer: str = typer.Argument(..., help="The other side."),
    limit: int = typer.Option(20, help="How many messages to show."),
) -> None:
    """Show direct messages exchanged between two agents."""
    settings = get_settings()
    events = thread(_paths(), agent, peer, normalize_limit(limit, 20, settings.message_history_limit))
    if not events:
        console.print(f"No direct messages with {peer}.")
        return
    for event in events:
        console.print(format_message_event(event), markup=False)


@app.command("reserve")
def reserve_paths(
    agent: str = typer.Argument(..., help="Agent taking the reservation."),
    patterns: List[str] = typer.Argument(..., help="Paths or directory patterns (trailing '/')."),
    reason: Optional[str] = typer.Option(None, help="Why the paths are reserved."),
) -> None:
    """Reserve files or directories for exclusive edit intent."""
    paths = _paths()
    cleaned = normalize_reservation_paths(patterns)
    try:
        checks = [validate_reservation_pattern(pattern) for pattern in cleaned]
    except CoordinationError as exc:
        raise _fail(exc) from exc
    if not checks:
        raise typer.BadParameter("At least one non-empty path is required")
    registration = _require_registration(paths, agent)
    result = update_reservations(
        paths, agent, lambda book: book.reserve(cleaned, reason), owner=registration.owner()
    )
    if result is None:
        console.print(f"[red]Could not update reservations for {agent}.[/]")
        raise typer.Exit(code=1)
    for check in checks:
        if check.warning:
            console.print(f"[yellow]{check.warning}[/]")
    console.print(f"[green]Reserved[/] {', '.join(cleaned)}")


@app.command("release")
def release_paths(
    agent: str = typer.Argument(..., help="Agent releasing reservations."),
    patterns: Optional[List[str]] = typer.Argument(None, help="Patterns to release; all when omitted."),
) -> None:
    """Release some or all of an agent's reservations."""
    paths = _paths()
    registration = _require_registration(paths, agent)
    wanted = normalize_reservation_paths(patterns) if patterns else None
    result = update_reservations(paths, agent, lambda book: book.release(wanted), owner=registration.owner())
    if result is None:
        console.print(f"[red]Could not update reservations for {agent}.[/]")
        raise typer.Exit(code=1)
    _, released = result
    console.print(f"[green]Released[/] {', '.join(released) or 'nothing'}")


@app.command("check")
def check_path(
    agent: str = typer.Argument(..., help="Agent about to write."),
    path: str = typer.Argument(..., help="File it wants to edit or write."),
) -> None:
    """Exit non-zero when another agent's reservation covers the path."""
    try:
        decision = check_write(_paths(), agent, path)
    except CoordinationError as exc:
        raise _fail(exc) from exc
    if decision.allowed:
        console.print(f"[green]allow[/] {path}")
        return
    console.print("[red]block[/]")
    console.print(decision.reason or "", markup=False)
    raise typer.Exit(code=1)


@app.command("locks")
def show_locks() -> None:
    """Display registry locks and whether they look stale."""
    settings = get_settings()
    status = collect_lock_status(_paths(), settings)
    locks = status["locks"]
    if not locks:
        console.print("No registry locks held.")
        return
    table = Table(title="Registry Locks", show_lines=False)
    table.add_column("Agent")
    table.add_column("Owner PID")
    table.add_column("Alive")
    table.add_column("Age (s)")
    table.add_column("Status")
    for info in locks:
        age = info.get("age_seconds")
        table.add_row(
            info["agent"],
            str(info.get("owner_pid") or ""),
            "yes" if info.get("owner_alive") else "no",
            f"{age:.1f}" if isinstance(age, (int, float)) else "",
            info["status"],
        )
    console.print(table)
    summary = status["summary"]
    console.print(f"total={summary['total']} active={summary['active']} stale={summary['stale']}")


@app.command("spawn")
def spawn_subagents(
    agent: str = typer.Option(..., "--agent", help="Parent agent name."),
    task: Optional[str] = typer.Option(None, help="Single task to run."),
    tasks: Optional[List[str]] = typer.Option(None, "--tasks", help="Parallel task; repeat for more."),
    cwd: Optional[str] = typer.Option(None, help="Working directory for the children."),
    timeout: Optional[float] = typer.Option(None, help="Kill a child after this many seconds."),
    session_control: bool = typer.Option(True, help="Expose a control socket in each child."),
) -> None:
    """Launch subagents and print their final results."""
    request = SpawnRequest(
        task=task,
        tasks=[SpawnTask(task=entry, cwd=cwd) for entry in tasks] if tasks else None,
        cwd=cwd,
        session_control=session_control,
    )
    orchestrator = SpawnOrchestrator(agent)

    def _on_launch(launch: Any) -> None:
        console.print(f"launched {launch.name}: {launch.launch_command}", markup=False, highlight=False)

    try:
        report = asyncio.run(orchestrator.run(request, on_launch=_on_launch, timeout_seconds=timeout))
    except CoordinationError as exc:
        raise _fail(exc) from exc
    if report.model_warning:
        console.print(f"[yellow]{report.model_warning}[/]")
    console.print(build_completion_summary(report.results, is_error=report.is_error), markup=False)
    if report.is_error:
        raise typer.Exit(code=1)


@app.command("remote-send")
def remote_send(
    session_id: str = typer.Argument(..., help="Target session id."),
    message: str = typer.Argument(..., help="Message to steer into the session."),
    wait_ms: int = typer.Option(120_000, "--wait-ms", help="How long to wait for the turn to end."),
) -> None:
    """Push a message into a live session and print the assistant's reply."""
    settings = get_settings()
    try:
        result = asyncio.run(send_and_await_turn_end(session_id, message, settings.socket_dir, wait_ms))
    except CoordinationError as exc:
        raise _fail(exc) from exc
    if result.turn_index is not None:
        console.print(f"[dim]turn {result.turn_index}[/]")
    console.print(result.assistant_text or "(no output)", markup=False)
