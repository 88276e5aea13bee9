"""agentdeck CLI: inspect persisted sessions and run one-shot prompts."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console, Group
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table
from rich.text import Text

from agentdeck.adapters.events import (
    AuthRequired,
    ForegroundTimelineChanged,
    PermissionRequested,
)
from agentdeck.engine.config import EngineConfig
from agentdeck.engine.errors import AgentDeckError
from agentdeck.engine.session_registry import SessionRegistry
from agentdeck.engine.yaml_config import (
    DeckConfig,
    default_config,
    find_config_path,
    load_yaml_config,
)
from agentdeck.shared.models.message import CanonicalMessage, MessageRole
from agentdeck.shared.services.persistence import SessionPersistence

logger = logging.getLogger(__name__)
console = Console()


def _configure_logging(config: EngineConfig, verbose: bool) -> Path:
    log_dir = config.logs_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agentdeck.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    # Terminal output belongs to the conversation unless asked otherwise.
    stream_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _load_config(path: str | None, cwd: Path) -> DeckConfig:
    config_path = Path(path) if path else find_config_path(cwd)
    if config_path is None:
        return default_config()
    return load_yaml_config(config_path)


# ── Rendering ─────────────────────────────────────────────────


def _preview(value: object, limit: int = 400) -> str:
    if value is None:
        return ""
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text if len(text) <= limit else text[: limit - 3] + "..."


def render_message(msg: CanonicalMessage):
    if msg.role == MessageRole.USER:
        title = "you (queued)" if msg.is_queued else "you"
        return Panel(Text(msg.content), title=title, title_align="left", border_style="cyan")
    if msg.role == MessageRole.ASSISTANT:
        parts = []
        if msg.thinking:
            parts.append(Text(msg.thinking, style="dim italic"))
        if msg.content:
            parts.append(Markdown(msg.content))
        if not parts:
            return Text("")
        if len(parts) == 1:
            return parts[0]
        return Group(*parts)
    if msg.role == MessageRole.TOOL_CALL:
        style = "red" if msg.tool_error else "yellow"
        body = Text(_preview(msg.tool_input), style="dim")
        if msg.tool_result is not None:
            body.append("\n")
            body.append(_preview(msg.tool_result), style="red" if msg.tool_error else "")
        for step in msg.subagent_steps or []:
            body.append(f"\n  > {step.tool_name} {_preview(step.tool_input, 120)}", style="dim")
        return Panel(body, title=msg.tool_name or "tool", title_align="left", border_style=style)
    if msg.role == MessageRole.TOOL_RESULT:
        return Text(f"[result] {_preview(msg.tool_result)}", style="dim")
    if msg.role == MessageRole.SUMMARY:
        return Text(f"--- {msg.content or 'Conversation compacted'} ---", style="magenta")
    return Text(msg.content, style="bold red" if msg.is_error else "blue")


class TimelinePrinter:
    """Prints each timeline entry once, when it is no longer changing."""

    def __init__(self, out: Console) -> None:
        self._out = out
        self._printed: set[str] = set()

    def flush(self, messages: list[CanonicalMessage], *, final: bool = False) -> None:
        for msg in messages:
            if msg.id in self._printed or msg.is_queued:
                continue
            if not final and self._in_progress(msg):
                # Keep order: nothing after an unfinished entry is printed yet.
                break
            self._printed.add(msg.id)
            self._out.print(render_message(msg))

    @staticmethod
    def _in_progress(msg: CanonicalMessage) -> bool:
        if msg.is_streaming:
            return True
        return msg.role == MessageRole.TOOL_CALL and msg.tool_result is None


# ── Commands ──────────────────────────────────────────────────


def _list_sessions(persistence: SessionPersistence, project: str) -> int:
    sessions = persistence.list_sessions(project)
    if not sessions:
        console.print("No saved sessions.")
        return 0
    table = Table(title=f"Sessions in {project}")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Engine")
    table.add_column("Model")
    table.add_column("Last active")
    table.add_column("Cost", justify="right")
    for s in sessions:
        when = s.last_message_at or s.created_at
        table.add_row(
            s.id, s.title, s.engine.value, s.model or "-",
            when.strftime("%Y-%m-%d %H:%M"), f"${s.total_cost:.4f}",
        )
    console.print(table)
    return 0


def _show_session(persistence: SessionPersistence, project: str, session_id: str) -> int:
    try:
        record = persistence.load(project, session_id)
    except FileNotFoundError:
        console.print(f"[red]Session not found:[/red] {session_id}")
        return 1
    s = record.session
    console.print(
        f"[bold]{s.title}[/bold]  [dim]{s.engine.value} {s.model or ''} "
        f"${s.total_cost:.4f}[/dim]"
    )
    TimelinePrinter(console).flush(record.messages, final=True)
    return 0


def _delete_session(persistence: SessionPersistence, project: str, session_id: str) -> int:
    if not persistence.delete(project, session_id):
        console.print(f"[red]Session not found:[/red] {session_id}")
        return 1
    console.print(f"Deleted {session_id}")
    return 0


async def _answer_permission(registry: SessionRegistry, event: PermissionRequested) -> None:
    console.print(Panel(
        Text(_preview(event.tool_input)),
        title=f"Allow {event.tool_name}?", title_align="left", border_style="magenta",
    ))
    choices = [opt["option_id"] for opt in event.options] or ["allow", "deny"]
    answer = await asyncio.to_thread(
        Prompt.ask, "Choose", choices=choices, default=choices[0], console=console,
    )
    registry.respond_permission(event.request_id, answer)


async def _run_prompt(args, deck: DeckConfig, project: str, cwd: Path) -> int:
    registry = SessionRegistry.from_config(deck, project_id=project)
    registry.load_project(project)
    printer = TimelinePrinter(console)
    exit_code = 0
    try:
        await registry.create_session(
            project,
            args.engine,
            model=args.model,
            agent_id=args.agent,
            cwd=str(cwd),
            permission_policy=args.policy,
        )
        registry.event_bus.drain()
        await registry.send(args.prompt)

        async for event in registry.event_bus.consume():
            if isinstance(event, PermissionRequested):
                await _answer_permission(registry, event)
            elif isinstance(event, AuthRequired):
                console.print(f"[bold red]{event.message}[/bold red]")
                exit_code = 2
                break
            elif isinstance(event, ForegroundTimelineChanged):
                printer.flush(registry.timeline())
                if not event.is_processing and registry.queued_count() == 0:
                    break
    except AgentDeckError as exc:
        logger.error("Prompt failed: %s", exc)
        exit_code = 1
    except asyncio.CancelledError:
        registry.interrupt()
        exit_code = 130
    finally:
        if registry.foreground_id:
            printer.flush(registry.timeline(), final=True)
            state = registry.state()
            console.print(f"[dim]session {state.session_id}  cost ${state.total_cost:.4f}[/dim]")
        await registry.shutdown()
    return exit_code


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentdeck",
        description="agentdeck: multi-engine agent sessions from the terminal",
    )
    parser.add_argument("--list", action="store_true", help="List saved sessions and exit")
    parser.add_argument("--show", metavar="ID", help="Print a saved session's timeline")
    parser.add_argument("--delete", metavar="ID", help="Delete a saved session")
    parser.add_argument("--prompt", metavar="TEXT", help="Run one prompt in a new session")
    parser.add_argument("--engine", choices=["claude", "acp", "codex"], help="Engine for --prompt")
    parser.add_argument("--agent", metavar="ID", help="ACP agent id from the config file")
    parser.add_argument("--model", help="Model for --prompt")
    parser.add_argument(
        "--policy", choices=["ask", "auto_accept_once", "allow_everything"],
        help="Permission auto-response policy for --prompt",
    )
    parser.add_argument("--project", help="Project id (default: current directory name)")
    parser.add_argument("--cwd", help="Working directory for the agent (default: current dir)")
    parser.add_argument("--config", metavar="PATH", help="YAML config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log to the terminal too")
    args = parser.parse_args()

    cwd = Path(args.cwd).resolve() if args.cwd else Path.cwd()
    deck = _load_config(args.config, cwd)
    log_file = _configure_logging(deck.engine, args.verbose)
    project = args.project or cwd.name or "default"
    logger.info(
        "agentdeck starting cwd=%s project=%s config=%s log=%s",
        cwd, project, args.config or "<auto>", log_file,
    )

    persistence = SessionPersistence(deck.engine.sessions_dir)
    if args.list:
        sys.exit(_list_sessions(persistence, project))
    if args.show:
        sys.exit(_show_session(persistence, project, args.show))
    if args.delete:
        sys.exit(_delete_session(persistence, project, args.delete))
    if args.prompt:
        try:
            sys.exit(asyncio.run(_run_prompt(args, deck, project, cwd)))
        except KeyboardInterrupt:
            console.print("\nInterrupted.")
            sys.exit(130)
    parser.print_help()


if __name__ == "__main__":
    main()
