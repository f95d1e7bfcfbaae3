"""agentlink command-line front end for the conversation engine."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path

import yaml
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown as RichMarkdown
from rich.markup import escape
from rich.text import Text

from agentlink.adapters.event_bus import EventBus
from agentlink.adapters.events import (
    ConversationEvent,
    DiagnosticReported,
    ProcessStateChanged,
    ResumeCaptured,
    TranscriptUpdated,
)
from agentlink.engine.backends.registry import build_backend_registry
from agentlink.engine.config import EngineConfig
from agentlink.engine.coordinator import ConversationCoordinator
from agentlink.engine.errors import AgentLinkError, ProcessSpawnError
from agentlink.engine.models import parse_permission_policy
from agentlink.engine.yaml_config import load_yaml_config
from agentlink.shared.models.message import MessageRole, TranscriptEntry, gen_id
from agentlink.shared.services.persistence import TranscriptPersistence

logger = logging.getLogger(__name__)

_TERMINAL_STATES = {"exited", "killed", "failed"}


def _configure_logging(level: str, log_dir: Path, verbose: bool) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agentlink.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    if verbose:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    return log_file


def _discover_config(explicit: str | None) -> Path | None:
    if explicit:
        return Path(explicit)
    for candidate in (
        Path.cwd() / ".agentlink" / "agentlink.yaml",
        Path.cwd() / "agentlink.yaml",
    ):
        if candidate.exists():
            return candidate
    return None


class TranscriptRenderer:
    """Renders coordinator events to the terminal.

    Partial assistant entries are shown in a transient ``Live`` region
    that is replaced by the final entry with the same id.
    """

    def __init__(self, console: Console, *, show_diagnostics: bool = False) -> None:
        self._console = console
        self._show_diagnostics = show_diagnostics
        self._live: Live | None = None
        self._live_id: str | None = None

    def render(self, event: ConversationEvent) -> None:
        if isinstance(event, TranscriptUpdated):
            self._render_entry(event.entry)
        elif isinstance(event, ResumeCaptured):
            logger.debug("Resume id %s (model=%s)", event.resume_id, event.model)
        elif isinstance(event, DiagnosticReported):
            if self._show_diagnostics:
                self._console.print(f"  [#6E7681]⚠ {escape(event.kind)}: {escape(event.message)}[/#6E7681]")
        elif isinstance(event, ProcessStateChanged):
            if event.state in _TERMINAL_STATES:
                self.close()
            if event.state == "killed":
                self._console.print("  [#E3B341]⚠ Turn stopped[/#E3B341]")

    def close(self) -> None:
        if self._live is not None:
            self._live.stop()
        self._live = None
        self._live_id = None

    def _render_entry(self, entry: TranscriptEntry) -> None:
        if entry.is_partial:
            if self._live_id != entry.id:
                self.close()
                self._live = Live(console=self._console, refresh_per_second=8, transient=True)
                self._live.start()
                self._live_id = entry.id
            assert self._live is not None
            self._live.update(Text(entry.content))
            return

        if entry.id == self._live_id:
            self.close()

        if entry.role == MessageRole.USER:
            self._console.print(Text(f"> {entry.content}", style="bold #58A6FF"))
        elif entry.role == MessageRole.ASSISTANT:
            self._console.print()
            self._console.print(RichMarkdown(entry.content))
        elif entry.role == MessageRole.TOOL:
            self._render_tool(entry)
        elif entry.is_error:
            self._console.print(Text(entry.content, style="bold red"))
        else:
            self._console.print(Text(entry.content, style="#6E7681"))

    def _render_tool(self, entry: TranscriptEntry) -> None:
        if entry.tool_result is not None:
            style = "red" if entry.is_error else "#8B949E"
            self._console.print(Text(f"    ↳ {entry.content}", style=style))
            return
        line = Text("  ⚙ ", style="#E3B341")
        line.append(entry.content, style="bold")
        if entry.tool_input is not None:
            summary = json.dumps(entry.tool_input.to_dict(), ensure_ascii=False)
            if len(summary) > 120:
                summary = summary[:117] + "..."
            line.append(f" {summary}", style="#6E7681")
        self._console.print(line)


async def _run_turn(
    coordinator: ConversationCoordinator,
    bus: EventBus,
    renderer: TranscriptRenderer,
    conversation_id: str,
    prompt: str,
) -> bool:
    """Send one prompt and render events until the turn ends."""
    try:
        await coordinator.send(conversation_id, prompt)
    except ProcessSpawnError:
        for event in bus.drain():
            renderer.render(event)
        return False

    ok = True
    async for event in bus.consume():
        renderer.render(event)
        if isinstance(event, TranscriptUpdated) and event.entry.is_error:
            ok = False
        if (
            isinstance(event, ProcessStateChanged)
            and event.conversation_id == conversation_id
            and event.state in _TERMINAL_STATES
        ):
            break
    return ok


async def _repl(
    coordinator: ConversationCoordinator,
    bus: EventBus,
    renderer: TranscriptRenderer,
    console: Console,
    conversation_id: str,
) -> None:
    console.print("[#6E7681]Type a prompt. /exit quits.[/#6E7681]")
    while True:
        try:
            line = await asyncio.to_thread(console.input, "[bold #58A6FF]›[/] ")
        except EOFError:
            return
        prompt = line.strip()
        if not prompt:
            continue
        if prompt in ("/exit", "/quit"):
            return
        await _run_turn(coordinator, bus, renderer, conversation_id, prompt)


async def _run(args, engine_config: EngineConfig, registry) -> int:
    console = Console()
    bus = EventBus(maxsize=engine_config.event_queue_size)
    persistence = TranscriptPersistence(engine_config.resolved_data_dir())
    coordinator = ConversationCoordinator(
        engine_config,
        registry=registry,
        sink=persistence,
        bus=bus,
    )
    renderer = TranscriptRenderer(console, show_diagnostics=args.verbose)

    conversation_id = args.conversation or gen_id("conv")
    config = coordinator.default_config()
    changes: dict = {}
    if args.cwd:
        changes["working_directory"] = str(Path(args.cwd).expanduser())
    if args.model:
        changes["model"] = args.model
    if args.policy:
        changes["permission_policy"] = parse_permission_policy(args.policy)
    if args.system_prompt:
        changes["system_prompt"] = args.system_prompt
    resume_id = args.resume
    if not resume_id and args.conversation:
        resume_id = persistence.load_resume_id(args.conversation)
    if resume_id:
        changes["resume_id"] = resume_id

    config = replace(config, **changes)
    coordinator.open(conversation_id, config, backend=args.backend)
    logger.info(
        "Starting conversation %s backend=%s cwd=%s",
        conversation_id,
        args.backend or engine_config.default_backend,
        config.working_directory,
    )

    try:
        if args.prompt:
            ok = await _run_turn(coordinator, bus, renderer, conversation_id, " ".join(args.prompt))
            return 0 if ok else 1
        await _repl(coordinator, bus, renderer, console, conversation_id)
        return 0
    finally:
        renderer.close()
        await coordinator.shutdown()
        bus.close()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentlink",
        description="agentlink: stream conversations with agent CLIs",
    )
    parser.add_argument(
        "prompt", nargs="*",
        help="Prompt for a single turn (omit for an interactive loop)",
    )
    parser.add_argument(
        "--backend", metavar="NAME",
        help="Backend CLI to drive (default: claude)",
    )
    parser.add_argument(
        "--cwd", metavar="DIR",
        help="Working directory for the backend process",
    )
    parser.add_argument(
        "--model", metavar="MODEL",
        help="Model passed to the backend",
    )
    parser.add_argument(
        "--policy", metavar="POLICY",
        help="Permission policy: open, guarded, edits, supervised, default",
    )
    parser.add_argument(
        "--system-prompt", metavar="TEXT",
        help="Text appended to the backend's system prompt",
    )
    parser.add_argument(
        "--resume", metavar="ID",
        help="Resume id of an earlier backend session",
    )
    parser.add_argument(
        "--conversation", metavar="NAME",
        help="Persisted conversation name (resumes its last session)",
    )
    parser.add_argument(
        "--list", action="store_true",
        help="List saved conversations and exit",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file for engine, backends and defaults",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Log to stderr and show stream diagnostics",
    )
    args = parser.parse_args()

    engine_config = EngineConfig.from_env()
    backend_configs = None
    config_path = _discover_config(args.config)
    if config_path is not None:
        try:
            loaded = load_yaml_config(config_path, base=engine_config)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            print(f"agentlink: cannot load config {config_path}: {exc}", file=sys.stderr)
            sys.exit(2)
        engine_config = loaded.engine
        backend_configs = loaded.backends

    log_file = _configure_logging(
        os.getenv("AGENTLINK_LOG_LEVEL", engine_config.log_level),
        engine_config.resolved_data_dir() / "logs",
        args.verbose,
    )
    logger.info(
        "agentlink starting cwd=%s config=%s log=%s",
        Path.cwd(), config_path or "<none>", log_file,
    )

    if args.list:
        persistence = TranscriptPersistence(engine_config.resolved_data_dir())
        names = persistence.list_conversations()
        if not names:
            print("No saved conversations.")
        for name in names:
            print(f"  {name}")
        sys.exit(0)

    registry = build_backend_registry(backend_configs)
    try:
        code = asyncio.run(_run(args, engine_config, registry))
    except AgentLinkError as exc:
        logger.error("agentlink failed: %s", exc)
        print(f"agentlink: {exc}", file=sys.stderr)
        code = 1
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
