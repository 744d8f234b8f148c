"""Terminal host for an agent session.

Usage:
    agentlink "Add a test for the parser"
    agentlink --mode askFirst --cwd ~/src/project "Rename the config module"
    agentlink                       # interactive: one prompt per line

Interactive commands:
    /files              list files changed by the agent
    /accept [PATH]      keep changes to PATH (or to every file)
    /reject PATH        revert PATH to its content before the agent's edits
    /new                start a fresh conversation
    /quit               exit
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path

from agentlink.adapters.events import (
    AgentEvent,
    ApprovalRequested,
    FileChangesUpdated,
    RawOutput,
    SessionEnded,
    SessionErrored,
    SessionStarted,
    TranscriptUpdated,
    TurnFinished,
    event_to_dict,
)
from agentlink.adapters.session import AgentSession
from agentlink.engine.config import SessionConfig
from agentlink.engine.errors import AgentLinkError, ConfigError
from agentlink.engine.models import ApprovalMode
from agentlink.engine.yaml_config import load_yaml_config
from agentlink.shared.models.transcript import Role, ToolBlock

logger = logging.getLogger(__name__)

LOG_DIR = Path.home() / ".agentlink" / "logs"


def _configure_logging(level_name: str, verbose: bool) -> Path | None:
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    log_file: Path | None = LOG_DIR / "agentlink.log"
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    except OSError:
        log_file = None
    # The console is for the conversation; only warnings reach it unless -v.
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level if verbose else logging.WARNING)
    root.addHandler(stream_handler)
    return log_file


async def _ask(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, input, prompt)
    except EOFError:
        return ""


class ConsoleHost:
    """Prints session notifications and answers approvals on the console."""

    def __init__(self) -> None:
        self.session: AgentSession | None = None
        self._printed: dict[int, int] = {}
        self._announced_tools: set[str] = set()
        self._turn_done = asyncio.Event()
        self._questions: set[asyncio.Future] = set()

    async def notify(self, event: AgentEvent) -> None:
        logger.debug("session event: %s", event_to_dict(event))
        if isinstance(event, TranscriptUpdated):
            self._print_progress()
        elif isinstance(event, SessionStarted):
            logger.info("Agent session %s (model=%s)", event.session_id, event.model)
        elif isinstance(event, ApprovalRequested):
            print(f"\n[approval] {event.tool_name}\n{event.detail}", flush=True)
        elif isinstance(event, FileChangesUpdated):
            if event.paths:
                print(f"\n[files] {len(event.paths)} file(s) changed", flush=True)
        elif isinstance(event, TurnFinished):
            cost = f" ${event.cost_usd:.4f}" if event.cost_usd is not None else ""
            status = "error" if event.is_error else "done"
            print(f"\n[{status}] {event.duration_ms or 0} ms{cost}", flush=True)
            self._turn_done.set()
        elif isinstance(event, SessionErrored):
            print(f"\n[error] {event.message}", file=sys.stderr, flush=True)
            self._turn_done.set()
        elif isinstance(event, SessionEnded):
            self._turn_done.set()
        elif isinstance(event, RawOutput):
            logger.debug("agent: %s", event.text)

    async def decide(self, request_id: str, tool_name: str, detail: str) -> bool:
        answer = await _ask(f"Allow {tool_name}? [y/N] ")
        return answer.strip().lower() in {"y", "yes"}

    def _print_progress(self) -> None:
        if self.session is None or not self.session.turns:
            return
        index = len(self.session.turns) - 1
        turn = self.session.turns[index]
        if turn.role != Role.ASSISTANT:
            return
        for block in turn.tool_blocks():
            if block.id not in self._announced_tools and not block.streaming:
                self._announced_tools.add(block.id)
                print(f"\n[tool] {block.name}", flush=True)
                if block.name == "AskUserQuestion" and block.result is None:
                    task = asyncio.ensure_future(self._answer_question(block))
                    self._questions.add(task)
                    task.add_done_callback(self._questions.discard)
        text = turn.text
        printed = self._printed.get(index, 0)
        if len(text) > printed:
            sys.stdout.write(text[printed:])
            sys.stdout.flush()
            self._printed[index] = len(text)

    async def _answer_question(self, block: ToolBlock) -> None:
        assert self.session is not None
        print(f"\n[question]\n{json.dumps(block.input, indent=2)}", flush=True)
        reply = (await _ask("Answer: ")).strip()
        try:
            await self.session.answer_tool(block.id, reply or "(no answer)")
        except AgentLinkError as exc:
            print(f"Error: {exc}", file=sys.stderr)

    async def run_prompt(self, text: str) -> None:
        assert self.session is not None
        self._turn_done.clear()
        if not await self.session.send_prompt(text):
            return
        await self._turn_done.wait()

    def print_files(self) -> None:
        assert self.session is not None
        files = self.session.tracked_files()
        if not files:
            print("No tracked file changes.")
            return
        for tracked in files:
            added, modified = self.session.tracker.ranges_for(tracked.path)
            print(
                f"  {tracked.path}: "
                f"{sum(r.line_count for r in added)} added, "
                f"{sum(r.line_count for r in modified)} modified line(s)"
            )

    async def handle_command(self, line: str) -> bool:
        """Run one slash command. Returns False when the host should exit."""
        assert self.session is not None
        name, _, arg = line.partition(" ")
        arg = arg.strip()
        if name in {"/quit", "/exit"}:
            return False
        if name == "/files":
            self.print_files()
        elif name == "/accept":
            if arg:
                await self.session.accept_file(arg)
            else:
                await self.session.accept_all()
        elif name == "/reject":
            if not arg:
                print("Usage: /reject PATH")
            else:
                try:
                    if not await self.session.reject_file(arg):
                        print(f"Not tracked: {arg}")
                except AgentLinkError as exc:
                    print(f"Error: {exc}", file=sys.stderr)
        elif name == "/new":
            await self.session.new_chat()
            self._printed.clear()
            self._announced_tools.clear()
        else:
            print(f"Unknown command: {name}")
        return True


async def _run(config: SessionConfig, prompt: str | None) -> int:
    host = ConsoleHost()
    session = AgentSession(config, notify=host.notify, decide=host.decide)
    host.session = session
    try:
        if prompt:
            await host.run_prompt(prompt)
        else:
            while True:
                line = (await _ask("> ")).strip()
                if not line:
                    continue
                if line.startswith("/"):
                    if not await host.handle_command(line):
                        break
                    continue
                await host.run_prompt(line)
    except AgentLinkError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        await session.close()

    print(f"\n=== {len(session.turns)} turn(s) ===")
    host.print_files()
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="agentlink",
        description="Run the Claude CLI agent from the terminal",
    )
    parser.add_argument(
        "prompt",
        nargs="?",
        default=None,
        help="Prompt to send (omit for an interactive session)",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Workspace directory for the agent (default: current dir)",
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in ApprovalMode],
        default=None,
        help="Approval mode (default: from config, autoEdit)",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Model passed to the agent (default: agent's own default)",
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        help="YAML config file with a 'session:' section",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging on stderr",
    )
    args = parser.parse_args(argv)

    try:
        config = SessionConfig.from_env()
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    if args.config:
        try:
            config = load_yaml_config(args.config, base=config)
        except FileNotFoundError:
            print(f"Error: Config file not found: {args.config}", file=sys.stderr)
            sys.exit(1)
        except ConfigError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(1)

    overrides = {}
    if args.cwd is not None:
        overrides["cwd"] = os.path.abspath(os.path.expanduser(args.cwd))
    if args.mode is not None:
        overrides["approval_mode"] = ApprovalMode(args.mode)
    if args.model is not None:
        overrides["model"] = args.model
    if overrides:
        config = replace(config, **overrides)

    log_file = _configure_logging(config.log_level, args.verbose)
    logger.info(
        "Starting agentlink cwd=%s mode=%s log=%s",
        config.cwd, config.approval_mode.value, log_file or "<none>",
    )

    try:
        code = asyncio.run(_run(config, args.prompt))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
