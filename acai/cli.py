"""acai command line: a REPL, or one prompt with --headless.

Ctrl-C during a turn cancels the turn; a second Ctrl-C within one second,
or any Ctrl-C while idle, exits.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
import time
from contextlib import aclosing
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog
from rich.console import Console

from acai.agent.approval import ApprovalGate
from acai.agent.coordinator import StreamCoordinator
from acai.agent.dispatcher import ToolCallDispatcher
from acai.agent.model_client import OpenAICompatModelClient
from acai.agent.repair import ToolCallRepairer
from acai.agent.token_budget import TokenCounter
from acai.config.settings import Settings, get_settings
from acai.infra.errors import ConfigError
from acai.infra.logging import setup_logging
from acai.tools.builtins import register_builtins
from acai.tools.context import ToolSession
from acai.tools.registry import ToolRegistry
from acai.ui.console import ConsolePrompter, EventRenderer, read_stdin_line

logger = structlog.get_logger()

EXIT_WINDOW_S = 1.0


class InterruptAction(StrEnum):
    cancel_turn = "cancel_turn"
    exit = "exit"


class InterruptPolicy:
    """Decides what a Ctrl-C means given whether a turn is running."""

    def __init__(self, window_s: float = EXIT_WINDOW_S) -> None:
        self._window_s = window_s
        self._last: float | None = None

    def on_interrupt(self, *, turn_running: bool, now: float | None = None) -> InterruptAction:
        now = time.monotonic() if now is None else now
        previous, self._last = self._last, now
        if not turn_running:
            return InterruptAction.exit
        if previous is not None and now - previous <= self._window_s:
            return InterruptAction.exit
        return InterruptAction.cancel_turn


def system_prompt(settings: Settings) -> str:
    roots = ", ".join(str(p) for p in settings.allowed_roots())
    return (
        "You are acai, a coding assistant working in a user's project.\n"
        f"Project root: {settings.workspace_dir.resolve()}\n"
        f"You may only touch files inside: {roots}\n"
        "Use the tools to inspect and change the project. Tool results that start "
        "with an error explain what was refused; adapt instead of repeating the call."
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="acai", description="Coding assistant shell")
    parser.add_argument("prompt", nargs="?", default=None, help="Prompt to run (required with --headless)")
    parser.add_argument("--cwd", type=Path, default=None, help="Project directory (default: current)")
    parser.add_argument(
        "--add-dir", dest="add_dirs", type=Path, action="append", default=[],
        help="Additional allowed directory; may be repeated",
    )
    parser.add_argument("--model", default=None, help="Model name (default: OPENAI_MODEL)")
    parser.add_argument(
        "--headless", action="store_true",
        help="Run one prompt without approval prompts; events as JSON lines",
    )
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    return parser


def _settings_from_args(args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {}
    if args.cwd is not None:
        overrides["workspace_dir"] = args.cwd
    if args.add_dirs:
        overrides["allowed_dirs"] = args.add_dirs
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    if args.headless:
        overrides["log_json"] = True
    return get_settings(**overrides)


async def _run(args: argparse.Namespace, settings: Settings, console: Console) -> int:
    model = args.model or settings.openai.model
    client = OpenAICompatModelClient(settings.openai.api_key, settings.openai.base_url)

    registry = ToolRegistry()
    register_builtins(registry, settings.tools)

    gate = None
    if not args.headless and settings.approval.interactive:
        gate = ApprovalGate(
            ConsolePrompter(console),
            first_prompt_delay_s=settings.approval.first_prompt_delay_s,
        )
    session = ToolSession.from_settings(settings, approval_gate=gate)
    repairer = None
    if settings.repair.enabled:
        repairer = ToolCallRepairer(client, settings.repair.model, temperature=settings.repair.temperature)
    renderer = EventRenderer(console, json_mode=args.headless)

    with TokenCounter(model) as counter:
        dispatcher = ToolCallDispatcher(
            registry,
            token_counter=counter,
            tool_settings=settings.tools,
            repairer=repairer,
        )
        coordinator = StreamCoordinator(
            client, registry, dispatcher, session, model=model, max_steps=settings.max_steps
        )
        messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt(settings)}]

        loop = asyncio.get_running_loop()
        main_task = asyncio.current_task()
        policy = InterruptPolicy()

        def _on_sigint() -> None:
            action = policy.on_interrupt(turn_running=coordinator.running)
            logger.debug("interrupt_received", action=action.value)
            if action == InterruptAction.cancel_turn:
                coordinator.cancel()
            elif main_task is not None:
                main_task.cancel()

        loop.add_signal_handler(signal.SIGINT, _on_sigint)
        try:
            prompt = args.prompt
            while True:
                if prompt is None:
                    if args.headless:
                        break
                    prompt = await read_stdin_line("[bold green]> [/bold green]", console=console)
                    if prompt is None:
                        break
                if prompt.strip():
                    messages.append({"role": "user", "content": prompt})
                    async with aclosing(coordinator.run(messages)) as events:
                        async for event in events:
                            renderer.render(event)
                if args.headless:
                    break
                prompt = None
        except asyncio.CancelledError:
            console.print()
        finally:
            loop.remove_signal_handler(signal.SIGINT)
            logger.info(
                "session_finished",
                prompt_tokens=coordinator.usage.prompt_tokens,
                completion_tokens=coordinator.usage.completion_tokens,
            )
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    console = Console()

    if args.headless and not args.prompt:
        console.print("[red]--headless requires a prompt[/red]")
        return 2

    try:
        settings = _settings_from_args(args)
    except ConfigError as e:
        console.print(str(e), style="red", markup=False)
        return 2

    setup_logging(json_output=settings.log_json, log_level=settings.log_level)
    return asyncio.run(_run(args, settings, console))


if __name__ == "__main__":
    sys.exit(main())
