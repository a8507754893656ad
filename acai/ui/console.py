from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from dataclasses import asdict

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

from acai.agent.approval import ApprovalChoice
from acai.agent.events import (
    AgentEvent,
    AgentFailure,
    AgentStop,
    MessageDelta,
    MessageEnd,
    ToolCallEnd,
    ToolCallError,
    ToolCallStart,
    ToolCallUpdate,
)
from acai.ui.selector import (
    Cancel,
    Confirm,
    Jump,
    MoveDown,
    MoveUp,
    SelectorEvent,
    SetQuery,
    new_selector,
    reduce_selector,
    render_selector,
)

_CHOICE_LABELS = {
    ApprovalChoice.accept: "Accept",
    ApprovalChoice.accept_all: "Accept all (don't ask again this session)",
    ApprovalChoice.reject: "Reject",
}
_PREVIEW_CHARS = 400


def key_to_event(line: str) -> SelectorEvent:
    """Map one line of terminal input to a selector event."""
    key = line.strip()
    if key == "":
        return Confirm()
    if key in ("k", "up"):
        return MoveUp()
    if key in ("j", "down"):
        return MoveDown()
    if key in ("q", "esc"):
        return Cancel()
    if key.isdigit():
        return Jump(int(key) - 1)
    return SetQuery(key)


LineReader = Callable[[str], Awaitable[str | None]]


async def read_stdin_line(prompt: str = "", *, console: Console | None = None) -> str | None:
    """Read one line from stdin without blocking the event loop. None on EOF.

    Uses loop.add_reader, so a cancelled read leaves no thread behind (POSIX only).
    """
    if prompt:
        (console or Console()).print(prompt, end="")
    loop = asyncio.get_running_loop()
    fd = sys.stdin.fileno()
    future: asyncio.Future[str] = loop.create_future()

    def _on_readable() -> None:
        if not future.done():
            future.set_result(sys.stdin.readline())

    loop.add_reader(fd, _on_readable)
    try:
        line = await future
    finally:
        loop.remove_reader(fd)
    if line == "":
        return None
    return line.rstrip("\n")


class ConsolePrompter:
    """Approval prompts on a rich Console."""

    def __init__(self, console: Console | None = None, *, read_line: LineReader | None = None) -> None:
        self._console = console or Console()
        self._read_line = read_line or (lambda prompt: read_stdin_line(prompt, console=self._console))

    async def choose(self, description: str) -> ApprovalChoice:
        self._console.print(
            Panel(Text(description), title="[yellow]Approval required[/yellow]", expand=False)
        )
        state = new_selector(list(ApprovalChoice), lambda c: _CHOICE_LABELS[c])
        while True:
            self._console.print(render_selector(state))
            line = await self._read_line("[dim]Enter to confirm, number or j/k to move:[/dim] ")
            if line is None:
                return ApprovalChoice.reject
            state = reduce_selector(state, key_to_event(line))
            if state.cancelled:
                return ApprovalChoice.reject
            if state.confirmed and state.current is not None:
                return state.current

    async def ask_reason(self) -> str:
        return await self._read_line("Feedback: ") or ""


class EventRenderer:
    """Prints AgentEvents. In json mode each event is one JSON line."""

    def __init__(self, console: Console | None = None, *, json_mode: bool = False) -> None:
        self._console = console or Console()
        self._json_mode = json_mode

    def render(self, event: AgentEvent) -> None:
        if self._json_mode:
            line = json.dumps({"type": event.kind, **asdict(event)}, ensure_ascii=False)
            self._console.print(line, markup=False, highlight=False, soft_wrap=True)
            return

        if isinstance(event, MessageDelta):
            self._console.print(event.content, end="", markup=False, highlight=False)
        elif isinstance(event, MessageEnd):
            self._console.print()
        elif isinstance(event, ToolCallStart):
            self._console.print(
                f"[cyan]▶ {escape(event.tool_name)}[/cyan] [dim]{escape(event.arguments[:_PREVIEW_CHARS])}[/dim]",
                highlight=False,
            )
        elif isinstance(event, ToolCallUpdate):
            self._console.print(f"  [dim]{escape(event.message)}[/dim]", highlight=False)
        elif isinstance(event, ToolCallEnd):
            status = "output truncated" if event.truncated else "done"
            self._console.print(f"[green]✔ {escape(event.tool_name)}[/green] [dim]{status}[/dim]")
        elif isinstance(event, ToolCallError):
            self._console.print(f"[red]✘ {escape(event.tool_name)}[/red] {escape(event.error[:_PREVIEW_CHARS])}")
        elif isinstance(event, AgentFailure):
            self._console.print(f"[bold red]Model error:[/bold red] {escape(event.message)}")
        elif isinstance(event, AgentStop) and event.cancelled:
            self._console.print("[yellow]Turn cancelled[/yellow]")
