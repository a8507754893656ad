"""One selector for every pick-from-a-list prompt.

State is immutable; reduce_selector is a pure (state, event) -> state function
and render_selector draws a state without keeping anything. Pickers for
approval choices, models or conversations differ only in their item type and
label function.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Generic, TypeVar

from rich.text import Text

T = TypeVar("T")


@dataclass(frozen=True)
class SelectorState(Generic[T]):
    items: tuple[T, ...]
    label: Callable[[T], str] = field(default=str, compare=False)
    query: str = ""
    selected: int = 0
    visible: tuple[int, ...] = ()
    confirmed: bool = False
    cancelled: bool = False

    @property
    def current(self) -> T | None:
        if not self.visible:
            return None
        return self.items[self.visible[self.selected]]


def new_selector(
    items: Sequence[T], label: Callable[[T], str] = str, *, initial: int = 0
) -> SelectorState[T]:
    state = SelectorState(items=tuple(items), label=label)
    state = replace(state, visible=_filter(state.items, label, ""))
    return replace(state, selected=_clamp(initial, len(state.visible)))


@dataclass(frozen=True)
class MoveUp:
    pass


@dataclass(frozen=True)
class MoveDown:
    pass


@dataclass(frozen=True)
class Jump:
    """Select the n-th visible item, 0-based."""

    index: int


@dataclass(frozen=True)
class SetQuery:
    query: str


@dataclass(frozen=True)
class Confirm:
    pass


@dataclass(frozen=True)
class Cancel:
    pass


SelectorEvent = MoveUp | MoveDown | Jump | SetQuery | Confirm | Cancel


def _filter(items: tuple, label: Callable, query: str) -> tuple[int, ...]:
    needle = query.casefold()
    return tuple(i for i, item in enumerate(items) if needle in label(item).casefold())


def _clamp(index: int, size: int) -> int:
    if size == 0:
        return 0
    return max(0, min(index, size - 1))


def reduce_selector(state: SelectorState[T], event: SelectorEvent) -> SelectorState[T]:
    if state.confirmed or state.cancelled:
        return state
    size = len(state.visible)
    if isinstance(event, MoveUp):
        return replace(state, selected=(state.selected - 1) % size if size else 0)
    if isinstance(event, MoveDown):
        return replace(state, selected=(state.selected + 1) % size if size else 0)
    if isinstance(event, Jump):
        if 0 <= event.index < size:
            return replace(state, selected=event.index)
        return state
    if isinstance(event, SetQuery):
        visible = _filter(state.items, state.label, event.query)
        return replace(state, query=event.query, visible=visible, selected=0)
    if isinstance(event, Confirm):
        # Nothing to confirm when the filter hides everything.
        return replace(state, confirmed=True) if size else state
    if isinstance(event, Cancel):
        return replace(state, cancelled=True)
    raise TypeError(f"Unknown selector event: {event!r}")


def render_selector(state: SelectorState[T], *, title: str = "") -> Text:
    text = Text()
    if title:
        text.append(title + "\n", style="bold")
    if state.query:
        text.append(f"filter: {state.query}\n", style="dim")
    if not state.visible:
        text.append("  (no matches)\n", style="dim")
        return text
    for pos, item_index in enumerate(state.visible):
        marker = "❯" if pos == state.selected else " "
        style = "cyan bold" if pos == state.selected else ""
        text.append(f"{marker} {pos + 1}. {state.label(state.items[item_index])}\n", style=style)
    return text
