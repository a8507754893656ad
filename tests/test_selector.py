"""Selector reducer tests: pure (state, event) -> state transitions."""

from __future__ import annotations

import pytest

from acai.ui.selector import (
    Cancel,
    Confirm,
    Jump,
    MoveDown,
    MoveUp,
    SetQuery,
    new_selector,
    reduce_selector,
    render_selector,
)

MODELS = ["gpt-4o", "gpt-4o-mini", "claude-sonnet", "gemini-flash"]


@pytest.fixture()
def state():
    return new_selector(MODELS)


class TestMovement:
    def test_initial_selection(self, state):
        assert state.current == "gpt-4o"
        assert state.visible == (0, 1, 2, 3)

    def test_initial_index_clamped(self):
        assert new_selector(MODELS, initial=99).current == "gemini-flash"

    def test_move_down_and_up(self, state):
        state = reduce_selector(state, MoveDown())
        assert state.current == "gpt-4o-mini"
        state = reduce_selector(state, MoveUp())
        assert state.current == "gpt-4o"

    def test_wraps_around(self, state):
        assert reduce_selector(state, MoveUp()).current == "gemini-flash"

    def test_jump(self, state):
        assert reduce_selector(state, Jump(2)).current == "claude-sonnet"

    def test_jump_out_of_range_ignored(self, state):
        assert reduce_selector(state, Jump(9)) == state

    def test_reducer_does_not_mutate(self, state):
        reduce_selector(state, MoveDown())
        assert state.selected == 0


class TestFiltering:
    def test_query_filters_case_insensitively(self, state):
        state = reduce_selector(state, SetQuery("GPT"))
        assert [MODELS[i] for i in state.visible] == ["gpt-4o", "gpt-4o-mini"]
        assert state.selected == 0

    def test_custom_label(self):
        state = new_selector([1, 2, 3], lambda n: f"option {n}")
        state = reduce_selector(state, SetQuery("option 3"))
        assert state.current == 3

    def test_no_matches(self, state):
        state = reduce_selector(state, SetQuery("llama"))
        assert state.current is None
        assert reduce_selector(state, Confirm()).confirmed is False


class TestTerminalStates:
    def test_confirm(self, state):
        state = reduce_selector(reduce_selector(state, MoveDown()), Confirm())
        assert state.confirmed
        assert state.current == "gpt-4o-mini"

    def test_cancel(self, state):
        assert reduce_selector(state, Cancel()).cancelled

    def test_events_after_confirm_ignored(self, state):
        confirmed = reduce_selector(state, Confirm())
        assert reduce_selector(confirmed, MoveDown()) == confirmed

    def test_unknown_event(self, state):
        with pytest.raises(TypeError, match="Unknown selector event"):
            reduce_selector(state, "down")


class TestRender:
    def test_marks_selected_item(self, state):
        text = render_selector(reduce_selector(state, MoveDown()), title="Model").plain
        assert text.startswith("Model\n")
        assert "❯ 2. gpt-4o-mini" in text
        assert "  1. gpt-4o\n" in text

    def test_no_matches_message(self, state):
        text = render_selector(reduce_selector(state, SetQuery("zzz"))).plain
        assert "filter: zzz" in text
        assert "(no matches)" in text
