"""Tests for the prompt builder."""

from ralph_loop.models import RunState, Strategy, StrategyDecision
from ralph_loop.prompt import build_prompt


def _state(**kwargs) -> RunState:
	state = RunState(task_text="Add pagination to the API", session_id="s", **kwargs)
	state.advance()
	return state


def test_contains_task_and_promise():
	prompt = build_prompt(_state(completion_signal="ALL_DONE"))

	assert "Add pagination to the API" in prompt
	assert "<promise>ALL_DONE</promise>" in prompt
	assert "iteration 1 " in prompt


def test_iteration_label_with_budget():
	assert "iteration 1/5" in build_prompt(_state(max_iterations=5))


def test_strategy_guidance_injected():
	decision = StrategyDecision(
		strategy=Strategy.RECOVERY,
		reason="stuck for 4 iterations",
		action="switch",
		guidance=("Try something else", "Read the error"),
	)
	state = _state()
	state.apply_decision(decision)
	prompt = build_prompt(state, decision)

	assert "## Current Strategy: recovery" in prompt
	assert "Reason: stuck for 4 iterations" in prompt
	assert "- Try something else\n- Read the error" in prompt


def test_nudge_and_handoff():
	prompt = build_prompt(_state(), nudge="Skip the docs for now", handoff_context="## CYCLE CONTINUATION (Cycle 2)")

	assert "## Nudge from User\nSkip the docs for now" in prompt
	assert prompt.index("CYCLE CONTINUATION") < prompt.index("## Your Task")


def test_agent_mode_status_line():
	assert "[STATUS]" in build_prompt(_state(), agent_mode=True)
	assert "[STATUS]" not in build_prompt(_state(), agent_mode=False)
