"""Prompt builder for each loop iteration."""

from typing import Optional

from .models import RunState, StrategyDecision
from .strategy import guidance_for


def iteration_label(iteration: int, max_iterations: int) -> str:
	if max_iterations > 0:
		return f"iteration {iteration}/{max_iterations}"
	return f"iteration {iteration}"


def build_prompt(
	state: RunState,
	decision: Optional[StrategyDecision] = None,
	nudge: Optional[str] = None,
	handoff_context: Optional[str] = None,
	agent_mode: bool = True,
) -> str:
	"""
	Build the prompt for the current iteration.

	Args:
		state: Run state (task, iteration, strategy, completion signal)
		decision: Last strategy decision; its guidance is injected
		nudge: Pending user instruction, consumed for this iteration only
		handoff_context: Continuation block from the previous cycle
		agent_mode: Ask the agent to finish with a [STATUS] line
	"""
	label = iteration_label(state.iteration, state.max_iterations)
	sections = [f"You are in {label} of a Ralph loop (cycle {state.cycle_number})."]

	if handoff_context:
		sections.append(handoff_context.strip())

	sections.append(f"## Your Task\n{state.task_text.strip()}")

	guidance = decision.guidance if decision is not None else guidance_for(state.strategy)
	strategy_lines = [f"## Current Strategy: {state.strategy.value}"]
	if decision is not None and decision.reason:
		strategy_lines.append(f"Reason: {decision.reason}")
	strategy_lines.extend(f"- {line}" for line in guidance)
	sections.append("\n".join(strategy_lines))

	if nudge and nudge.strip():
		sections.append(f"## Nudge from User\n{nudge.strip()}")

	protocol = [
		"## Ralph Loop Protocol",
		"- Assess the current state of the codebase and any previous work",
		"- Work on the next incremental step toward completing the task",
		"- Verify your work (run tests, check builds, review changes)",
		"- If the task is OBJECTIVELY COMPLETE and verified, output exactly on its own line:",
		f"  <promise>{state.completion_signal}</promise>",
		"- Do NOT claim completion unless you have verified it",
		"- If NOT complete, summarize what you did and what remains; you will be re-invoked",
	]
	if agent_mode:
		protocol.append("- IMPORTANT: End your response with exactly one line in this format:")
		protocol.append("  [STATUS] one-sentence summary of what you did and what remains")
	sections.append("\n".join(protocol))

	return "\n\n".join(sections)
