"""
Strategy engine - picks the behavioral mode for the next iteration.

decide() is a pure function of the run state and the latest analysis: the
same inputs always give the same decision, and it never returns anything
but a valid Strategy.
"""

import logging
from typing import Optional

from .models import AnalysisResult, RunState, Strategy, StrategyDecision

logger = logging.getLogger(__name__)

EXPLORE_UNTIL = 10
FOCUSED_UNTIL = 35
STUCK_THRESHOLD = 3

GUIDANCE: dict[Strategy, tuple[str, ...]] = {
	Strategy.EXPLORE: (
		"Survey the codebase and existing work before changing anything",
		"Identify the pieces the task needs and pick the smallest next step",
		"Prefer quick experiments that reveal how things fit together",
	),
	Strategy.FOCUSED: (
		"Work on one concrete sub-goal at a time and finish it",
		"Run the relevant tests after each change",
		"Do not start new areas until the current one is verified",
	),
	Strategy.CLEANUP: (
		"Close out remaining gaps against the original task",
		"Fix failing tests and remove leftover debugging code",
		"Verify the whole task end to end before claiming completion",
	),
	Strategy.RECOVERY: (
		"The previous approach is not working; stop repeating it",
		"Re-read the latest error output carefully and find the root cause",
		"Try a different approach or revert the last change that broke things",
		"Make one small verifiable change, then check the result",
	),
}


def phase_default(iteration: int) -> Strategy:
	"""Strategy for an iteration number when nothing overrides it."""
	if iteration <= EXPLORE_UNTIL:
		return Strategy.EXPLORE
	if iteration <= FOCUSED_UNTIL:
		return Strategy.FOCUSED
	return Strategy.CLEANUP


def guidance_for(strategy: Strategy) -> tuple[str, ...]:
	return GUIDANCE.get(strategy, GUIDANCE[Strategy.EXPLORE])


def decide(state: Optional[RunState], analysis: Optional[AnalysisResult]) -> StrategyDecision:
	"""
	Decide the strategy for the next iteration.

	Args:
		state: Current run state; state.iteration is the iteration just
			analyzed, so the phase default is taken for iteration + 1
		analysis: Analysis of the latest iteration, or None before the first

	Returns:
		StrategyDecision; explore/continue for malformed input
	"""
	try:
		return _decide(state, analysis)
	except Exception as e:
		logger.warning(f"Strategy decision fell back to explore: {e}")
		return _fallback("invalid input")


def _decide(state: Optional[RunState], analysis: Optional[AnalysisResult]) -> StrategyDecision:
	if state is None:
		return _fallback("no run state")

	iteration = state.iteration
	if not isinstance(iteration, int) or isinstance(iteration, bool) or iteration < 1:
		return _fallback("no iterations yet")

	try:
		current = Strategy(state.strategy)
	except ValueError:
		return _fallback(f"unknown strategy {state.strategy!r}")

	stuck_count = state.stuck_count if isinstance(state.stuck_count, int) else 0
	# The decision applies to the iteration about to run
	upcoming = iteration + 1
	default = phase_default(upcoming)

	if analysis is None:
		if current == Strategy.RECOVERY:
			return _make(Strategy.RECOVERY, "continuing recovery", "continue")
		action = "switch" if default != current else "continue"
		return _make(default, f"phase default for iteration {upcoming}", action)

	if current == Strategy.RECOVERY and analysis.meaningful_changes:
		return _make(default, "progress observed, leaving recovery", "switch")

	if analysis.repeated_errors:
		return _make(
			Strategy.RECOVERY,
			f"repeated error: {analysis.repeated_errors[0]}",
			"switch" if current != Strategy.RECOVERY else "continue",
		)

	if not analysis.meaningful_changes:
		if stuck_count > STUCK_THRESHOLD:
			return _make(
				Strategy.RECOVERY,
				f"stuck for {stuck_count} iterations without meaningful change",
				"switch" if current != Strategy.RECOVERY else "continue",
			)
		if current == Strategy.RECOVERY:
			return _make(Strategy.RECOVERY, "no meaningful change yet, staying in recovery", "continue")

	action = "switch" if default != current else "continue"
	return _make(default, f"phase default for iteration {upcoming}", action)


def _make(strategy: Strategy, reason: str, action: str) -> StrategyDecision:
	return StrategyDecision(
		strategy=strategy,
		reason=reason,
		action=action,
		guidance=guidance_for(strategy),
	)


def _fallback(reason: str) -> StrategyDecision:
	return _make(Strategy.EXPLORE, reason, "continue")
