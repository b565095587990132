"""Tests for the strategy engine."""

import pytest

from ralph_loop.models import AnalysisResult, RunState, Strategy, StrategyDecision
from ralph_loop.strategy import decide, guidance_for, phase_default


def _state(iteration: int, strategy: Strategy = Strategy.EXPLORE, stuck_count: int = 0) -> RunState:
	return RunState(
		task_text="build it",
		session_id="s-1",
		iteration=iteration,
		strategy=strategy,
		stuck_count=stuck_count,
	)


PROGRESS = AnalysisResult(meaningful_changes=True)
NO_PROGRESS = AnalysisResult(meaningful_changes=False)


class TestPhaseDefaults:

	@pytest.mark.parametrize("iteration,expected", [
		(1, Strategy.EXPLORE),
		(10, Strategy.EXPLORE),
		(11, Strategy.FOCUSED),
		(35, Strategy.FOCUSED),
		(36, Strategy.CLEANUP),
		(500, Strategy.CLEANUP),
	])
	def test_phase_boundaries(self, iteration, expected):
		assert phase_default(iteration) == expected
		# Decided after iteration - 1 finishes, for the iteration about to run
		assert decide(_state(iteration - 1, expected), PROGRESS).strategy == expected

	def test_phase_change_is_a_switch(self):
		decision = decide(_state(10, Strategy.EXPLORE), PROGRESS)
		assert decision.strategy == Strategy.FOCUSED
		assert decision.action == "switch"
		assert decision.reason == "phase default for iteration 11"

	def test_cleanup_starts_at_iteration_36(self):
		assert decide(_state(34, Strategy.FOCUSED), PROGRESS).strategy == Strategy.FOCUSED
		assert decide(_state(35, Strategy.FOCUSED), PROGRESS).strategy == Strategy.CLEANUP

	def test_same_phase_continues(self):
		decision = decide(_state(5, Strategy.EXPLORE), PROGRESS)
		assert decision.action == "continue"


class TestRecovery:

	@pytest.mark.parametrize("iteration", [3, 20, 50])
	def test_stuck_forces_recovery_in_any_phase(self, iteration):
		decision = decide(_state(iteration, phase_default(iteration), stuck_count=4), NO_PROGRESS)
		assert decision.strategy == Strategy.RECOVERY
		assert decision.action == "switch"
		assert "stuck" in decision.reason

	def test_stuck_at_threshold_is_not_recovery(self):
		decision = decide(_state(5, stuck_count=3), NO_PROGRESS)
		assert decision.strategy == Strategy.EXPLORE

	def test_repeated_error_forces_recovery(self):
		analysis = AnalysisResult(repeated_errors=("Test failure",))
		decision = decide(_state(15, Strategy.FOCUSED), analysis)
		assert decision.strategy == Strategy.RECOVERY
		assert "Test failure" in decision.reason

	def test_repeated_error_forces_recovery_despite_file_edits(self):
		analysis = AnalysisResult(
			meaningful_changes=True,
			repeated_errors=("Test failure",),
			files_modified=("src/a.py",),
		)
		decision = decide(_state(4, Strategy.EXPLORE), analysis)
		assert decision.strategy == Strategy.RECOVERY
		assert decision.action == "switch"

	def test_progress_exits_recovery_even_with_repeated_error(self):
		analysis = AnalysisResult(meaningful_changes=True, repeated_errors=("Test failure",))
		decision = decide(_state(15, Strategy.RECOVERY), analysis)
		assert decision.strategy == Strategy.FOCUSED

	def test_recovery_persists_without_progress(self):
		decision = decide(_state(15, Strategy.RECOVERY, stuck_count=1), NO_PROGRESS)
		assert decision.strategy == Strategy.RECOVERY
		assert decision.action == "continue"

	def test_progress_exits_recovery_to_phase_default(self):
		decision = decide(_state(15, Strategy.RECOVERY, stuck_count=0), PROGRESS)
		assert decision.strategy == Strategy.FOCUSED
		assert decision.action == "switch"


class TestRobustness:

	def test_none_state(self):
		decision = decide(None, PROGRESS)
		assert decision.strategy == Strategy.EXPLORE
		assert decision.action == "continue"

	def test_zero_iteration(self):
		decision = decide(_state(0, Strategy.CLEANUP), PROGRESS)
		assert decision.strategy == Strategy.EXPLORE
		assert decision.action == "continue"

	def test_unknown_strategy(self):
		state = _state(12)
		state.strategy = "sideways"
		decision = decide(state, PROGRESS)
		assert decision.strategy == Strategy.EXPLORE
		assert decision.action == "continue"

	def test_malformed_analysis(self):
		decision = decide(_state(5), "not an analysis")
		assert isinstance(decision.strategy, Strategy)

	def test_pure(self):
		state = _state(20, Strategy.FOCUSED, stuck_count=5)
		first = decide(state, NO_PROGRESS)
		second = decide(state, NO_PROGRESS)
		assert first == second
		assert state.strategy == Strategy.FOCUSED
		assert state.stuck_count == 5


def test_every_strategy_has_guidance():
	for strategy in Strategy:
		assert len(guidance_for(strategy)) > 0


def test_decision_carries_guidance():
	decision = decide(_state(3), PROGRESS)
	assert isinstance(decision, StrategyDecision)
	assert decision.guidance == guidance_for(Strategy.EXPLORE)
