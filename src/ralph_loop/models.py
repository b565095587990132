"""
Records shared by the supervision loop.

Runtime state and per-iteration signals are plain dataclasses; records that
cross a persistence boundary (handoffs, status snapshots) are pydantic models
so they are validated when read back.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

# Journal entries kept per cycle for the handoff summary
MAX_JOURNAL_ENTRIES = 20

# Journal entry kinds, also used as memory tags
PROGRESS = "progress"
FAILURE = "failure"
LEARNING = "learning"


def utc_now() -> str:
	"""ISO-8601 UTC timestamp."""
	return datetime.now(timezone.utc).isoformat(timespec="seconds")


class Strategy(str, Enum):
	"""Behavioral mode that shapes the guidance injected into the next prompt."""
	EXPLORE = "explore"
	FOCUSED = "focused"
	CLEANUP = "cleanup"
	RECOVERY = "recovery"


class LoopStatus(str, Enum):
	"""Status tag written to the run snapshot."""
	RUNNING = "RUNNING"
	COMPLETE = "COMPLETE"
	ERROR = "ERROR"
	MAX_REACHED = "MAX_REACHED"
	INTERRUPTED = "INTERRUPTED"


@dataclass(frozen=True)
class ErrorEntry:
	"""One error pattern matched in the agent output."""
	pattern: str
	sample: str


@dataclass(frozen=True)
class AnalysisResult:
	"""Structured signals extracted from one iteration's output."""
	errors: tuple[ErrorEntry, ...] = ()
	meaningful_changes: bool = False
	tests_run: bool = False
	tests_passed: bool = False
	tests_failed: bool = False
	repeated_errors: tuple[str, ...] = ()
	files_modified: tuple[str, ...] = ()

	@classmethod
	def empty(cls) -> "AnalysisResult":
		return cls()

	@property
	def error_patterns(self) -> list[str]:
		"""Distinct error labels in first-seen order."""
		seen: list[str] = []
		for entry in self.errors:
			if entry.pattern not in seen:
				seen.append(entry.pattern)
		return seen


@dataclass(frozen=True)
class StrategyDecision:
	"""Output of the strategy engine for the next iteration."""
	strategy: Strategy
	reason: str
	action: str = "continue"  # "continue" | "switch"
	guidance: tuple[str, ...] = ()


@dataclass
class TokenUsage:
	"""Token counts reported by one agent invocation."""
	input_tokens: int = 0  # includes cache creation/read tokens
	output_tokens: int = 0
	cached_tokens: int = 0  # informational subset of input_tokens
	context_window: int = 0  # 0 when the agent did not report one

	@property
	def total_tokens(self) -> int:
		return self.input_tokens + self.output_tokens


@dataclass
class AgentResponse:
	"""Normalized result of one agent invocation."""
	text: str = ""
	is_error: bool = False
	exit_code: int = 0
	cost_usd: float = 0.0
	usage: TokenUsage = field(default_factory=TokenUsage)
	session_id: str = ""
	duration_ms: int = 0
	raw: str = ""
	stderr: str = ""
	parse_failed: bool = False

	@property
	def failed(self) -> bool:
		"""Non-zero exit and an error flag are equivalent failure signals."""
		return self.is_error or self.exit_code != 0

	def error_message(self, max_len: int = 500) -> str:
		message = self.text.strip() or self.stderr.strip() or f"Exit code {self.exit_code}"
		return " ".join(message.split())[:max_len]


class HandoffRecord(BaseModel):
	"""Summary of a finished cycle, used to seed the next one."""
	session_id: str
	cycle_number: int = Field(ge=1)
	original_objective: str
	accomplishments: list[str] = Field(default_factory=list)
	blockers: list[str] = Field(default_factory=list)
	next_actions: list[str] = Field(default_factory=list)
	key_learnings: list[str] = Field(default_factory=list)
	context_pct_at_save: float = Field(default=0.0, ge=0, le=100)
	saved_at: str = Field(default_factory=utc_now)

	model_config = {"frozen": True}


class StatusSnapshot(BaseModel):
	"""Externally observable run snapshot, overwritten after each iteration."""
	session_type: str = "ralph-loop"
	status: LoopStatus = LoopStatus.RUNNING
	iteration: int = 0
	max_iterations: int = 0
	prompt_preview: str = ""
	last_summary: str = ""
	promise_detected: bool = False
	started_at: str = ""
	last_updated: str = Field(default_factory=utc_now)
	total_cost_usd: float = 0.0
	total_input_tokens: int = 0
	total_output_tokens: int = 0
	total_cached_tokens: int = 0
	log_dir: str = ""
	session_id: str = ""
	strategy: Strategy = Strategy.EXPLORE
	error_count: int = 0
	api_error_count: int = 0
	last_api_error: str = ""
	stuck_count: int = 0
	context_pct: float = 0.0
	supervisor_mode: bool = False
	cycle_number: int = 1


@dataclass
class RunState:
	"""
	Mutable state of one supervised run, owned by the iteration driver.

	All counters live here rather than in module globals. Mutation goes
	through the methods below so the invariants hold: iteration never
	decreases, context_pct stays within [0, 100], and there is always
	exactly one valid strategy.
	"""
	task_text: str
	session_id: str
	max_iterations: int = 0
	completion_signal: str = "TASK_COMPLETE"
	strategy: Strategy = Strategy.EXPLORE
	iteration: int = 0
	stuck_count: int = 0
	cycle_number: int = 1
	context_pct: float = 0.0
	started_at: str = field(default_factory=utc_now)

	# Continuation flag: True until the first invocation of a cycle
	fresh_context: bool = True
	cycle_iterations: int = 0
	context_pct_peak: float = 0.0

	# Counters
	error_count: int = 0
	api_error_count: int = 0
	last_api_error: str = ""
	total_cost_usd: float = 0.0
	total_input_tokens: int = 0
	total_output_tokens: int = 0
	total_cached_tokens: int = 0

	# Inputs to the next analysis / prompt
	last_decision: Optional[StrategyDecision] = None
	last_analysis: Optional[AnalysisResult] = None
	last_error_patterns: list[str] = field(default_factory=list)
	previous_output: str = ""
	last_summary: str = ""

	# Per-cycle journal for handoffs
	accomplishments: list[str] = field(default_factory=list)
	blockers: list[str] = field(default_factory=list)
	key_learnings: list[str] = field(default_factory=list)

	def advance(self) -> int:
		"""Move to the next iteration and return its number."""
		self.iteration += 1
		self.cycle_iterations += 1
		return self.iteration

	@property
	def budget_spent(self) -> bool:
		"""True when another iteration would exceed a positive max_iterations."""
		return self.max_iterations > 0 and self.iteration + 1 > self.max_iterations

	def set_context_pct(self, pct: float) -> None:
		try:
			value = float(pct)
		except (TypeError, ValueError):
			value = 0.0
		if value != value:  # NaN
			value = 0.0
		self.context_pct = max(0.0, min(value, 100.0))
		self.context_pct_peak = max(self.context_pct_peak, self.context_pct)

	def add_usage(self, usage: TokenUsage, cost_usd: float) -> None:
		"""Accumulate task-wide token and cost totals (never reset by cycles)."""
		self.total_input_tokens += max(0, usage.input_tokens)
		self.total_output_tokens += max(0, usage.output_tokens)
		self.total_cached_tokens += max(0, usage.cached_tokens)
		if cost_usd and cost_usd > 0:
			self.total_cost_usd = round(self.total_cost_usd + cost_usd, 6)

	def record_invocation_error(self, message: str) -> list[tuple[str, str]]:
		self.api_error_count += 1
		self.last_api_error = message
		blocker = f"Agent invocation failed: {message[:120]}"
		_append_bounded(self.blockers, blocker)
		return [(FAILURE, blocker)]

	def record_analysis(self, analysis: AnalysisResult, output: str, summary: str) -> list[tuple[str, str]]:
		"""
		Fold one analysis into the counters and journal.

		Returns the (kind, text) journal entries this iteration produced.
		"""
		entries: list[tuple[str, str]] = []
		self.error_count += len(analysis.errors)
		if analysis.meaningful_changes:
			self.stuck_count = 0
			if summary:
				entries.append((PROGRESS, f"Iteration {self.iteration}: {summary}"))
		else:
			self.stuck_count += 1
		for pattern in analysis.error_patterns:
			entries.append((FAILURE, pattern))
		for pattern in analysis.repeated_errors:
			entries.append((LEARNING, f"'{pattern}' recurred across iterations; try a different approach"))

		journal = {PROGRESS: self.accomplishments, FAILURE: self.blockers, LEARNING: self.key_learnings}
		for kind, text in entries:
			_append_bounded(journal[kind], text)
		self.last_analysis = analysis
		self.last_error_patterns = analysis.error_patterns
		self.previous_output = output
		return entries

	def apply_decision(self, decision: StrategyDecision) -> None:
		self.strategy = decision.strategy
		self.last_decision = decision

	def start_cycle(self) -> None:
		"""Reset per-cycle state after a cycle boundary."""
		self.cycle_number += 1
		self.context_pct = 0.0
		self.context_pct_peak = 0.0
		self.cycle_iterations = 0
		self.fresh_context = True
		self.previous_output = ""
		self.accomplishments = []
		self.blockers = []
		self.key_learnings = []


def _append_bounded(items: list[str], value: str) -> None:
	if value in items:
		return
	items.append(value)
	if len(items) > MAX_JOURNAL_ENTRIES:
		del items[0]
