"""
Iteration driver - the supervision loop state machine.

Each tick invokes the agent once and lands in one of:
- CONTINUE: pause, then tick again
- COMPLETE: the agent echoed the completion promise
- MAX_REACHED: the iteration (or cycle) budget is spent
- CYCLE_BOUNDARY: context is nearly full; save a handoff and start fresh
- INTERRUPTED: the cancellation token fired

Only this module mutates RunState.
"""

import asyncio
import dataclasses
import json
import logging
import signal
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .agent import AgentInvoker, CancellationToken, InvocationCancelled
from .analyzer import analyze, extract_summary
from .config import LoopSettings
from .context_monitor import should_cycle, usage_pct
from .handoff import HandoffStore, build_handoff, format_handoff_context
from .journal import JournalEntries, MemoryJournal
from .models import AgentResponse, AnalysisResult, LoopStatus, RunState, utc_now
from .nudge import NudgeQueue
from .prompt import build_prompt, iteration_label
from .status import StatusReporter
from .strategy import decide
from .summary import write_summary

logger = logging.getLogger(__name__)

EXIT_CODES = {
	LoopStatus.COMPLETE: 0,
	LoopStatus.MAX_REACHED: 1,
	LoopStatus.INTERRUPTED: 130,
}


class DriverState(str, Enum):
	"""Outcome of one tick."""
	RUNNING = "RUNNING"
	CONTINUE = "CONTINUE"
	COMPLETE = "COMPLETE"
	MAX_REACHED = "MAX_REACHED"
	CYCLE_BOUNDARY = "CYCLE_BOUNDARY"
	INTERRUPTED = "INTERRUPTED"


@dataclass
class RunOutcome:
	"""Terminal result of a run."""
	state: RunState
	status: LoopStatus
	reason: str
	exit_code: int
	run_dir: Path


def new_session_id() -> str:
	return f"ralph-{datetime.now():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}"


def install_signal_handlers(token: CancellationToken) -> Callable[[], None]:
	"""Route SIGINT/SIGTERM to the token. Returns a function that removes them."""
	loop = asyncio.get_running_loop()
	installed = []
	for sig in (signal.SIGINT, signal.SIGTERM):
		try:
			loop.add_signal_handler(sig, token.cancel)
			installed.append(sig)
		except (NotImplementedError, RuntimeError):
			logger.debug(f"Signal handler for {sig.name} not supported here")

	def remove():
		for sig in installed:
			loop.remove_signal_handler(sig)

	return remove


class IterationDriver:
	"""
	Runs the loop for one task until a terminal state.

	Usage:
		driver = IterationDriver(settings, invoker, nudges, handoffs, run_dir)
		outcome = await driver.run()
		sys.exit(outcome.exit_code)
	"""

	def __init__(
		self,
		settings: LoopSettings,
		invoker: AgentInvoker,
		nudges: NudgeQueue,
		handoffs: Optional[HandoffStore],
		run_dir: Path,
		token: Optional[CancellationToken] = None,
		session_id: Optional[str] = None,
		analyzer: Callable[..., AnalysisResult] = analyze,
		on_status_line: Optional[Callable[[str], None]] = None,
		journal: Optional[MemoryJournal] = None,
	):
		self.settings = settings
		self.invoker = invoker
		self.nudges = nudges
		self.handoffs = handoffs
		self.run_dir = Path(run_dir)
		self.token = token or CancellationToken()
		self.analyzer = analyzer
		self.on_status_line = on_status_line
		self.journal = journal

		self.state = RunState(
			task_text=settings.task_text,
			session_id=session_id or new_session_id(),
			max_iterations=settings.max_iterations,
			completion_signal=settings.completion_signal,
		)
		self.reporter = StatusReporter(self.run_dir / "status.json", supervisor_mode=settings.supervisor_mode)
		self.handoff_context: Optional[str] = None

	@property
	def promise(self) -> str:
		return f"<promise>{self.settings.completion_signal}</promise>"

	async def run(self) -> RunOutcome:
		"""Drive ticks until COMPLETE, MAX_REACHED or INTERRUPTED."""
		self.run_dir.mkdir(parents=True, exist_ok=True)
		self._write_run_config()
		self.reporter.report(self.state, LoopStatus.RUNNING)
		logger.info(f"Starting run {self.state.session_id} in {self.run_dir}")

		try:
			while True:
				result = await self.tick()

				if result == DriverState.COMPLETE:
					return self._finish(LoopStatus.COMPLETE, "completion signal detected")
				if result == DriverState.MAX_REACHED:
					return self._finish(LoopStatus.MAX_REACHED, "max_iterations")
				if result == DriverState.INTERRUPTED:
					return self._finish(LoopStatus.INTERRUPTED, "interrupted")
				if result == DriverState.CYCLE_BOUNDARY:
					if not await self.start_next_cycle():
						return self._finish(LoopStatus.MAX_REACHED, "max_cycles")

				if await self.token.sleep(self.settings.iteration_pause):
					return self._finish(LoopStatus.INTERRUPTED, "interrupted")
		except asyncio.CancelledError:
			self._finish(LoopStatus.INTERRUPTED, "cancelled")
			raise

	async def tick(self) -> DriverState:
		"""Run one iteration."""
		state = self.state
		if self.token.cancelled:
			return DriverState.INTERRUPTED

		if state.budget_spent:
			logger.info(f"Iteration budget of {state.max_iterations} spent")
			return DriverState.MAX_REACHED

		iteration = state.advance()
		nudge = self._consume_nudge()
		prompt = build_prompt(
			state,
			state.last_decision,
			nudge=nudge,
			handoff_context=self.handoff_context,
			agent_mode=self.settings.agent_mode,
		)

		continue_session = not state.fresh_context
		logger.info(
			f"Iteration {iteration_label(iteration, state.max_iterations)} "
			f"(cycle {state.cycle_number}, strategy {state.strategy.value})"
		)
		try:
			response = await self.invoker.invoke(prompt, continue_session=continue_session, token=self.token)
		except InvocationCancelled as e:
			logger.warning(f"Iteration {iteration} interrupted: {e}")
			return DriverState.INTERRUPTED

		# A failed first call may have left no conversation behind to continue
		if not response.failed or response.session_id:
			state.fresh_context = False

		self._write_iteration_files(iteration, response)
		state.add_usage(response.usage, response.cost_usd)
		# No usage reported (typically a failed call): keep the last known reading
		if response.usage.total_tokens > 0:
			state.set_context_pct(usage_pct(response.usage, self.settings.context_window))

		if response.failed:
			message = response.error_message()
			await self._journal(state.record_invocation_error(message))
			state.last_summary = message[:200]
			self._emit(LoopStatus.ERROR.value, promise_found=False)
			self.reporter.report(state, LoopStatus.ERROR)
			return DriverState.CONTINUE

		text = response.text
		state.last_summary = extract_summary(text)

		if self.promise in text:
			self._emit(LoopStatus.COMPLETE.value, promise_found=True)
			return DriverState.COMPLETE

		analysis = self._analyze(text)
		await self._journal(state.record_analysis(analysis, text, state.last_summary))
		decision = decide(state, analysis)
		if decision.strategy != state.strategy:
			logger.info(f"Strategy {state.strategy.value} -> {decision.strategy.value}: {decision.reason}")
		state.apply_decision(decision)

		self._emit("WORKING", promise_found=False)
		self.reporter.report(state, LoopStatus.RUNNING)

		if should_cycle(state.context_pct, self.settings.context_threshold, self.settings.supervisor_mode):
			logger.info(f"Context at {state.context_pct}% (threshold {self.settings.context_threshold}%)")
			return DriverState.CYCLE_BOUNDARY
		return DriverState.CONTINUE

	async def start_next_cycle(self) -> bool:
		"""
		Save the finished cycle's handoff and reset for a fresh context.

		Returns False when the cycle budget is spent.
		"""
		state = self.state
		await self._save_handoff()

		if state.cycle_number >= self.settings.max_cycles:
			logger.warning(f"Cycle budget of {self.settings.max_cycles} spent")
			return False

		state.start_cycle()
		self.handoff_context = await self._load_handoff_context()
		self._append_summary_log(f"[CYCLE {state.cycle_number}/{self.settings.max_cycles}] Starting new cycle")
		self.reporter.report(state, LoopStatus.RUNNING)
		return True

	# ── Collaborators (failures degrade, never raise) ────────────────────

	def _consume_nudge(self) -> Optional[str]:
		try:
			return self.nudges.consume()
		except Exception as e:
			logger.warning(f"Nudge queue unavailable: {e}")
			return None

	def _analyze(self, text: str) -> AnalysisResult:
		try:
			return self.analyzer(text, self.state.previous_output, self.state.last_analysis)
		except Exception as e:
			logger.warning(f"Analyzer failed, using empty analysis: {e}")
			return AnalysisResult.empty()

	async def _save_handoff(self) -> bool:
		if self.handoffs is None:
			return False
		collected = await self._collect_journal()
		try:
			return await self.handoffs.save(build_handoff(self.state, collected))
		except Exception as e:
			logger.warning(f"Handoff save failed: {e}")
			return False

	async def _load_handoff_context(self) -> Optional[str]:
		if self.handoffs is None:
			return None
		try:
			result = await self.handoffs.load(self.state.session_id)
		except Exception as e:
			logger.warning(f"Handoff load failed, starting cycle cold: {e}")
			return None
		if not result.found or result.record is None:
			logger.warning(f"No handoff available, starting cycle cold: {result.error}")
			return None
		past = await self._past_learnings(result.record.original_objective)
		return format_handoff_context(result.record, past_learnings=past)

	async def _journal(self, entries: list[tuple[str, str]]) -> None:
		if self.journal is None or not entries:
			return
		try:
			await self.journal.record_many(entries, self.state.cycle_number)
		except Exception as e:
			logger.warning(f"Journal write failed: {e}")

	async def _collect_journal(self) -> Optional[JournalEntries]:
		if self.journal is None:
			return None
		try:
			return await self.journal.collect(self.state.cycle_number)
		except Exception as e:
			logger.warning(f"Journal read failed, handing off from run state only: {e}")
			return None

	async def _past_learnings(self, objective: str) -> list[str]:
		if self.journal is None:
			return []
		try:
			return await self.journal.past_learnings(objective)
		except Exception as e:
			logger.warning(f"Past learnings unavailable: {e}")
			return []

	# ── Run directory artifacts ──────────────────────────────────────────

	def _finish(self, status: LoopStatus, reason: str) -> RunOutcome:
		state = self.state
		self._append_summary_log(
			f"[RALPH DONE] status={status.value} reason={reason} iterations={state.iteration} "
			f"cycles={state.cycle_number} cost_usd={state.total_cost_usd}"
		)
		self.reporter.report(state, status, promise_detected=status == LoopStatus.COMPLETE)
		write_summary(self.run_dir, state, status, reason)
		logger.info(f"Run {state.session_id} finished: {status.value} ({reason})")
		return RunOutcome(
			state=state,
			status=status,
			reason=reason,
			exit_code=EXIT_CODES[status],
			run_dir=self.run_dir,
		)

	def _emit(self, tag: str, promise_found: bool) -> None:
		state = self.state
		label = f"{state.iteration}/{state.max_iterations}" if state.max_iterations > 0 else str(state.iteration)
		line = (
			f"[ITER {label}] {tag} | {state.strategy.value} | {state.error_count}err"
			f" | {state.last_summary[:200]} | promise={'DETECTED' if promise_found else 'none'}"
		)
		self._append_summary_log(line)
		if self.on_status_line is not None:
			self.on_status_line(line)

	def _append_summary_log(self, line: str) -> None:
		try:
			with open(self.run_dir / "summary.log", "a", encoding="utf-8") as f:
				f.write(line + "\n")
		except OSError as e:
			logger.warning(f"Could not append to summary.log: {e}")

	def _write_iteration_files(self, iteration: int, response: AgentResponse) -> None:
		try:
			(self.run_dir / f"iteration-{iteration}.json").write_text(response.raw, encoding="utf-8")
			(self.run_dir / f"iteration-{iteration}.txt").write_text(response.text, encoding="utf-8")
		except OSError as e:
			logger.warning(f"Could not write iteration {iteration} output: {e}")

	def _write_run_config(self) -> None:
		config = dataclasses.asdict(self.settings)
		config.update({
			"session_id": self.state.session_id,
			"started_at": self.state.started_at,
			"written_at": utc_now(),
		})
		try:
			(self.run_dir / "run-config.json").write_text(json.dumps(config, indent=2, default=str), encoding="utf-8")
		except OSError as e:
			logger.warning(f"Could not write run-config.json: {e}")


def preview_first_iteration(settings: LoopSettings, invoker: AgentInvoker) -> tuple[str, list[str]]:
	"""First prompt and agent command line, without running anything."""
	state = RunState(
		task_text=settings.task_text,
		session_id="dry-run",
		max_iterations=settings.max_iterations,
		completion_signal=settings.completion_signal,
	)
	state.advance()
	prompt = build_prompt(state, None, agent_mode=settings.agent_mode)
	return prompt, invoker.build_args(prompt, continue_session=False)
