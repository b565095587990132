"""
Agent invocation - runs the coding agent CLI once per iteration.

Features:
- One child process per invocation via asyncio subprocesses
- Cooperative cancellation through a CancellationToken
- Optional per-invocation timeout
- JSON output validated with pydantic, degrading to raw text on failure
"""

import asyncio
import json
import logging
import math
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .models import AgentResponse, TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 200_000


class InvocationError(Exception):
	"""Raised when the agent fails, times out, or cannot be started."""

	def __init__(self, message: str, exit_code: int = -1, stderr: str = ""):
		super().__init__(message)
		self.exit_code = exit_code
		self.stderr = stderr


class InvocationCancelled(Exception):
	"""Raised after the in-flight agent process was killed on cancellation."""
	pass


class ParseError(Exception):
	"""Raised when the agent's output is not the expected JSON document."""
	pass


class CancellationToken:
	"""
	Cancellation flag shared by the driver and the invoker.

	Signal handlers call cancel(); suspension points wait on it.
	"""

	def __init__(self):
		self._event = asyncio.Event()

	def cancel(self) -> None:
		self._event.set()

	@property
	def cancelled(self) -> bool:
		return self._event.is_set()

	async def wait(self) -> None:
		await self._event.wait()

	async def sleep(self, seconds: float) -> bool:
		"""Sleep up to `seconds`; returns True if cancelled meanwhile."""
		if self.cancelled:
			return True
		if seconds <= 0:
			return False
		try:
			await asyncio.wait_for(self._event.wait(), timeout=seconds)
		except asyncio.TimeoutError:
			return False
		return True


# ── Raw output schema ───────────────────────────────────────────────────


def _clamp_tokens(value: Any) -> int:
	if isinstance(value, bool):
		return 0
	try:
		number = float(value)
	except (TypeError, ValueError):
		return 0
	if math.isnan(number) or number < 0:
		return 0
	if math.isinf(number):
		return 2**53 - 1
	return int(number)


class ClaudeUsage(BaseModel):
	"""`usage` block of the agent's JSON output."""
	input_tokens: int = 0
	output_tokens: int = 0
	cache_creation_input_tokens: int = 0
	cache_read_input_tokens: int = 0

	model_config = {"extra": "ignore"}

	@field_validator("*", mode="before")
	@classmethod
	def _tokens(cls, v):
		return _clamp_tokens(v)


class ModelUsage(BaseModel):
	"""Per-model entry of the agent's `modelUsage` block."""
	inputTokens: int = 0
	outputTokens: int = 0
	contextWindow: int = 0

	model_config = {"extra": "ignore"}

	@field_validator("*", mode="before")
	@classmethod
	def _tokens(cls, v):
		return _clamp_tokens(v)


class ClaudeJsonOutput(BaseModel):
	"""Document printed by `claude -p --output-format json`."""
	result: str = ""
	is_error: bool = False
	session_id: str = ""
	duration_ms: int = 0
	total_cost_usd: float = 0.0
	usage: Optional[ClaudeUsage] = None
	modelUsage: dict[str, ModelUsage] = Field(default_factory=dict)

	model_config = {"extra": "ignore"}

	@field_validator("result", "session_id", mode="before")
	@classmethod
	def _text(cls, v):
		return "" if v is None else str(v)

	@field_validator("is_error", mode="before")
	@classmethod
	def _flag(cls, v):
		return bool(v)

	@field_validator("duration_ms", mode="before")
	@classmethod
	def _duration(cls, v):
		return _clamp_tokens(v)

	@field_validator("total_cost_usd", mode="before")
	@classmethod
	def _cost(cls, v):
		try:
			cost = float(v)
		except (TypeError, ValueError):
			return 0.0
		return cost if math.isfinite(cost) and cost > 0 else 0.0


def parse_agent_output(raw: str, context_window: int = DEFAULT_CONTEXT_WINDOW) -> AgentResponse:
	"""
	Parse the agent's JSON output into an AgentResponse.

	Malformed output is logged and returned as raw text with zero tokens.
	"""
	try:
		output = _load_output(raw)
	except ParseError as e:
		logger.warning(f"Agent output not parseable, using raw text: {e}")
		return AgentResponse(
			text=raw,
			raw=raw,
			usage=TokenUsage(context_window=context_window),
			parse_failed=True,
		)

	input_tokens = 0
	output_tokens = 0
	cached_tokens = 0
	window = context_window

	if output.usage is not None:
		cached_tokens = output.usage.cache_creation_input_tokens + output.usage.cache_read_input_tokens
		input_tokens = output.usage.input_tokens + cached_tokens
		output_tokens = output.usage.output_tokens

	# modelUsage totals win when larger
	if output.modelUsage:
		model_input = sum(m.inputTokens for m in output.modelUsage.values())
		model_output = sum(m.outputTokens for m in output.modelUsage.values())
		for model in output.modelUsage.values():
			if model.contextWindow > 0:
				window = model.contextWindow
		if model_input > 0 or model_output > 0:
			input_tokens = max(input_tokens, model_input)
			output_tokens = max(output_tokens, model_output)

	return AgentResponse(
		text=output.result,
		is_error=output.is_error,
		cost_usd=output.total_cost_usd,
		usage=TokenUsage(
			input_tokens=input_tokens,
			output_tokens=output_tokens,
			cached_tokens=cached_tokens,
			context_window=window,
		),
		session_id=output.session_id,
		duration_ms=output.duration_ms,
		raw=raw,
	)


def _load_output(raw: str) -> ClaudeJsonOutput:
	if not raw or not raw.strip():
		raise ParseError("empty output")
	try:
		data = json.loads(raw)
	except json.JSONDecodeError as e:
		raise ParseError(f"invalid JSON: {e}")
	if not isinstance(data, dict):
		raise ParseError(f"expected a JSON object, got {type(data).__name__}")
	try:
		return ClaudeJsonOutput.model_validate(data)
	except ValidationError as e:
		raise ParseError(str(e))


# ── Invoker ─────────────────────────────────────────────────────────────


class AgentInvoker:
	"""
	Runs the agent CLI and returns a normalized AgentResponse.

	Usage:
		invoker = AgentInvoker(["claude"], permission_mode="acceptEdits")
		response = await invoker.invoke(prompt, continue_session=False, token=token)
	"""

	def __init__(
		self,
		command: Optional[list[str]] = None,
		permission_mode: str = "acceptEdits",
		timeout: Optional[float] = None,
		context_window: int = DEFAULT_CONTEXT_WINDOW,
		cwd: Optional[Path] = None,
	):
		self.command = list(command or ["claude"])
		self.permission_mode = permission_mode
		self.timeout = timeout
		self.context_window = context_window
		self.cwd = cwd

	def build_args(self, prompt: str, continue_session: bool = False) -> list[str]:
		"""Command line for one invocation."""
		args = [*self.command, "-p", prompt]
		if continue_session:
			args.append("--continue")
		if self.permission_mode == "bypassPermissions":
			args.append("--dangerously-skip-permissions")
		else:
			args.extend(["--permission-mode", self.permission_mode])
		args.extend(["--output-format", "json"])
		return args

	async def invoke(
		self,
		prompt: str,
		continue_session: bool = False,
		token: Optional[CancellationToken] = None,
	) -> AgentResponse:
		"""
		Invoke the agent once.

		Failures (non-zero exit without output, timeout, missing binary) come
		back as an AgentResponse with is_error=True.

		Raises:
			InvocationCancelled: If the token fired while the agent was running
		"""
		args = self.build_args(prompt, continue_session)
		logger.info(f"Invoking agent ({len(prompt)} chars, continue={continue_session})")

		try:
			response = await self._run(args, token)
		except InvocationError as e:
			logger.error(f"Agent invocation failed: {e}")
			return AgentResponse(
				text=str(e),
				is_error=True,
				exit_code=e.exit_code,
				stderr=e.stderr,
				usage=TokenUsage(context_window=self.context_window),
			)

		logger.info(
			f"Agent finished: exit={response.exit_code} error={response.is_error} "
			f"tokens={response.usage.total_tokens} cost=${response.cost_usd:.4f}"
		)
		return response

	async def _run(self, args: list[str], token: Optional[CancellationToken]) -> AgentResponse:
		if token is not None and token.cancelled:
			raise InvocationCancelled("Cancelled before the agent started")

		try:
			process = await asyncio.create_subprocess_exec(
				*args,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
				cwd=self.cwd,
			)
		except FileNotFoundError:
			raise InvocationError(f"Agent command not found: {args[0]}")
		except OSError as e:
			raise InvocationError(f"Failed to start agent: {e}")

		communicate = asyncio.ensure_future(process.communicate())
		waiters: set[asyncio.Future] = {communicate}
		cancel_wait: Optional[asyncio.Future] = None
		if token is not None:
			cancel_wait = asyncio.ensure_future(token.wait())
			waiters.add(cancel_wait)

		try:
			done, _ = await asyncio.wait(
				waiters,
				timeout=self.timeout,
				return_when=asyncio.FIRST_COMPLETED,
			)
		except asyncio.CancelledError:
			await self._terminate(process, communicate)
			raise
		finally:
			if cancel_wait is not None and not cancel_wait.done():
				cancel_wait.cancel()

		if communicate not in done:
			await self._terminate(process, communicate)
			if token is not None and token.cancelled:
				raise InvocationCancelled("Agent process killed on cancellation")
			raise InvocationError(f"Agent timed out after {self.timeout} seconds")

		stdout, stderr = communicate.result()
		stdout_text = stdout.decode(errors="replace") if stdout else ""
		stderr_text = stderr.decode(errors="replace") if stderr else ""
		exit_code = process.returncode or 0

		if exit_code != 0 and not stdout_text.strip():
			message = stderr_text.strip() or f"Exit code {exit_code}"
			raise InvocationError(f"Agent exited with {exit_code}: {message}", exit_code, stderr_text)

		logger.debug(f"Agent raw output: {stdout_text[:2000]}")
		response = parse_agent_output(stdout_text, self.context_window)
		response.exit_code = exit_code
		response.stderr = stderr_text
		return response

	async def _terminate(self, process: asyncio.subprocess.Process, communicate: asyncio.Future) -> None:
		"""Kill the child and wait for it to exit."""
		if process.returncode is None:
			try:
				process.kill()
			except ProcessLookupError:
				pass
		communicate.cancel()
		await process.wait()
		logger.warning(f"Agent process {process.pid} terminated")
