"""Context budget monitor - tracks how full the agent's working context is."""

import math
from typing import Any

from .models import TokenUsage


def _as_count(value: Any) -> float:
	"""Coerce a token count to a finite non-negative float."""
	if isinstance(value, bool):
		return 0.0
	try:
		number = float(value)
	except (TypeError, ValueError):
		return 0.0
	if math.isnan(number) or number < 0:
		return 0.0
	return number


def compute_context_pct(input_tokens: Any, output_tokens: Any, capacity: Any) -> float:
	"""
	Percentage of the context window in use, rounded to 2 decimals.

	Always in [0, 100]: negative, NaN, or non-numeric inputs count as zero and
	a non-positive capacity yields 0.
	"""
	window = _as_count(capacity)
	if window <= 0 or math.isinf(window):
		return 0.0

	used = _as_count(input_tokens) + _as_count(output_tokens)
	if math.isinf(used):
		return 100.0

	pct = round(used / window * 100, 2)
	return max(0.0, min(pct, 100.0))


def usage_pct(usage: TokenUsage, default_window: int) -> float:
	"""Context percentage for one invocation, using the reported window when known."""
	window = usage.context_window if usage.context_window > 0 else default_window
	return compute_context_pct(usage.input_tokens, usage.output_tokens, window)


def should_cycle(context_pct: float, threshold: float, supervisor_mode: bool) -> bool:
	"""A cycle boundary happens only in supervisor mode once the threshold is reached."""
	if not supervisor_mode:
		return False
	return _as_count(context_pct) >= threshold
