"""
Transcript analyzer - turns one iteration's raw agent output into signals.

Detects:
- Known error patterns (compile, syntax, import, test, timeout, ...)
- Test runs and their outcome
- Files the agent reports as modified
- Whether the iteration made a meaningful change
"""

import logging
import re
from typing import Optional

from .models import AnalysisResult, ErrorEntry

logger = logging.getLogger(__name__)

SAMPLE_LENGTH = 120
SUMMARY_LENGTH = 150

# New non-empty lines (vs. the previous output) that count as real content
MIN_NEW_LINES = 3


class AnalysisDegraded(Exception):
	"""Raised internally when output cannot be analyzed; never escapes analyze()."""
	pass


# Ordered: errors are reported in table order
ERROR_PATTERNS: list[tuple[re.Pattern, str]] = [
	(re.compile(r"error TS\d+:", re.IGNORECASE), "TypeScript compilation error"),
	(re.compile(r"SyntaxError:", re.IGNORECASE), "Syntax error"),
	(re.compile(r"(ModuleNotFoundError|ImportError):", re.IGNORECASE), "Python import error"),
	(re.compile(r"FAILED.*test", re.IGNORECASE), "Test failure"),
	(
		re.compile(r"\btimed out\b|\btime-?out (?:error|exceeded)|\bETIMEDOUT\b|\bTimeoutError\b", re.IGNORECASE),
		"Timeout error",
	),
	(re.compile(r"ENOENT:|No such file or directory", re.IGNORECASE), "File not found"),
	(re.compile(r"permission denied", re.IGNORECASE), "Permission error"),
	(re.compile(r"Cannot find module", re.IGNORECASE), "Module resolution error"),
	(re.compile(r"undefined is not|NameError:", re.IGNORECASE), "Undefined reference error"),
	(re.compile(r"Maximum call stack|RecursionError:", re.IGNORECASE), "Stack overflow"),
]

TESTS_RUN_PATTERN = re.compile(
	r"\b(pytest|jest|vitest|npm test|bun test|cargo test|go test|unittest)\b"
	r"|\b\d+ (passed|failed)\b"
	r"|\btests? (run|ran|passed|failed)\b",
	re.IGNORECASE,
)
TESTS_PASSED_PATTERN = re.compile(
	r"\b\d+ passed\b|\ball tests pass(ed)?\b|\btests? passed\b|\bTests:\s+\d+ passed",
	re.IGNORECASE,
)
TESTS_FAILED_PATTERN = re.compile(r"\b[1-9]\d* failed\b|\b[Tt]ests? failed\b|\bFAILED\b")

FILE_PATTERNS: list[re.Pattern] = [
	re.compile(
		r"\b(?:created|modified|updated|edited|wrote|saved)\s+(?:the\s+)?(?:file\s+)?[`'\"]?([\w./-]+\.\w+)",
		re.IGNORECASE,
	),
	re.compile(r"^diff --git a/(\S+)", re.MULTILINE),
	re.compile(r"\bThe file ([\w./-]+\.\w+) has been (?:updated|created)", re.IGNORECASE),
]

REPETITION_MARKERS = re.compile(
	r"same error as before|still failing|already tried|no changes (were )?made"
	r"|nothing (left )?to change|no progress|made no changes",
	re.IGNORECASE,
)

STATUS_LINE_PATTERN = re.compile(r"^\s*\[STATUS\]\s*(.*)$")
PROMISE_PATTERN = re.compile(r"<promise>.*?</promise>")


def analyze(
	text: Optional[str],
	previous_output: Optional[str] = None,
	previous: Optional[AnalysisResult] = None,
) -> AnalysisResult:
	"""
	Analyze one iteration's output.

	Args:
		text: Raw result text of the current iteration
		previous_output: Result text of the previous iteration in this cycle
		previous: Analysis of the previous iteration

	Returns:
		AnalysisResult; an empty result when the input is missing or malformed
	"""
	if not text:
		return AnalysisResult.empty()

	try:
		return _analyze(text, previous_output or "", previous)
	except Exception as e:
		logger.warning(f"Transcript analysis degraded: {e}")
		return AnalysisResult.empty()


def _analyze(text: str, previous_output: str, previous: Optional[AnalysisResult]) -> AnalysisResult:
	if not isinstance(text, str):
		raise AnalysisDegraded(f"expected text, got {type(text).__name__}")

	errors = find_errors(text)
	tests_run = bool(TESTS_RUN_PATTERN.search(text))
	tests_failed = tests_run and bool(TESTS_FAILED_PATTERN.search(text))
	tests_passed = tests_run and not tests_failed and bool(TESTS_PASSED_PATTERN.search(text))
	files = find_modified_files(text)

	repeated: list[str] = []
	if previous is not None:
		before = set(previous.error_patterns)
		repeated = [p for p in _distinct(e.pattern for e in errors) if p in before]

	recovered = (
		previous is not None
		and previous.tests_failed
		and tests_passed
	)

	meaningful = _is_meaningful(text, previous_output, bool(files), recovered)

	return AnalysisResult(
		errors=tuple(errors),
		meaningful_changes=meaningful,
		tests_run=tests_run,
		tests_passed=tests_passed,
		tests_failed=tests_failed,
		repeated_errors=tuple(repeated),
		files_modified=tuple(files),
	)


def find_errors(text: str) -> list[ErrorEntry]:
	"""Match the error table against the text, one entry per pattern."""
	errors = []
	for regex, label in ERROR_PATTERNS:
		match = regex.search(text)
		if match:
			errors.append(ErrorEntry(pattern=label, sample=_line_around(text, match.start())))
	return errors


def find_modified_files(text: str) -> list[str]:
	files: list[str] = []
	for regex in FILE_PATTERNS:
		for match in regex.finditer(text):
			path = match.group(1).strip("`'\".,")
			if path and path not in files:
				files.append(path)
	return files


def _is_meaningful(text: str, previous_output: str, modified: bool, recovered: bool) -> bool:
	# Exact repeat only; "step1.py" and "step2.py" are different output
	if previous_output and _normalize(text, keep_digits=True) == _normalize(previous_output, keep_digits=True):
		return False
	if modified or recovered:
		return True
	if REPETITION_MARKERS.search(text):
		return False

	current = _normalize(text)
	old_lines = set(_normalize(previous_output).splitlines())
	new_lines = [line for line in current.splitlines() if line and line not in old_lines]
	return len(new_lines) >= MIN_NEW_LINES


def _normalize(text: str, keep_digits: bool = False) -> str:
	"""Lowercase, whitespace squeezed, digits collapsed unless `keep_digits`; one line per source line."""
	lines = []
	for line in text.splitlines():
		line = line.lower()
		if not keep_digits:
			line = re.sub(r"\d+", "#", line)
		line = " ".join(line.split())
		if line:
			lines.append(line)
	return "\n".join(lines)


def _line_around(text: str, pos: int) -> str:
	start = text.rfind("\n", 0, pos) + 1
	end = text.find("\n", pos)
	if end == -1:
		end = len(text)
	return text[start:end].strip()[:SAMPLE_LENGTH]


def _distinct(items) -> list[str]:
	seen: list[str] = []
	for item in items:
		if item not in seen:
			seen.append(item)
	return seen


def extract_summary(text: Optional[str], max_len: int = SUMMARY_LENGTH) -> str:
	"""
	One-line summary of an iteration.

	Prefers the last "[STATUS] ..." line; otherwise the last non-empty line
	that is not a completion promise.
	"""
	if not text:
		return ""

	status_lines = []
	for line in text.splitlines():
		match = STATUS_LINE_PATTERN.match(line)
		if match and match.group(1).strip():
			status_lines.append(match.group(1).strip())
	if status_lines:
		return status_lines[-1][:max_len]

	for line in reversed(text.splitlines()):
		if PROMISE_PATTERN.search(line):
			continue
		if line.strip():
			return line.strip()[:max_len]
	return ""
