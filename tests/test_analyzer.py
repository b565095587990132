"""Tests for the transcript analyzer."""

from ralph_loop.analyzer import analyze, extract_summary, find_modified_files
from ralph_loop.models import AnalysisResult, ErrorEntry


class TestErrorDetection:
	"""Error table matching."""

	def test_detects_labeled_errors_in_table_order(self):
		text = (
			"Running build...\n"
			"src/app.ts(3,5): error TS2304: Cannot find name 'foo'.\n"
			"ModuleNotFoundError: No module named 'requests'\n"
		)
		result = analyze(text)

		labels = [e.pattern for e in result.errors]
		assert labels[0] == "TypeScript compilation error"
		assert "Python import error" in labels
		assert result.errors[0].sample.startswith("src/app.ts(3,5): error TS2304")

	def test_samples_are_short(self):
		text = "SyntaxError: " + "x" * 500
		result = analyze(text)
		assert len(result.errors[0].sample) <= 120

	def test_timeout_and_permission(self):
		result = analyze("The request timed out\nbash: ./run.sh: Permission denied")
		labels = result.error_patterns
		assert "Timeout error" in labels
		assert "Permission error" in labels

	def test_timeout_mentions_are_not_errors(self):
		result = analyze("Set the timeout to 30s in config.py and added a timeout flag")
		assert "Timeout error" not in result.error_patterns

	def test_timeout_error_phrases(self):
		for text in ("connect ETIMEDOUT 10.0.0.1:443", "Timeout exceeded after 5000ms", "asyncio.TimeoutError"):
			assert "Timeout error" in analyze(text).error_patterns

	def test_clean_output_has_no_errors(self):
		result = analyze("Everything looks fine.\nNothing broke.")
		assert result.errors == ()


class TestTestOutcomes:

	def test_passing_tests(self):
		result = analyze("Ran pytest\n===== 12 passed in 0.5s =====")
		assert result.tests_run
		assert result.tests_passed
		assert not result.tests_failed

	def test_failing_tests(self):
		result = analyze("pytest output:\n===== 2 failed, 10 passed in 0.5s =====")
		assert result.tests_run
		assert result.tests_failed
		assert not result.tests_passed

	def test_zero_failed_is_not_a_failure(self):
		result = analyze("pytest: 10 passed, 0 failed")
		assert result.tests_passed
		assert not result.tests_failed

	def test_no_tests(self):
		result = analyze("Updated the README wording.")
		assert not result.tests_run


class TestMeaningfulChanges:

	def test_file_modification_is_meaningful(self):
		result = analyze("I modified src/main.py to handle empty input.")
		assert result.meaningful_changes
		assert "src/main.py" in result.files_modified

	def test_fail_to_pass_transition_is_meaningful(self):
		previous = AnalysisResult(tests_run=True, tests_failed=True)
		result = analyze("pytest: 5 passed", previous_output="pytest: 1 failed", previous=previous)
		assert result.meaningful_changes

	def test_new_content_is_meaningful(self):
		text = "Looked at the parser.\nFound the tokenizer bug.\nPlanned a fix.\nWill apply next."
		assert analyze(text, previous_output="Started.").meaningful_changes

	def test_identical_output_is_not_meaningful(self):
		text = "Edited src/a.py\nRan 3 tests\nStill working on it\nMore to do"
		result = analyze(text, previous_output=text)
		assert not result.meaningful_changes

	def test_identical_up_to_numbers_is_not_meaningful(self):
		result = analyze(
			"Attempt 2: build failed\nline one\nline two\nline three",
			previous_output="Attempt 1: build failed\nline one\nline two\nline three",
		)
		assert not result.meaningful_changes

	def test_different_files_are_meaningful(self):
		result = analyze(
			"Updated file src/step2.py\nDone with part 2",
			previous_output="Updated file src/step1.py\nDone with part 1",
			previous=AnalysisResult(),
		)
		assert result.files_modified == ("src/step2.py",)
		assert result.meaningful_changes

	def test_repetition_marker_is_not_meaningful(self):
		text = "Tried again.\nSame error as before.\nNot sure why.\nWill look deeper."
		assert not analyze(text).meaningful_changes

	def test_short_output_is_not_meaningful(self):
		assert not analyze("ok").meaningful_changes


class TestRepeatedErrors:

	def test_same_pattern_in_consecutive_iterations(self):
		previous = AnalysisResult(errors=(ErrorEntry("Syntax error", "SyntaxError: x"),))
		result = analyze("SyntaxError: unexpected token", previous=previous)
		assert result.repeated_errors == ("Syntax error",)

	def test_new_pattern_is_not_repeated(self):
		previous = AnalysisResult(errors=(ErrorEntry("Syntax error", "SyntaxError: x"),))
		result = analyze("Error: Cannot find module 'lodash'", previous=previous)
		assert result.repeated_errors == ()


class TestDegradation:

	def test_empty_input(self):
		assert analyze("") == AnalysisResult.empty()
		assert analyze(None) == AnalysisResult.empty()

	def test_non_text_input_does_not_raise(self):
		assert analyze(12345) == AnalysisResult.empty()


def test_find_modified_files_from_diff():
	text = "diff --git a/src/x.py b/src/x.py\n+print(1)\nCreated tests/test_x.py"
	assert find_modified_files(text) == ["tests/test_x.py", "src/x.py"]


class TestExtractSummary:

	def test_prefers_last_status_line(self):
		text = "[STATUS] first\nwork\n[STATUS] added parser, tests remain\ntrailing"
		assert extract_summary(text) == "added parser, tests remain"

	def test_falls_back_to_last_non_promise_line(self):
		text = "Did the thing.\nAll verified.\n<promise>TASK_COMPLETE</promise>\n\n"
		assert extract_summary(text) == "All verified."

	def test_truncates(self):
		assert len(extract_summary("y" * 400)) == 150

	def test_empty(self):
		assert extract_summary("") == ""
