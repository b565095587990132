"""Tests for the ralph-loop CLI."""

import json
import logging
import sys
from pathlib import Path

import pytest

from ralph_loop.cli import main
from ralph_loop.models import LoopStatus, RunState
from ralph_loop.status import StatusReporter

FAKE_AGENT = """\
import json
print(json.dumps({
	"result": "Implemented and verified.\\n<promise>TASK_COMPLETE</promise>",
	"session_id": "fake-session",
	"total_cost_usd": 0.02,
	"usage": {"input_tokens": 1200, "output_tokens": 300},
}))
"""


@pytest.fixture
def dirs(tmp_path: Path, monkeypatch):
	"""Point every ralph-loop directory into tmp_path."""
	monkeypatch.setenv("RALPH_LOOP_CONFIG_DIR", str(tmp_path / "config"))
	monkeypatch.setenv("RALPH_LOOP_DATA_DIR", str(tmp_path / "data"))
	monkeypatch.setenv("RALPH_LOOP_STATE_DIR", str(tmp_path / "state"))
	monkeypatch.delenv("RALPH_LOOP_AGENT_COMMAND", raising=False)
	monkeypatch.delenv("RALPH_LOOP_CONTEXT_THRESHOLD", raising=False)
	return tmp_path


@pytest.fixture
def package_logger():
	"""Drop the handlers a real run attaches to the package logger."""
	logger = logging.getLogger("ralph_loop")
	yield logger
	for handler in list(logger.handlers):
		logger.removeHandler(handler)
		handler.close()


def test_no_command_prints_help(dirs, capsys):
	with pytest.raises(SystemExit) as exc:
		main([])
	assert exc.value.code == 1
	assert "usage" in capsys.readouterr().out


class TestRunCommand:

	def test_dry_run(self, dirs, capsys):
		main(["run", "--dry-run", "-m", "5", "-c", "SHIPPED", "Ship the feature"])

		out = capsys.readouterr().out
		assert "claude -p <prompt> --permission-mode acceptEdits --output-format json" in out
		assert "Ship the feature" in out
		assert "<promise>SHIPPED</promise>" in out
		assert "iteration 1/5" in out

	def test_dry_run_bypass_permissions(self, dirs, capsys):
		main(["run", "--dry-run", "-y", "task"])
		assert "--dangerously-skip-permissions" in capsys.readouterr().out

	def test_dry_run_does_not_consume_nudge(self, dirs):
		main(["nudge", "hold on"])
		main(["run", "--dry-run", "task"])
		assert (dirs / "state" / "nudge.md").exists()

	def test_prompt_file(self, dirs, capsys):
		task = dirs / "task.md"
		task.write_text("Task from a file")
		main(["run", "--dry-run", "-f", str(task)])
		assert "Task from a file" in capsys.readouterr().out

	@pytest.mark.parametrize("argv", [
		["run", "--dry-run", ""],
		["run", "--dry-run", "--context-threshold", "150", "task"],
		["run", "--dry-run", "-m", "-2", "task"],
		["run", "--dry-run", "--max-cycles", "0", "task"],
		["run", "--dry-run", "-f", "/nonexistent/task.md"],
	])
	def test_bad_configuration_exits_2(self, dirs, argv, capsys):
		with pytest.raises(SystemExit) as exc:
			main(argv)
		assert exc.value.code == 2
		assert "Configuration error" in capsys.readouterr().err

	def test_full_run_completes(self, dirs, monkeypatch, capsys, package_logger):
		agent = dirs / "fake_agent.py"
		agent.write_text(FAKE_AGENT)
		monkeypatch.setenv("RALPH_LOOP_AGENT_COMMAND", f"{sys.executable} {agent}")

		with pytest.raises(SystemExit) as exc:
			main(["run", "Implement it"])
		assert exc.value.code == 0

		out = capsys.readouterr().out
		assert "[ITER 1] COMPLETE" in out
		assert "promise=DETECTED" in out

		runs = list((dirs / "state" / "logs").glob("ralph-*/status.json"))
		assert len(runs) == 1
		status = json.loads(runs[0].read_text())
		assert status["status"] == "COMPLETE"
		assert status["total_input_tokens"] == 1200


class TestNudgeCommand:

	def test_nudge_written(self, dirs, capsys):
		main(["nudge", "focus", "on", "tests"])
		assert (dirs / "state" / "nudge.md").read_text() == "focus on tests"
		assert "Nudge queued" in capsys.readouterr().out

	def test_state_dir_flag(self, dirs):
		main(["--state-dir", str(dirs / "other"), "nudge", "hi"])
		assert (dirs / "other" / "nudge.md").read_text() == "hi"


class TestStatusCommand:

	def test_no_runs(self, dirs, capsys):
		with pytest.raises(SystemExit) as exc:
			main(["status"])
		assert exc.value.code == 1
		assert "No run status found" in capsys.readouterr().err

	def test_latest_run_as_json(self, dirs, capsys):
		state = RunState(task_text="demo task", session_id="ralph-demo")
		StatusReporter(dirs / "state" / "logs" / "ralph-demo" / "status.json").report(state, LoopStatus.RUNNING)

		main(["status", "--json"])

		data = json.loads(capsys.readouterr().out)
		assert data["session_id"] == "ralph-demo"
		assert data["status"] == "RUNNING"

	def test_explicit_path_rendered(self, dirs, capsys):
		path = dirs / "status.json"
		StatusReporter(path).report(RunState(task_text="demo", session_id="ralph-path"), LoopStatus.COMPLETE)

		main(["status", "--path", str(path)])

		assert "ralph-path" in capsys.readouterr().out
