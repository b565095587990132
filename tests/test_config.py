"""Tests for the configuration system."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from ralph_loop.config import (
	Config,
	FatalConfigurationError,
	LoopSettings,
	_apply_env_overrides,
	_apply_toml,
	load_config,
)


def _config(tmp_path: Path) -> Config:
	return Config(
		config_dir=tmp_path / "config",
		data_dir=tmp_path / "data",
		state_dir=tmp_path / "state",
	)


def test_config_defaults(tmp_path: Path):
	"""Derived paths hang off the state and data dirs."""
	config = _config(tmp_path)
	assert config.nudge_file == tmp_path / "state" / "nudge.md"
	assert config.handoff_dir == tmp_path / "state" / "handoffs"
	assert config.log_dir == tmp_path / "state" / "logs"
	assert config.memory_db_path == tmp_path / "data" / "memory.db"
	assert config.max_iterations == 0
	assert config.completion_signal == "TASK_COMPLETE"
	assert config.permission_mode == "acceptEdits"
	assert config.max_cycles == 10
	assert config.context_threshold == 60.0
	assert config.agent_command == ["claude"]


def test_config_env_overrides(tmp_path: Path):
	"""Environment variables should override defaults."""
	config = _config(tmp_path)
	with patch.dict(os.environ, {
		"RALPH_LOOP_DATA_DIR": "/tmp/rl-data",
		"RALPH_LOOP_STATE_DIR": "/tmp/rl-state",
		"RALPH_LOOP_CONTEXT_THRESHOLD": "75.5",
		"RALPH_LOOP_AGENT_COMMAND": "npx claude",
	}):
		config = _apply_env_overrides(config)
		assert config.data_dir == Path("/tmp/rl-data")
		assert config.state_dir == Path("/tmp/rl-state")
		# Derived paths should be recomputed
		assert config.memory_db_path == Path("/tmp/rl-data/memory.db")
		assert config.nudge_file == Path("/tmp/rl-state/nudge.md")
		assert config.context_threshold == 75.5
		assert config.agent_command == ["npx", "claude"]


def test_bad_threshold_env_is_fatal(tmp_path: Path):
	config = _config(tmp_path)
	with patch.dict(os.environ, {"RALPH_LOOP_CONTEXT_THRESHOLD": "lots"}):
		with pytest.raises(FatalConfigurationError):
			_apply_env_overrides(config)


def test_toml_overrides(tmp_path: Path):
	config = _config(tmp_path)
	config.config_dir.mkdir(parents=True)
	(config.config_dir / "config.toml").write_text(
		'max_cycles = 3\ncompletion_signal = "DONE"\nstate_dir = "%s"\n' % (tmp_path / "elsewhere")
	)

	config = _apply_toml(config)

	assert config.max_cycles == 3
	assert config.completion_signal == "DONE"
	assert config.state_dir == tmp_path / "elsewhere"
	assert config.nudge_file == tmp_path / "elsewhere" / "nudge.md"


def test_invalid_toml_is_fatal(tmp_path: Path):
	config = _config(tmp_path)
	config.config_dir.mkdir(parents=True)
	(config.config_dir / "config.toml").write_text("max_cycles = = 3")

	with pytest.raises(FatalConfigurationError):
		_apply_toml(config)


def test_load_config_creates_dirs(tmp_path: Path):
	"""load_config should create directories."""
	with patch.dict(os.environ, {
		"RALPH_LOOP_CONFIG_DIR": str(tmp_path / "config"),
		"RALPH_LOOP_DATA_DIR": str(tmp_path / "data"),
		"RALPH_LOOP_STATE_DIR": str(tmp_path / "state"),
	}):
		config = load_config()
		assert config.data_dir.exists()
		assert config.config_dir.exists()
		assert config.log_dir.exists()


def test_loop_settings_ignores_missing_overrides(tmp_path: Path):
	config = _config(tmp_path)
	settings = config.loop_settings("fix the build", max_iterations=None, max_cycles=4)

	assert settings.task_text == "fix the build"
	assert settings.max_iterations == 0
	assert settings.max_cycles == 4
	assert settings.completion_signal == "TASK_COMPLETE"


class TestLoopSettingsValidation:
	"""LoopSettings.validate rejects unusable runs before the loop starts."""

	def test_valid_settings_pass(self):
		LoopSettings(task_text="do it", max_iterations=5).validate()

	@pytest.mark.parametrize("overrides", [
		{"task_text": "   "},
		{"max_iterations": -1},
		{"max_cycles": 0},
		{"context_threshold": 0},
		{"context_threshold": 120},
		{"iteration_pause": -1},
		{"agent_timeout": 0},
		{"completion_signal": "<done>"},
		{"permission_mode": "yolo"},
		{"agent_command": []},
	])
	def test_invalid_settings_raise(self, overrides):
		values = {"task_text": "do it"}
		values.update(overrides)
		with pytest.raises(FatalConfigurationError):
			LoopSettings(**values).validate()

	def test_all_problems_reported(self):
		settings = LoopSettings(task_text="", max_cycles=0)
		with pytest.raises(FatalConfigurationError) as exc:
			settings.validate()
		assert "task text is empty" in str(exc.value)
		assert "max_cycles" in str(exc.value)
