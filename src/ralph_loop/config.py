"""Configuration system using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import platformdirs

APP_NAME = "ralph-loop"
APP_AUTHOR = "ralph-loop"

PERMISSION_MODES = ("acceptEdits", "bypassPermissions", "default", "plan")


class FatalConfigurationError(Exception):
	"""Raised before the loop starts when the run cannot be configured."""
	pass


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))
	# Project-local directory for run logs, nudges and handoff files
	state_dir: Path = field(default_factory=lambda: Path.cwd() / ".ralph-loop")

	# Derived paths
	nudge_file: Path = field(init=False)
	handoff_dir: Path = field(init=False)
	memory_db_path: Path = field(init=False)
	log_dir: Path = field(init=False)

	# Loop defaults (overridable per run)
	max_iterations: int = 0
	completion_signal: str = "TASK_COMPLETE"
	permission_mode: str = "acceptEdits"
	max_cycles: int = 10
	context_threshold: float = 60.0
	context_window: int = 200_000
	iteration_pause: float = 2.0
	agent_timeout: Optional[float] = None
	agent_command: list[str] = field(default_factory=lambda: ["claude"])

	def __post_init__(self) -> None:
		self.nudge_file = self.state_dir / "nudge.md"
		self.handoff_dir = self.state_dir / "handoffs"
		self.memory_db_path = self.data_dir / "memory.db"
		self.log_dir = self.state_dir / "logs"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.state_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)

	def loop_settings(self, task_text: str, **overrides) -> "LoopSettings":
		"""Build per-run settings from these defaults plus explicit overrides."""
		values = {
			"task_text": task_text,
			"max_iterations": self.max_iterations,
			"completion_signal": self.completion_signal,
			"permission_mode": self.permission_mode,
			"max_cycles": self.max_cycles,
			"context_threshold": self.context_threshold,
			"context_window": self.context_window,
			"iteration_pause": self.iteration_pause,
			"agent_timeout": self.agent_timeout,
			"agent_command": list(self.agent_command),
		}
		for key, val in overrides.items():
			if val is not None:
				values[key] = val
		return LoopSettings(**values)


@dataclass
class LoopSettings:
	"""Settings for a single supervised run."""

	task_text: str
	max_iterations: int = 0
	completion_signal: str = "TASK_COMPLETE"
	permission_mode: str = "acceptEdits"
	supervisor_mode: bool = False
	max_cycles: int = 10
	context_threshold: float = 60.0
	context_window: int = 200_000
	iteration_pause: float = 2.0
	agent_timeout: Optional[float] = None
	agent_command: list[str] = field(default_factory=lambda: ["claude"])
	agent_mode: bool = True

	def validate(self) -> None:
		"""
		Check the settings before the loop starts.

		Raises:
			FatalConfigurationError: If any value is unusable
		"""
		errors = []
		if not self.task_text or not self.task_text.strip():
			errors.append("task text is empty")
		if not isinstance(self.max_iterations, int) or isinstance(self.max_iterations, bool) or self.max_iterations < 0:
			errors.append(f"max_iterations must be a non-negative integer, got {self.max_iterations!r}")
		if not isinstance(self.max_cycles, int) or isinstance(self.max_cycles, bool) or self.max_cycles < 1:
			errors.append(f"max_cycles must be a positive integer, got {self.max_cycles!r}")
		if not isinstance(self.context_threshold, (int, float)) or not 0 < self.context_threshold <= 100:
			errors.append(f"context_threshold must be in (0, 100], got {self.context_threshold!r}")
		if not isinstance(self.context_window, int) or self.context_window <= 0:
			errors.append(f"context_window must be a positive integer, got {self.context_window!r}")
		if not isinstance(self.iteration_pause, (int, float)) or self.iteration_pause < 0:
			errors.append(f"iteration_pause must be >= 0, got {self.iteration_pause!r}")
		if self.agent_timeout is not None and self.agent_timeout <= 0:
			errors.append(f"agent_timeout must be positive, got {self.agent_timeout!r}")
		if not self.completion_signal or any(c in self.completion_signal for c in "<>\n"):
			errors.append(f"completion_signal is not a usable token: {self.completion_signal!r}")
		if self.permission_mode not in PERMISSION_MODES:
			errors.append(f"permission_mode must be one of {', '.join(PERMISSION_MODES)}")
		if not self.agent_command:
			errors.append("agent_command is empty")

		if errors:
			raise FatalConfigurationError("; ".join(errors))


def _apply_env_overrides(config: Config) -> Config:
	"""Apply RALPH_LOOP_* environment variable overrides."""
	env_map = {
		"RALPH_LOOP_CONFIG_DIR": "config_dir",
		"RALPH_LOOP_DATA_DIR": "data_dir",
		"RALPH_LOOP_STATE_DIR": "state_dir",
	}
	for env_key, attr in env_map.items():
		val = os.getenv(env_key)
		if val:
			setattr(config, attr, Path(val))

	threshold = os.getenv("RALPH_LOOP_CONTEXT_THRESHOLD")
	if threshold:
		try:
			config.context_threshold = float(threshold)
		except ValueError:
			raise FatalConfigurationError(f"RALPH_LOOP_CONTEXT_THRESHOLD is not a number: {threshold!r}")

	command = os.getenv("RALPH_LOOP_AGENT_COMMAND")
	if command:
		config.agent_command = command.split()

	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Apply config.toml overrides if file exists."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	try:
		with open(toml_path, "rb") as f:
			data = tomllib.load(f)
	except tomllib.TOMLDecodeError as e:
		raise FatalConfigurationError(f"config.toml parse error: {e}")

	path_fields = {"config_dir", "data_dir", "state_dir"}
	for key, val in data.items():
		if hasattr(config, key):
			if key in path_fields:
				setattr(config, key, Path(os.path.expanduser(val)))
			else:
				setattr(config, key, val)

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars > config.toml > defaults."""
	config = Config()
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config.ensure_dirs()
	return config


# Singleton
_config: Config | None = None


def get_config() -> Config:
	"""Get or create the global config instance."""
	global _config
	if _config is None:
		_config = load_config()
	return _config
