"""CLI for ralph-loop: run, nudge, and status commands."""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .agent import AgentInvoker, CancellationToken
from .config import PERMISSION_MODES, Config, FatalConfigurationError, LoopSettings, load_config
from .driver import IterationDriver, RunOutcome, install_signal_handlers, new_session_id, preview_first_iteration
from .handoff import open_handoff_store
from .journal import MemoryJournal
from .logging_config import setup_logging
from .nudge import NudgeQueue
from .status import find_latest_status, read_status, render_status
from .summary import print_summary


def _load_config(args: argparse.Namespace) -> Config:
	config = load_config()
	state_dir = getattr(args, "state_dir", None)
	if state_dir:
		config.state_dir = Path(state_dir)
		config.__post_init__()
		config.ensure_dirs()
	return config


def _read_task(args: argparse.Namespace) -> str:
	if args.prompt_file:
		try:
			return Path(args.prompt_file).read_text(encoding="utf-8")
		except OSError as e:
			raise FatalConfigurationError(f"Cannot read prompt file: {e}")
	return args.prompt or ""


def _settings_from_args(config: Config, args: argparse.Namespace) -> LoopSettings:
	permission_mode = "bypassPermissions" if args.yes else args.permission_mode
	settings = config.loop_settings(
		_read_task(args),
		max_iterations=args.max_iterations,
		completion_signal=args.completion_promise,
		permission_mode=permission_mode,
		supervisor_mode=args.supervisor,
		max_cycles=args.max_cycles,
		context_threshold=args.context_threshold,
		agent_timeout=args.timeout,
		agent_mode=not args.human,
	)
	settings.validate()
	return settings


async def _run_loop(
	config: Config,
	settings: LoopSettings,
	invoker: AgentInvoker,
	run_dir: Path,
	session_id: str,
) -> RunOutcome:
	token = CancellationToken()
	remove_handlers = install_signal_handlers(token)
	handoffs = None
	journal = None
	if settings.supervisor_mode:
		handoffs = await open_handoff_store(config.memory_db_path, config.handoff_dir)
		if handoffs.memory is not None:
			journal = MemoryJournal(handoffs.memory, session_id, settings.task_text)

	driver = IterationDriver(
		settings,
		invoker,
		NudgeQueue(config.nudge_file),
		handoffs,
		run_dir,
		token=token,
		session_id=session_id,
		on_status_line=lambda line: print(line, flush=True),
		journal=journal,
	)
	try:
		return await driver.run()
	finally:
		remove_handlers()
		if handoffs is not None:
			await handoffs.close()


def cmd_run(args: argparse.Namespace) -> None:
	"""Run the supervision loop for one task."""
	load_dotenv()
	try:
		config = _load_config(args)
		settings = _settings_from_args(config, args)
	except FatalConfigurationError as e:
		print(f"Configuration error: {e}", file=sys.stderr)
		sys.exit(2)

	invoker = AgentInvoker(
		settings.agent_command,
		permission_mode=settings.permission_mode,
		timeout=settings.agent_timeout,
		context_window=settings.context_window,
	)

	if args.dry_run:
		prompt, agent_args = preview_first_iteration(settings, invoker)
		print("=== Agent command ===")
		print(" ".join("<prompt>" if arg == prompt else arg for arg in agent_args))
		print()
		print("=== First prompt ===")
		print(prompt)
		return

	session_id = new_session_id()
	run_dir = config.log_dir / session_id
	setup_logging(log_dir=run_dir, quiet=settings.agent_mode)

	outcome = asyncio.run(_run_loop(config, settings, invoker, run_dir, session_id))
	print_summary(outcome.state, outcome.status, outcome.reason)
	sys.exit(outcome.exit_code)


def cmd_nudge(args: argparse.Namespace) -> None:
	"""Queue an instruction for the next iteration of a running loop."""
	load_dotenv()
	try:
		config = _load_config(args)
	except FatalConfigurationError as e:
		print(f"Configuration error: {e}", file=sys.stderr)
		sys.exit(2)

	text = " ".join(args.text).strip()
	if not text:
		print("Nudge text is empty", file=sys.stderr)
		sys.exit(1)

	NudgeQueue(config.nudge_file).push(text)
	print(f"Nudge queued at {config.nudge_file}")


def cmd_status(args: argparse.Namespace) -> None:
	"""Show the latest run snapshot."""
	load_dotenv()
	try:
		config = _load_config(args)
	except FatalConfigurationError as e:
		print(f"Configuration error: {e}", file=sys.stderr)
		sys.exit(2)

	path = Path(args.path) if args.path else find_latest_status(config.log_dir)
	snapshot = read_status(path) if path else None
	if snapshot is None:
		print("No run status found", file=sys.stderr)
		sys.exit(1)

	if args.json:
		print(snapshot.model_dump_json(indent=2))
	else:
		render_status(snapshot)


def main(argv: Optional[list[str]] = None) -> None:
	"""CLI entry point."""
	parser = argparse.ArgumentParser(
		prog="ralph-loop",
		description="Supervise a coding agent through repeated iterations until a task is done",
	)
	parser.add_argument("--state-dir", type=str, default=None, help="Directory for logs, nudges and handoffs")
	subparsers = parser.add_subparsers(dest="command")

	# run
	run_parser = subparsers.add_parser("run", help="Run the loop for a task")
	run_parser.add_argument("prompt", nargs="?", default=None, help="Task description")
	run_parser.add_argument("-f", "--prompt-file", type=str, default=None, help="Read the task from a file")
	run_parser.add_argument("-m", "--max-iterations", type=int, default=None, help="Iteration budget (0 = unbounded)")
	run_parser.add_argument("-c", "--completion-promise", type=str, default=None, help="Completion token (default: TASK_COMPLETE)")
	run_parser.add_argument("-p", "--permission-mode", choices=PERMISSION_MODES, default=None, help="Agent permission mode")
	run_parser.add_argument("-y", "--yes", action="store_true", help="Skip all agent permission prompts")
	run_parser.add_argument("--supervisor", action="store_true", help="Roll over into fresh contexts with handoffs")
	run_parser.add_argument("--max-cycles", type=int, default=None, help="Cycle budget in supervisor mode (default: 10)")
	run_parser.add_argument("--context-threshold", type=float, default=None, help="Context %% that triggers a new cycle (default: 60)")
	run_parser.add_argument("--timeout", type=float, default=None, help="Per-invocation agent timeout in seconds")
	run_parser.add_argument("--human", action="store_true", help="Human-oriented prompts (no [STATUS] line requested)")
	run_parser.add_argument("--dry-run", action="store_true", help="Print the first prompt and agent command, then exit")
	run_parser.set_defaults(func=cmd_run)

	# nudge
	nudge_parser = subparsers.add_parser("nudge", help="Send an instruction to a running loop")
	nudge_parser.add_argument("text", nargs="+", help="Instruction text")
	nudge_parser.set_defaults(func=cmd_nudge)

	# status
	status_parser = subparsers.add_parser("status", help="Show the latest run status")
	status_parser.add_argument("--path", type=str, default=None, help="Path to a status.json (default: latest run)")
	status_parser.add_argument("--json", action="store_true", help="Print raw JSON")
	status_parser.set_defaults(func=cmd_status)

	args = parser.parse_args(argv)

	if not args.command:
		parser.print_help()
		sys.exit(1)

	args.func(args)
