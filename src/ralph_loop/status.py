"""
Status reporter - the run snapshot other tools read while a loop is running.

status.json is replaced atomically after every iteration. Writing it must
never stop the loop, so failures are logged and swallowed here.
"""

import logging
import os
import uuid
from pathlib import Path
from typing import Optional

from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .models import LoopStatus, RunState, StatusSnapshot, utc_now

logger = logging.getLogger(__name__)

PROMPT_PREVIEW_LENGTH = 80
SUMMARY_LENGTH = 200
API_ERROR_LENGTH = 500

STATUS_STYLES = {
	LoopStatus.RUNNING: "cyan",
	LoopStatus.COMPLETE: "green",
	LoopStatus.ERROR: "red",
	LoopStatus.MAX_REACHED: "yellow",
	LoopStatus.INTERRUPTED: "magenta",
}


def build_snapshot(
	state: RunState,
	status: LoopStatus,
	promise_detected: bool = False,
	log_dir: str = "",
	supervisor_mode: bool = False,
) -> StatusSnapshot:
	"""Project the run state onto the snapshot fields."""
	return StatusSnapshot(
		status=status,
		iteration=state.iteration,
		max_iterations=state.max_iterations,
		prompt_preview=" ".join(state.task_text.split())[:PROMPT_PREVIEW_LENGTH],
		last_summary=state.last_summary[:SUMMARY_LENGTH],
		promise_detected=promise_detected,
		started_at=state.started_at,
		last_updated=utc_now(),
		total_cost_usd=state.total_cost_usd,
		total_input_tokens=state.total_input_tokens,
		total_output_tokens=state.total_output_tokens,
		total_cached_tokens=state.total_cached_tokens,
		log_dir=log_dir,
		session_id=state.session_id,
		strategy=state.strategy,
		error_count=state.error_count,
		api_error_count=state.api_error_count,
		last_api_error=state.last_api_error[:API_ERROR_LENGTH],
		stuck_count=state.stuck_count,
		context_pct=state.context_pct,
		supervisor_mode=supervisor_mode,
		cycle_number=state.cycle_number,
	)


class StatusReporter:
	"""Writes status.json for one run directory."""

	def __init__(self, path: Path, supervisor_mode: bool = False):
		self.path = Path(path)
		self.supervisor_mode = supervisor_mode

	def report(self, state: RunState, status: LoopStatus, promise_detected: bool = False) -> bool:
		snapshot = build_snapshot(
			state,
			status,
			promise_detected=promise_detected,
			log_dir=str(self.path.parent),
			supervisor_mode=self.supervisor_mode,
		)
		return self.write(snapshot)

	def write(self, snapshot: StatusSnapshot) -> bool:
		"""Atomically replace the snapshot file. Returns False on failure."""
		tmp = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex[:8]}.tmp")
		try:
			self.path.parent.mkdir(parents=True, exist_ok=True)
			tmp.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
			os.replace(tmp, self.path)
			return True
		except OSError as e:
			logger.warning(f"Could not write status snapshot {self.path}: {e}")
			try:
				tmp.unlink(missing_ok=True)
			except OSError:
				pass
			return False


def read_status(path: Path) -> Optional[StatusSnapshot]:
	"""Load a snapshot; None when the file is missing or invalid."""
	try:
		return StatusSnapshot.model_validate_json(Path(path).read_text(encoding="utf-8"))
	except FileNotFoundError:
		return None
	except (OSError, ValidationError) as e:
		logger.warning(f"Invalid status snapshot {path}: {e}")
		return None


def find_latest_status(log_dir: Path) -> Optional[Path]:
	"""status.json of the most recently updated run under `log_dir`."""
	root = Path(log_dir)
	if not root.is_dir():
		return None
	candidates = [p for p in root.glob("*/status.json") if p.is_file()]
	if not candidates:
		return None
	return max(candidates, key=lambda p: p.stat().st_mtime)


def render_status(snapshot: StatusSnapshot, console: Optional[Console] = None) -> None:
	"""Render a snapshot as a rich table."""
	console = console or Console()
	style = STATUS_STYLES.get(snapshot.status, "white")

	if snapshot.max_iterations > 0:
		iteration = f"{snapshot.iteration}/{snapshot.max_iterations}"
	else:
		iteration = str(snapshot.iteration)

	table = Table(show_header=False, box=None, padding=(0, 2))
	table.add_column("Field", style="bold")
	table.add_column("Value")
	table.add_row("Status", f"[{style}]{snapshot.status.value}[/{style}]")
	table.add_row("Session", snapshot.session_id or "-")
	table.add_row("Iteration", iteration)
	table.add_row("Strategy", snapshot.strategy.value)
	if snapshot.supervisor_mode:
		table.add_row("Cycle", str(snapshot.cycle_number))
	table.add_row("Context", f"{snapshot.context_pct:.1f}%")
	table.add_row("Stuck count", str(snapshot.stuck_count))
	table.add_row("Errors", f"{snapshot.error_count} analysis / {snapshot.api_error_count} agent")
	table.add_row(
		"Tokens",
		f"{snapshot.total_input_tokens:,} in / {snapshot.total_output_tokens:,} out"
		f" ({snapshot.total_cached_tokens:,} cached)",
	)
	table.add_row("Cost", f"${snapshot.total_cost_usd:.4f}")
	table.add_row("Started", snapshot.started_at or "-")
	table.add_row("Updated", snapshot.last_updated)
	table.add_row("Task", escape(snapshot.prompt_preview))
	if snapshot.last_summary:
		table.add_row("Last summary", escape(snapshot.last_summary))
	if snapshot.last_api_error:
		table.add_row("Last agent error", f"[red]{escape(snapshot.last_api_error)}[/red]")

	console.print(Panel(table, title="Ralph Loop Status", border_style=style))
