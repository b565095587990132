"""End-of-run summary: a markdown file in the run directory plus a console panel."""

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from .models import LoopStatus, RunState, utc_now

logger = logging.getLogger(__name__)

SUMMARY_FILE = "RALPH_SUMMARY.md"


def render_markdown(state: RunState, status: LoopStatus, reason: str) -> str:
	lines = [
		"# Ralph Loop Summary",
		"",
		f"- **Status:** {status.value}",
		f"- **Reason:** {reason}",
		f"- **Session:** {state.session_id}",
		f"- **Iterations:** {state.iteration}"
		+ (f" / {state.max_iterations}" if state.max_iterations > 0 else ""),
		f"- **Cycles:** {state.cycle_number}",
		f"- **Final strategy:** {state.strategy.value}",
		f"- **Errors:** {state.error_count} analysis, {state.api_error_count} agent",
		f"- **Tokens:** {state.total_input_tokens} in, {state.total_output_tokens} out"
		f" ({state.total_cached_tokens} cached)",
		f"- **Cost:** ${state.total_cost_usd:.4f}",
		f"- **Started:** {state.started_at}",
		f"- **Finished:** {utc_now()}",
		"",
		"## Task",
		"",
		state.task_text.strip(),
	]
	if state.last_summary:
		lines += ["", "## Last Status", "", state.last_summary]
	if state.accomplishments:
		lines += ["", "## Accomplished (current cycle)", ""]
		lines += [f"- {item}" for item in state.accomplishments]
	if state.blockers:
		lines += ["", "## Open Blockers", ""]
		lines += [f"- {item}" for item in state.blockers]
	if state.last_api_error:
		lines += ["", "## Last Agent Error", "", state.last_api_error]
	return "\n".join(lines) + "\n"


def write_summary(run_dir: Path, state: RunState, status: LoopStatus, reason: str) -> Optional[Path]:
	"""Write RALPH_SUMMARY.md; returns None if it could not be written."""
	path = Path(run_dir) / SUMMARY_FILE
	try:
		path.parent.mkdir(parents=True, exist_ok=True)
		path.write_text(render_markdown(state, status, reason), encoding="utf-8")
		return path
	except OSError as e:
		logger.warning(f"Could not write run summary: {e}")
		return None


def print_summary(
	state: RunState,
	status: LoopStatus,
	reason: str,
	console: Optional[Console] = None,
) -> None:
	console = console or Console(stderr=True)
	style = {
		LoopStatus.COMPLETE: "green",
		LoopStatus.MAX_REACHED: "yellow",
		LoopStatus.INTERRUPTED: "magenta",
	}.get(status, "red")

	body = (
		f"[bold]Status:[/bold] [{style}]{status.value}[/{style}] ({escape(reason)})\n"
		f"[bold]Iterations:[/bold] {state.iteration}  |  "
		f"[bold]Cycles:[/bold] {state.cycle_number}  |  "
		f"[bold]Strategy:[/bold] {state.strategy.value}\n"
		f"[bold]Errors:[/bold] {state.error_count} analysis / {state.api_error_count} agent  |  "
		f"[bold]Cost:[/bold] ${state.total_cost_usd:.4f}"
	)
	if state.last_summary:
		body += f"\n[bold]Last:[/bold] {escape(state.last_summary)}"
	console.print(Panel(body, title=f"Ralph Loop {state.session_id}", border_style=style))
