"""
Handoff store - carries a cycle summary across a context boundary.

Backends, tried in order:
- MemoryHandoffBackend: tagged records in the SQLite memory store, a markdown
  note alongside the JSON record
- FileHandoffBackend: cycle-NNNN.json files plus a latest.json pointer

The set of backends is chosen once at startup. Saving never raises;
loading returns a not-found result instead of failing, so a missing or
corrupt handoff only means the next cycle starts cold.
"""

import json
import logging
import os
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .journal import JournalEntries
from .memory import MemoryRecord, MemoryStore
from .models import HandoffRecord, RunState, Strategy

logger = logging.getLogger(__name__)

HANDOFF_TAG = "cycle-handoff-json"
NOTE_TAG = "cycle-handoff"
CYCLE_FILE_PATTERN = re.compile(r"^cycle-(\d+)\.json$")


class PersistenceError(Exception):
	"""Raised by a backend when a handoff cannot be written or read."""
	pass


@dataclass
class HandoffLoadResult:
	"""Outcome of a handoff lookup."""
	found: bool
	record: Optional[HandoffRecord] = None
	error: Optional[str] = None


class MemoryHandoffBackend:
	"""Handoffs as tagged JSON records in the memory store."""

	name = "memory"

	def __init__(self, store: MemoryStore):
		self.store = store

	async def save(self, record: HandoffRecord) -> None:
		"""Store a readable note and the JSON record the loader parses."""
		cycle_tag = f"cycle-{record.cycle_number}"
		try:
			await self.store.store(MemoryRecord(
				title=f"Ralph Cycle {record.cycle_number} Handoff",
				content=format_handoff_note(record),
				tags=["ralph", NOTE_TAG, cycle_tag, record.session_id],
			))
			await self.store.store(MemoryRecord(
				title=f"Ralph Cycle {record.cycle_number} Handoff Data (JSON)",
				content=record.model_dump_json(),
				tags=["ralph", HANDOFF_TAG, cycle_tag, record.session_id],
			))
		except Exception as e:
			raise PersistenceError(f"memory store write failed: {e}") from e

	async def load(self, session_id: str, cycle_number: Optional[int] = None) -> Optional[HandoffRecord]:
		tags = [HANDOFF_TAG, session_id]
		if cycle_number is not None:
			tags.append(f"cycle-{cycle_number}")
		try:
			rows = await self.store.search("", tags=tags, limit=500)
		except Exception as e:
			raise PersistenceError(f"memory store read failed: {e}") from e

		best: Optional[HandoffRecord] = None
		for row in rows:
			try:
				record = HandoffRecord.model_validate_json(row.content)
			except ValidationError:
				logger.warning(f"Skipping malformed handoff record {row.id}")
				continue
			if record.session_id != session_id:
				continue
			if best is None or record.cycle_number > best.cycle_number:
				best = record
		return best


class FileHandoffBackend:
	"""Handoffs as JSON files under <root>/<session_id>/."""

	name = "file"

	def __init__(self, root: Path):
		self.root = Path(root)

	def session_dir(self, session_id: str) -> Path:
		safe = re.sub(r"[^\w.-]", "_", session_id) or "default"
		return self.root / safe

	async def save(self, record: HandoffRecord) -> None:
		directory = self.session_dir(record.session_id)
		try:
			directory.mkdir(parents=True, exist_ok=True)
			_write_atomic(directory / f"cycle-{record.cycle_number:04d}.json", record.model_dump_json(indent=2))
			_write_atomic(directory / "latest.json", json.dumps({"cycle_number": record.cycle_number}))
		except OSError as e:
			raise PersistenceError(f"handoff file write failed: {e}") from e

	async def load(self, session_id: str, cycle_number: Optional[int] = None) -> Optional[HandoffRecord]:
		directory = self.session_dir(session_id)
		if not directory.is_dir():
			return None

		if cycle_number is not None:
			return self._read(directory / f"cycle-{cycle_number:04d}.json")

		pointer = self._read_pointer(directory / "latest.json")
		if pointer is not None:
			record = self._read(directory / f"cycle-{pointer:04d}.json")
			if record is not None:
				return record

		# Pointer missing or stale: scan, newest first
		candidates = []
		for path in directory.iterdir():
			match = CYCLE_FILE_PATTERN.match(path.name)
			if match:
				candidates.append((int(match.group(1)), path))
		for _, path in sorted(candidates, reverse=True):
			record = self._read(path)
			if record is not None:
				return record
		return None

	def _read(self, path: Path) -> Optional[HandoffRecord]:
		try:
			return HandoffRecord.model_validate_json(path.read_text(encoding="utf-8"))
		except FileNotFoundError:
			return None
		except (OSError, ValidationError) as e:
			logger.warning(f"Skipping unreadable handoff file {path.name}: {e}")
			return None

	def _read_pointer(self, path: Path) -> Optional[int]:
		try:
			data = json.loads(path.read_text(encoding="utf-8"))
			value = int(data["cycle_number"])
		except FileNotFoundError:
			return None
		except (OSError, ValueError, KeyError, TypeError) as e:
			logger.warning(f"Ignoring bad latest.json: {e}")
			return None
		return value if value >= 1 else None


class HandoffStore:
	"""Ordered set of handoff backends with a never-failing contract."""

	def __init__(self, backends: list, memory: Optional[MemoryStore] = None):
		self.backends = list(backends)
		self._memory = memory

	@property
	def memory(self) -> Optional[MemoryStore]:
		"""The memory store opened with this handoff store, if any."""
		return self._memory

	@property
	def backend_names(self) -> list[str]:
		return [b.name for b in self.backends]

	async def save(self, record: HandoffRecord) -> bool:
		"""Write the record to every backend; True if at least one succeeded."""
		saved = False
		for backend in self.backends:
			try:
				await backend.save(record)
				saved = True
				logger.info(f"Handoff for cycle {record.cycle_number} saved ({backend.name})")
			except Exception as e:
				logger.warning(f"Handoff save failed on {backend.name} backend: {e}")
		if not saved:
			logger.error(f"Handoff for cycle {record.cycle_number} was not saved")
		return saved

	async def load(self, session_id: str, cycle_number: Optional[int] = None) -> HandoffLoadResult:
		"""
		Load a handoff for a session.

		With no cycle_number the highest-numbered record across backends wins;
		on a tie the earlier backend wins.
		"""
		best: Optional[HandoffRecord] = None
		errors = []
		for backend in self.backends:
			try:
				record = await backend.load(session_id, cycle_number)
			except Exception as e:
				logger.warning(f"Handoff load failed on {backend.name} backend: {e}")
				errors.append(f"{backend.name}: {e}")
				continue
			if record is not None and (best is None or record.cycle_number > best.cycle_number):
				best = record

		if best is not None:
			return HandoffLoadResult(found=True, record=best)
		return HandoffLoadResult(found=False, error="; ".join(errors) or "no handoff found")

	async def close(self):
		if self._memory is not None:
			try:
				await self._memory.close()
			except Exception as e:
				logger.debug(f"Memory store close failed: {e}")
			self._memory = None


async def open_handoff_store(memory_db_path: Optional[Path], handoff_dir: Path) -> HandoffStore:
	"""Pick the backends that are usable right now; the file backend is always present."""
	backends: list = []
	memory: Optional[MemoryStore] = None
	if memory_db_path is not None:
		memory = MemoryStore(memory_db_path)
		try:
			await memory.init()
			backends.append(MemoryHandoffBackend(memory))
		except Exception as e:
			logger.warning(f"Memory store unavailable, using file handoffs only: {e}")
			memory = None
	backends.append(FileHandoffBackend(handoff_dir))
	return HandoffStore(backends, memory=memory)


def build_handoff(state: RunState, collected: Optional[JournalEntries] = None) -> HandoffRecord:
	"""
	Summarize the finished cycle.

	Journal entries read back from the memory store come first, followed by
	anything the run state holds that the store does not.
	"""
	accomplishments = list(state.accomplishments)
	blockers = list(state.blockers)
	learnings = list(state.key_learnings)
	if collected is not None:
		accomplishments = _merge(collected.accomplishments, accomplishments)
		blockers = _merge(collected.blockers, blockers)
		learnings = _merge(collected.key_learnings, learnings)

	next_actions = [f"Resolve: {blocker}" for blocker in blockers[-3:]]
	if state.last_summary:
		next_actions.append(f"Pick up from the last status: {state.last_summary}")
	next_actions.append("Continue working on the original objective")

	if state.strategy == Strategy.RECOVERY:
		learnings.append("The previous cycle ended in recovery; avoid repeating its last approach")

	return HandoffRecord(
		session_id=state.session_id,
		cycle_number=state.cycle_number,
		original_objective=state.task_text,
		accomplishments=accomplishments,
		blockers=blockers,
		next_actions=next_actions,
		key_learnings=learnings,
		context_pct_at_save=state.context_pct,
	)


def _bullets(items: list[str], empty: str) -> str:
	return "\n".join(f"- {item}" for item in items) if items else f"- {empty}"


def _numbered(items: list[str], empty: str) -> str:
	if not items:
		return f"1. {empty}"
	return "\n".join(f"{i}. {item}" for i, item in enumerate(items, 1))


def format_handoff_context(record: HandoffRecord, past_learnings: Optional[list[str]] = None) -> str:
	"""Continuation block injected into the next cycle's prompts."""
	text = (
		f"## CYCLE CONTINUATION (Cycle {record.cycle_number + 1})\n\n"
		"This is a CONTINUATION of a multi-cycle autonomous run.\n"
		f"Previous cycle ({record.cycle_number}) ended due to context limits.\n"
		"Your session data was preserved; continue seamlessly.\n\n"
		f"### YOUR MISSION (UNCHANGED)\n{record.original_objective}\n\n"
		f"### WHAT WAS ACCOMPLISHED (Previous Cycles)\n{_bullets(record.accomplishments, 'Work in progress')}\n\n"
		f"### CURRENT BLOCKERS TO ADDRESS\n{_bullets(record.blockers, 'None identified')}\n\n"
		f"### NEXT ACTIONS (Continue Here)\n"
		f"{_numbered(record.next_actions, 'Continue working on the original objective')}\n\n"
		f"### KEY LEARNINGS (Apply These!)\n{_bullets(record.key_learnings, 'None yet')}\n\n"
		"---\n"
		f"*Handoff from cycle {record.cycle_number} at {record.saved_at}*\n"
		f"*Previous context usage: {record.context_pct_at_save}%*"
	)
	if past_learnings:
		text += f"\n\n### FROM PAST RALPH SESSIONS\n{_bullets(past_learnings, '')}"
	return text


def format_handoff_note(record: HandoffRecord) -> str:
	"""Human-readable handoff stored next to the JSON record."""
	return (
		f"## Cycle {record.cycle_number} Handoff\n\n"
		f"### Original Objective\n{record.original_objective}\n\n"
		f"### Accomplishments (Cycle {record.cycle_number})\n"
		f"{_bullets(record.accomplishments, 'No accomplishments recorded')}\n\n"
		f"### Current Blockers\n{_bullets(record.blockers, 'None')}\n\n"
		f"### Next Actions (Priority Order)\n{_numbered(record.next_actions, 'Continue working on the task')}\n\n"
		f"### Key Learnings (Apply These!)\n{_bullets(record.key_learnings, 'None yet')}\n\n"
		"### Metadata\n"
		f"- Context at save: {record.context_pct_at_save}%\n"
		f"- Saved at: {record.saved_at}\n"
	)


def _merge(first: list[str], second: list[str]) -> list[str]:
	merged = list(first)
	for item in second:
		if item not in merged:
			merged.append(item)
	return merged


def _write_atomic(path: Path, content: str) -> None:
	tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
	tmp.write_text(content, encoding="utf-8")
	os.replace(tmp, path)
