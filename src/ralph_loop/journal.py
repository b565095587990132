"""
Session journal - per-iteration progress, failures and learnings kept in the
memory store.

Every entry is a tagged memory record:
	["ralph", <kind>, <session_id>, "cycle-<n>"]

A cycle handoff is rebuilt from the current cycle's entries, and learnings
from other sessions on the same objective are recalled when a new cycle
starts.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .memory import MemoryRecord, MemoryStore
from .models import FAILURE, LEARNING, PROGRESS

logger = logging.getLogger(__name__)

# Per-kind limits when rebuilding a handoff
COLLECT_LIMITS = {PROGRESS: 20, FAILURE: 10, LEARNING: 10}
PAST_LEARNINGS_LIMIT = 3


@dataclass
class JournalEntries:
	"""Journal titles for one cycle, oldest first."""
	accomplishments: list[str] = field(default_factory=list)
	blockers: list[str] = field(default_factory=list)
	key_learnings: list[str] = field(default_factory=list)


class MemoryJournal:
	"""Writes and reads one session's journal records."""

	def __init__(self, store: MemoryStore, session_id: str, objective: str):
		self.store = store
		self.session_id = session_id
		self.objective = objective

	def _tags(self, kind: str, cycle_number: int) -> list[str]:
		return ["ralph", kind, self.session_id, f"cycle-{cycle_number}"]

	async def record(self, kind: str, title: str, cycle_number: int) -> str:
		"""Store one entry; the objective goes in the content so later runs can find it."""
		content = f"{title}\n\nObjective: {self.objective}"
		return await self.store.store(MemoryRecord(
			title=title,
			content=content,
			tags=self._tags(kind, cycle_number),
		))

	async def record_many(self, entries: list[tuple[str, str]], cycle_number: int) -> int:
		for kind, title in entries:
			await self.record(kind, title, cycle_number)
		return len(entries)

	async def collect(self, cycle_number: int) -> JournalEntries:
		"""Entries recorded for `cycle_number` of this session."""
		collected = {}
		for kind, limit in COLLECT_LIMITS.items():
			rows = await self.store.search("", tags=self._tags(kind, cycle_number), limit=limit)
			titles: list[str] = []
			for row in reversed(rows):
				if row.title and row.title not in titles:
					titles.append(row.title)
			collected[kind] = titles
		return JournalEntries(
			accomplishments=collected[PROGRESS],
			blockers=collected[FAILURE],
			key_learnings=collected[LEARNING],
		)

	async def past_learnings(self, objective: Optional[str] = None, limit: int = PAST_LEARNINGS_LIMIT) -> list[str]:
		"""Learnings other sessions recorded for the same objective, newest first."""
		query = (objective or self.objective).strip()
		if not query or limit <= 0:
			return []

		rows = await self.store.search(query, tags=["ralph", LEARNING], limit=limit * 10)
		learnings: list[str] = []
		for row in rows:
			if self.session_id in row.tags:
				continue
			if row.title and row.title not in learnings:
				learnings.append(row.title)
			if len(learnings) >= limit:
				break
		return learnings
