"""
Memory store - small SQLite-backed record store with tag search.

Usage:
	store = MemoryStore(config.memory_db_path)
	await store.init()

	await store.store(MemoryRecord(content="...", tags=["ralph"]))
	records = await store.search("", tags=["ralph"])
"""

import json
import logging
import uuid
from pathlib import Path
from typing import Optional

import aiosqlite
from pydantic import BaseModel, Field

from .models import utc_now

logger = logging.getLogger(__name__)


class MemoryRecord(BaseModel):
	"""One stored memory entry."""
	id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
	title: str = ""
	content: str
	tags: list[str] = Field(default_factory=list)
	created_at: str = Field(default_factory=utc_now)


class MemoryStore:
	"""SQLite-backed memory records."""

	def __init__(self, db_path: Path):
		self.db_path = Path(db_path)
		self._db: Optional[aiosqlite.Connection] = None

	async def init(self):
		"""Open the database and create the schema."""
		self.db_path.parent.mkdir(parents=True, exist_ok=True)
		self._db = await aiosqlite.connect(str(self.db_path))
		self._db.row_factory = aiosqlite.Row

		await self._db.execute("""
			CREATE TABLE IF NOT EXISTS memories (
				seq INTEGER PRIMARY KEY AUTOINCREMENT,
				id TEXT UNIQUE NOT NULL,
				title TEXT NOT NULL DEFAULT '',
				content TEXT NOT NULL,
				tags TEXT NOT NULL,
				created_at TEXT NOT NULL
			)
		""")
		await self._db.commit()
		logger.debug(f"Memory store initialized: {self.db_path}")

	async def close(self):
		if self._db:
			await self._db.close()
			self._db = None

	async def store(self, record: MemoryRecord) -> str:
		"""Insert a record and return its id."""
		if not self._db:
			await self.init()

		await self._db.execute(
			"INSERT INTO memories (id, title, content, tags, created_at) VALUES (?, ?, ?, ?, ?)",
			(record.id, record.title, record.content, json.dumps(record.tags), record.created_at),
		)
		await self._db.commit()
		return record.id

	async def search(
		self,
		query: str = "",
		tags: Optional[list[str]] = None,
		limit: int = 50,
	) -> list[MemoryRecord]:
		"""
		Find records tagged with every tag in `tags` whose title or content contains `query`.

		Results are newest first.
		"""
		if not self._db:
			await self.init()

		wanted = set(tags or [])
		sql = "SELECT id, title, content, tags, created_at FROM memories"
		params: list = []
		if query:
			sql += " WHERE (title LIKE ? COLLATE NOCASE OR content LIKE ? COLLATE NOCASE)"
			params.extend([f"%{query}%", f"%{query}%"])
		sql += " ORDER BY seq DESC"

		results = []
		async with self._db.execute(sql, params) as cursor:
			async for row in cursor:
				try:
					row_tags = json.loads(row["tags"])
				except json.JSONDecodeError:
					continue
				if not wanted.issubset(row_tags):
					continue
				results.append(MemoryRecord(
					id=row["id"],
					title=row["title"],
					content=row["content"],
					tags=row_tags,
					created_at=row["created_at"],
				))
				if len(results) >= limit:
					break
		return results
