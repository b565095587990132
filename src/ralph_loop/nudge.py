"""
Nudge queue - single-slot mailbox for instructions sent to a running loop.

A nudge is written by another process (`ralph-loop nudge "..."`) and picked
up by the next prompt build. Both sides only use atomic renames, so a push
racing a consume is either fully consumed or left in place for the next one.
"""

import logging
import os
import uuid
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class NudgeQueue:
	"""Single pending instruction stored at a fixed path."""

	def __init__(self, path: Path):
		self.path = Path(path)

	def push(self, text: str) -> None:
		"""Replace any pending nudge with `text`."""
		self.path.parent.mkdir(parents=True, exist_ok=True)
		tmp = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex[:8]}.tmp")
		tmp.write_text(text, encoding="utf-8")
		os.replace(tmp, self.path)
		logger.info(f"Nudge queued ({len(text)} chars)")

	def pending(self) -> bool:
		return self.path.exists()

	def consume(self) -> Optional[str]:
		"""
		Claim and return the pending nudge, or None.

		The slot is claimed by renaming it to a unique name first; a push that
		lands after the rename creates a new slot file and is kept.
		"""
		claimed = self.path.with_name(f"{self.path.stem}.consumed-{uuid.uuid4().hex[:8]}{self.path.suffix}")
		try:
			os.rename(self.path, claimed)
		except FileNotFoundError:
			return None
		except OSError as e:
			logger.warning(f"Could not claim nudge file: {e}")
			return None

		try:
			text = claimed.read_text(encoding="utf-8")
		except OSError as e:
			logger.warning(f"Could not read claimed nudge: {e}")
			text = ""
		finally:
			claimed.unlink(missing_ok=True)

		text = text.strip()
		if not text:
			return None
		logger.info(f"Nudge consumed ({len(text)} chars)")
		return text
