from __future__ import annotations

import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import asyncio


logger = logging.getLogger(__name__)


class JsonlAuditor:
	"""Appends battle lifecycle records (created, joined, answered, ...) to a JSONL file.

	Does nothing until a path is configured.
	"""

	def __init__(self, path: Optional[str] = None) -> None:
		self._path = Path(path) if path else None
		self._lock = asyncio.Lock()

	def configure(self, path: Optional[str]) -> None:
		self._path = Path(path) if path else None

	@property
	def enabled(self) -> bool:
		return self._path is not None

	async def log(self, record: Dict[str, Any]) -> None:
		if not self._path:
			return
		line = json.dumps({"ts": datetime.now(timezone.utc).isoformat(), **record}, ensure_ascii=False, default=str)
		async with self._lock:
			try:
				self._path.parent.mkdir(parents=True, exist_ok=True)
				with self._path.open("a", encoding="utf-8") as f:
					f.write(line + "\n")
			except OSError as exc:
				# Audit trail is advisory; never fail a battle operation over it
				logger.warning("Audit write to %s failed: %s", self._path, exc)


auditor = JsonlAuditor()
