from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
import asyncio
import json
import logging
from pathlib import Path

from interview_battle.errors import Conflict
from interview_battle.services.session_store import utcnow


logger = logging.getLogger(__name__)

AnswerKey = Tuple[str, str, int]


@dataclass(frozen=True)
class AnswerRecord:
	code: str
	participant_id: str
	question_index: int
	answer_text: str
	score: float
	created_at: datetime = field(default_factory=utcnow)

	@property
	def key(self) -> AnswerKey:
		return (self.code, self.participant_id, self.question_index)

	def to_dict(self) -> dict:
		data = asdict(self)
		data["created_at"] = self.created_at.isoformat()
		return data


class AnswerLedger:
	"""Append-only answers keyed by (code, participant, question index).

	The uniqueness check and the insert happen under one lock, so two
	concurrent submissions for the same triple cannot both be recorded.
	Records expire independently of their battle.
	"""

	def __init__(self, retention_seconds: int = 3600, data_dir: Optional[str] = None) -> None:
		self._records: Dict[AnswerKey, AnswerRecord] = {}
		self._lock = asyncio.Lock()
		self._retention = timedelta(seconds=retention_seconds)
		self._data_dir = Path(data_dir) / "answers" if data_dir else None
		if self._data_dir is not None:
			self._data_dir.mkdir(parents=True, exist_ok=True)
			self._load_all()

	def _path(self, code: str) -> Path:
		return self._data_dir / f"{code}.jsonl"

	def _load_all(self) -> None:
		for p in self._data_dir.glob("*.jsonl"):
			try:
				with p.open("r", encoding="utf-8") as f:
					for line in f:
						if not line.strip():
							continue
						raw = json.loads(line)
						rec = AnswerRecord(
							code=raw["code"],
							participant_id=raw["participant_id"],
							question_index=int(raw["question_index"]),
							answer_text=raw.get("answer_text", ""),
							score=float(raw.get("score", 0.0)),
							created_at=datetime.fromisoformat(raw["created_at"]),
						)
						self._records.setdefault(rec.key, rec)
			except (OSError, ValueError, KeyError) as exc:
				logger.warning("Skipping unreadable answer file %s: %s", p.name, exc)

	def _append(self, rec: AnswerRecord) -> None:
		if self._data_dir is None:
			return
		try:
			with self._path(rec.code).open("a", encoding="utf-8") as f:
				f.write(json.dumps(rec.to_dict(), ensure_ascii=False) + "\n")
		except OSError as exc:
			logger.warning("Could not persist answer for %s: %s", rec.code, exc)

	def _rewrite(self, code: str) -> None:
		if self._data_dir is None:
			return
		remaining = [r for r in self._records.values() if r.code == code]
		path = self._path(code)
		try:
			if not remaining:
				if path.exists():
					path.unlink()
				return
			with path.open("w", encoding="utf-8") as f:
				for r in remaining:
					f.write(json.dumps(r.to_dict(), ensure_ascii=False) + "\n")
		except OSError as exc:
			logger.warning("Could not rewrite answer file for %s: %s", code, exc)

	def _is_live(self, rec: AnswerRecord, now: datetime) -> bool:
		return rec.created_at + self._retention > now

	async def record(self, code: str, participant_id: str, index: int, text: str, score: float) -> AnswerRecord:
		"""Insert if absent; raises :class:`Conflict` when the triple already exists."""
		key = (code, participant_id, index)
		async with self._lock:
			existing = self._records.get(key)
			if existing is not None and self._is_live(existing, utcnow()):
				raise Conflict("Already answered")
			rec = AnswerRecord(code=code, participant_id=participant_id, question_index=index, answer_text=text, score=score)
			self._records[key] = rec
			self._append(rec)
			return rec

	async def discard(self, code: str, participant_id: str, index: int) -> bool:
		"""Drop a record whose battle update could not be saved."""
		async with self._lock:
			removed = self._records.pop((code, participant_id, index), None) is not None
			if removed:
				self._rewrite(code)
			return removed

	async def exists(self, code: str, participant_id: str, index: int) -> bool:
		rec = self._records.get((code, participant_id, index))
		return rec is not None and self._is_live(rec, utcnow())

	async def count_for_round(self, code: str, index: int) -> int:
		# Taken under the lock so the count sees every insert that has returned.
		async with self._lock:
			now = utcnow()
			return sum(
				1 for r in self._records.values()
				if r.code == code and r.question_index == index and self._is_live(r, now)
			)

	async def list_for_session(self, code: str) -> List[AnswerRecord]:
		now = utcnow()
		items = [r for r in self._records.values() if r.code == code and self._is_live(r, now)]
		items.sort(key=lambda r: (r.question_index, r.created_at))
		return items

	async def total_for(self, code: str, participant_id: str) -> float:
		return sum(r.score for r in await self.list_for_session(code) if r.participant_id == participant_id)

	async def purge_expired(self, now: Optional[datetime] = None) -> int:
		now = now or utcnow()
		async with self._lock:
			expired = [k for k, r in self._records.items() if not self._is_live(r, now)]
			codes = {k[0] for k in expired}
			for k in expired:
				self._records.pop(k, None)
			for code in codes:
				self._rewrite(code)
		if expired:
			logger.info("Purged %d expired answers", len(expired))
		return len(expired)
