from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
import asyncio
import copy
import json
import logging
from pathlib import Path

from interview_battle.errors import NotFound, StaleWrite


logger = logging.getLogger(__name__)

WAITING = "waiting"
ONGOING = "ongoing"
COMPLETED = "completed"
STATUSES = (WAITING, ONGOING, COMPLETED)


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


def _parse_dt(value) -> Optional[datetime]:
	if not isinstance(value, str):
		return None
	try:
		return datetime.fromisoformat(value)
	except ValueError:
		return None


@dataclass
class Participant:
	participant_id: str
	display_name: str
	score: float = 0.0
	avatar: str = ""


@dataclass
class Session:
	code: str
	owner_id: str
	topic: str
	difficulty: str
	max_participants: int
	questions: List[str]
	participants: List[Participant] = field(default_factory=list)
	current_index: int = 0
	status: str = WAITING
	ranked_answers: Optional[List[dict]] = None
	created_at: datetime = field(default_factory=utcnow)
	completed_at: Optional[datetime] = None
	version: int = 0

	def participant(self, participant_id: str) -> Optional[Participant]:
		for p in self.participants:
			if p.participant_id == participant_id:
				return p
		return None

	@property
	def is_full(self) -> bool:
		return len(self.participants) >= self.max_participants

	@property
	def finished(self) -> bool:
		return self.current_index >= len(self.questions)

	@property
	def current_question(self) -> Optional[str]:
		if self.finished:
			return None
		return self.questions[self.current_index]

	def roster(self) -> List[dict]:
		return [asdict(p) for p in self.participants]

	def expires_at(self, retention: timedelta) -> datetime:
		return (self.completed_at or self.created_at) + retention

	def to_dict(self) -> dict:
		data = asdict(self)
		data["created_at"] = self.created_at.isoformat()
		data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
		return data

	@classmethod
	def from_dict(cls, data: dict) -> "Session":
		return cls(
			code=data["code"],
			owner_id=data["owner_id"],
			topic=data.get("topic", ""),
			difficulty=data.get("difficulty", ""),
			max_participants=int(data.get("max_participants", 2)),
			questions=list(data.get("questions", [])),
			participants=[Participant(**p) for p in data.get("participants", [])],
			current_index=int(data.get("current_index", 0)),
			status=data.get("status", WAITING),
			ranked_answers=data.get("ranked_answers"),
			created_at=_parse_dt(data.get("created_at")) or utcnow(),
			completed_at=_parse_dt(data.get("completed_at")),
			version=int(data.get("version", 0)),
		)


class SessionStore:
	"""Versioned battle records with compare-and-set writes.

	Reads hand out copies, so a caller only changes the stored record through
	:meth:`save`, which fails with :class:`StaleWrite` if another writer got
	there first. Records expire ``retention`` after completion (or creation,
	for sessions that never finish).
	"""

	def __init__(self, retention_seconds: int = 86400, data_dir: Optional[str] = None) -> None:
		self._sessions: Dict[str, Session] = {}
		self._lock = asyncio.Lock()
		self._retention = timedelta(seconds=retention_seconds)
		self._data_dir = Path(data_dir) / "battles" if data_dir else None
		if self._data_dir is not None:
			self._data_dir.mkdir(parents=True, exist_ok=True)
			self._load_all()

	def _session_path(self, code: str) -> Path:
		return self._data_dir / f"{code}.json"

	def _load_all(self) -> None:
		for p in self._data_dir.glob("*.json"):
			try:
				with p.open("r", encoding="utf-8") as f:
					state = Session.from_dict(json.load(f))
			except (OSError, ValueError, KeyError, TypeError) as exc:
				logger.warning("Skipping unreadable battle file %s: %s", p.name, exc)
				continue
			self._sessions[state.code] = state

	def _save(self, state: Session) -> None:
		if self._data_dir is None:
			return
		path = self._session_path(state.code)
		try:
			with path.open("w", encoding="utf-8") as f:
				json.dump(state.to_dict(), f, ensure_ascii=False, indent=2)
		except OSError as exc:
			# Best-effort; memory stays authoritative
			logger.warning("Could not persist battle %s: %s", state.code, exc)

	def _unlink(self, code: str) -> None:
		if self._data_dir is None:
			return
		path = self._session_path(code)
		try:
			if path.exists():
				path.unlink()
		except OSError as exc:
			logger.warning("Could not remove battle file %s: %s", path.name, exc)

	def _expired(self, state: Session, now: datetime) -> bool:
		return state.expires_at(self._retention) <= now

	def _live(self, code: str, now: Optional[datetime] = None) -> Optional[Session]:
		state = self._sessions.get(code)
		if state is None:
			return None
		if self._expired(state, now or utcnow()):
			self._sessions.pop(code, None)
			self._unlink(code)
			logger.info("Battle %s expired", code)
			return None
		return state

	async def exists(self, code: str) -> bool:
		return self._live(code) is not None

	async def insert(self, state: Session) -> bool:
		"""Insert a new record. Returns False if the code is already taken."""
		async with self._lock:
			if self._live(state.code) is not None:
				return False
			stored = copy.deepcopy(state)
			stored.version = 1
			self._sessions[stored.code] = stored
			self._save(stored)
			state.version = stored.version
			return True

	async def get(self, code: str) -> Optional[Session]:
		state = self._live(code)
		return copy.deepcopy(state) if state is not None else None

	async def get_required(self, code: str) -> Session:
		state = await self.get(code)
		if state is None:
			raise NotFound("Battle not found")
		return state

	async def save(self, state: Session, expected_version: int) -> Session:
		"""Compare-and-set: persist ``state`` only if the stored version matches."""
		async with self._lock:
			current = self._live(state.code)
			if current is None:
				raise NotFound("Battle not found")
			if current.version != expected_version:
				raise StaleWrite(f"Battle {state.code} changed concurrently")
			stored = copy.deepcopy(state)
			stored.version = expected_version + 1
			self._sessions[stored.code] = stored
			self._save(stored)
			state.version = stored.version
			return copy.deepcopy(stored)

	async def purge_expired(self, now: Optional[datetime] = None) -> List[str]:
		now = now or utcnow()
		async with self._lock:
			expired = [code for code, s in self._sessions.items() if self._expired(s, now)]
			for code in expired:
				self._sessions.pop(code, None)
				self._unlink(code)
		if expired:
			logger.info("Purged %d expired battles", len(expired))
		return expired
