from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Set
import time

from interview_battle.config import Settings
from interview_battle.services.broadcaster import MEMBER_ADDED, MEMBER_REMOVED, SUBSCRIPTION_SUCCEEDED
from interview_battle.services.coordinator import (
	BATTLE_COMPLETED,
	BATTLE_STARTED,
	NEXT_QUESTION,
	PLAYER_JOINED,
	SCORE_UPDATED,
	TYPING_EVENT,
)
from interview_battle.services.session_store import COMPLETED, ONGOING, WAITING


_STATUS_RANK = {WAITING: 0, ONGOING: 1, COMPLETED: 2}


class ClientSessionView:
	"""One participant's reconciled picture of a battle.

	Three inputs feed it, strongest first: the reply to the participant's own
	action, broadcast events, and polled snapshots (mount or reconnect).
	Every input is idempotent: re-applying it leaves the view unchanged, and
	anything older than what the view already shows is ignored.
	"""

	def __init__(self, participant_id: str) -> None:
		self.participant_id = participant_id
		self.question: Optional[str] = None
		self.index = 0
		self.status = WAITING
		self.participants: List[Dict[str, Any]] = []
		self.online: Set[str] = set()
		self.version = 0
		self.initialized = False
		self._roster_version = 0
		self._answered_index: Optional[int] = None

	@property
	def has_answered(self) -> bool:
		return self._answered_index == self.index

	@property
	def typing(self) -> Dict[str, bool]:
		return {p["participant_id"]: bool(p.get("is_typing")) for p in self.participants}

	def state(self) -> Dict[str, Any]:
		return {
			"question": self.question,
			"index": self.index,
			"status": self.status,
			"participants": [dict(p) for p in self.participants],
			"online": sorted(self.online),
			"has_answered": self.has_answered,
		}

	# ── helpers ──────────────────────────────────────────────────────────────

	def _seen(self, version: Optional[int]) -> None:
		if version is not None and version > self.version:
			self.version = version

	def _set_status(self, status: Optional[str]) -> bool:
		if status not in _STATUS_RANK:
			return False
		if _STATUS_RANK[status] <= _STATUS_RANK[self.status]:
			return False
		self.status = status
		return True

	def _set_round(self, index: Optional[int], question: Optional[str]) -> bool:
		if index is None or index < self.index:
			return False
		if index == self.index and (question is None or question == self.question):
			return False
		self.index = index
		self.question = question
		return True

	def _replace_roster(self, roster: List[Dict[str, Any]], version: Optional[int]) -> bool:
		if version is not None and version < self._roster_version:
			return False
		typing = self.typing
		updated = []
		for p in roster:
			entry = dict(p)
			entry["display_name"] = entry.get("display_name") or "Unknown"
			entry["is_typing"] = typing.get(entry["participant_id"], False)
			updated.append(entry)
		if version is not None:
			self._roster_version = version
		if updated == self.participants:
			return False
		self.participants = updated
		return True

	# ── own action ───────────────────────────────────────────────────────────

	def confirm_own_answer(self, index: int) -> None:
		"""The server accepted this participant's answer for ``index``."""
		if index >= self.index:
			self._answered_index = index

	# ── polling ──────────────────────────────────────────────────────────────

	def apply_snapshot(self, snapshot: Dict[str, Any], has_answered: Optional[bool] = None) -> bool:
		version = snapshot.get("version")
		if self.initialized and version is not None and version < self.version:
			return False
		before = self.state()
		self.initialized = True
		self._seen(version)
		index = snapshot.get("index", snapshot.get("current_index"))
		self._set_round(index, snapshot.get("question"))
		self._set_status(snapshot.get("status"))
		if snapshot.get("finished"):
			self._set_status(COMPLETED)
		if "participants" in snapshot:
			self._replace_roster(snapshot["participants"], version)
		# A polled "not answered" never overrides our own confirmation.
		if has_answered:
			self._answered_index = self.index
		return self.state() != before

	# ── broadcasts ───────────────────────────────────────────────────────────

	def apply_event(self, event: str, payload: Dict[str, Any]) -> bool:
		before = self.state()
		version = payload.get("version")

		if event in (PLAYER_JOINED, SCORE_UPDATED):
			self._replace_roster(payload.get("participants", []), version)
		elif event == BATTLE_STARTED:
			self._set_status(payload.get("status") or ONGOING)
			if payload.get("question") is not None:
				self._set_round(payload.get("current_index", 0), payload.get("question"))
		elif event == NEXT_QUESTION:
			self._set_round(payload.get("current_index"), payload.get("question"))
			self._set_status(payload.get("status"))
		elif event == BATTLE_COMPLETED:
			self._set_status(COMPLETED)
			index = payload.get("current_index")
			if index is not None and index > self.index:
				self.index = index
				self.question = None
		elif event == TYPING_EVENT:
			peer = payload.get("participant_id")
			if peer and peer != self.participant_id:
				for p in self.participants:
					if p["participant_id"] == peer:
						p["is_typing"] = bool(payload.get("typing"))
		elif event == SUBSCRIPTION_SUCCEEDED:
			members = payload.get("members", [])
			self.online = {m["id"] for m in members}
			names = {m["id"]: (m.get("info") or {}).get("name") for m in members}
			for p in self.participants:
				if names.get(p["participant_id"]):
					p["display_name"] = names[p["participant_id"]]
		elif event == MEMBER_ADDED:
			member_id = payload.get("id")
			if member_id:
				self.online.add(member_id)
				if not any(p["participant_id"] == member_id for p in self.participants):
					name = (payload.get("info") or {}).get("name") or "Unknown"
					self.participants.append({"participant_id": member_id, "display_name": name, "score": 0.0, "avatar": "", "is_typing": False})
		elif event == MEMBER_REMOVED:
			member_id = payload.get("id")
			self.online.discard(member_id)
			# Scores stay on the board; the peer just is not typing any more.
			for p in self.participants:
				if p["participant_id"] == member_id:
					p["is_typing"] = False

		self._seen(version)
		return self.state() != before


class TypingDebouncer:
	"""Rate-limits a participant's typing hints.

	``keystroke`` says when to send "typing" (at most once per ``interval``);
	``poll`` says when to send "stopped typing" after ``idle_timeout`` of quiet.
	"""

	def __init__(self, interval: float = 1.0, idle_timeout: float = 2.0, clock: Callable[[], float] = time.monotonic) -> None:
		self._interval = interval
		self._idle_timeout = idle_timeout
		self._clock = clock
		self._typing = False
		self._last_emit: Optional[float] = None
		self._last_key: Optional[float] = None

	@classmethod
	def from_settings(cls, settings: Settings, clock: Callable[[], float] = time.monotonic) -> "TypingDebouncer":
		return cls(interval=settings.typing_interval_seconds, idle_timeout=settings.typing_idle_seconds, clock=clock)

	@property
	def typing(self) -> bool:
		return self._typing

	def keystroke(self, now: Optional[float] = None) -> bool:
		now = self._clock() if now is None else now
		self._last_key = now
		if self._typing and self._last_emit is not None and now - self._last_emit < self._interval:
			return False
		self._typing = True
		self._last_emit = now
		return True

	def poll(self, now: Optional[float] = None) -> bool:
		now = self._clock() if now is None else now
		if self._typing and self._last_key is not None and now - self._last_key >= self._idle_timeout:
			self._typing = False
			return True
		return False

	def stop(self) -> bool:
		if not self._typing:
			return False
		self._typing = False
		return True
