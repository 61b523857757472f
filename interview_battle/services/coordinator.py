from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar
import asyncio
import logging
import secrets

import anyio

from interview_battle.config import Settings
from interview_battle.errors import BattleError, Conflict, InvalidState, NotFound, OracleError, StaleWrite, TransportError, ValidationError
from interview_battle.services.answer_ledger import AnswerLedger
from interview_battle.services.broadcaster import Broadcaster, battle_channel
from interview_battle.services.session_store import COMPLETED, ONGOING, WAITING, Participant, Session, SessionStore, utcnow
from interview_battle.utils.audit import JsonlAuditor


logger = logging.getLogger(__name__)

T = TypeVar("T")

DIFFICULTIES = ("easy", "medium", "hard")
MIN_TOPIC_LENGTH = 3
MAX_RANKED = 3

# Event names published on a battle's channel
PLAYER_JOINED = "player-joined"
BATTLE_STARTED = "battle-started"
SCORE_UPDATED = "score-updated"
NEXT_QUESTION = "next-question"
BATTLE_COMPLETED = "battle-completed"
TYPING_EVENT = "typing-event"


def new_battle_code() -> str:
	return secrets.token_hex(6).upper()


@dataclass
class SubmitResult:
	current_index: int
	status: str
	score: float
	advanced: bool
	completed: bool


def _required(value: Optional[str], name: str) -> str:
	value = (value or "").strip()
	if not value:
		raise ValidationError(f"Missing {name}")
	return value


class BattleCoordinator:
	"""State machine for multiplayer battles.

	Every mutation of a battle runs under that battle's lock and is saved with
	the store's compare-and-set, retried on a stale write. Events are
	published while the lock is held, so a channel sees them in commit order.
	"""

	def __init__(
		self,
		store: SessionStore,
		ledger: AnswerLedger,
		oracle,
		broadcaster: Broadcaster,
		*,
		auditor: Optional[JsonlAuditor] = None,
		question_count: int = 5,
		max_participants_limit: int = 10,
		code_attempts: int = 20,
		mutation_retries: int = 5,
		fallback_score: float = 0.0,
		oracle_timeout: float = 15.0,
		question_timeout: float = 30.0,
		ranking_timeout: float = 45.0,
		broadcast_timeout: float = 2.0,
		code_factory: Callable[[], str] = new_battle_code,
	) -> None:
		self._store = store
		self._ledger = ledger
		self._oracle = oracle
		self._broadcaster = broadcaster
		self._auditor = auditor
		self._question_count = question_count
		self._max_participants_limit = max_participants_limit
		self._code_attempts = code_attempts
		self._mutation_retries = mutation_retries
		self._fallback_score = fallback_score
		self._oracle_timeout = oracle_timeout
		self._question_timeout = question_timeout
		self._ranking_timeout = ranking_timeout
		self._broadcast_timeout = broadcast_timeout
		self._code_factory = code_factory
		self._locks: Dict[str, asyncio.Lock] = {}

	@classmethod
	def from_settings(cls, settings: Settings, store: SessionStore, ledger: AnswerLedger, oracle, broadcaster: Broadcaster, auditor: Optional[JsonlAuditor] = None) -> "BattleCoordinator":
		return cls(
			store,
			ledger,
			oracle,
			broadcaster,
			auditor=auditor,
			question_count=settings.battle_question_count,
			max_participants_limit=settings.max_participants_limit,
			code_attempts=settings.code_attempts,
			mutation_retries=settings.mutation_retries,
			fallback_score=settings.fallback_score,
			oracle_timeout=settings.oracle_timeout_seconds,
			question_timeout=settings.question_timeout_seconds,
			ranking_timeout=settings.ranking_timeout_seconds,
			broadcast_timeout=settings.broadcast_timeout_seconds,
		)

	# ── plumbing ─────────────────────────────────────────────────────────────

	def _lock_for(self, code: str) -> asyncio.Lock:
		return self._locks.setdefault(code, asyncio.Lock())

	async def _mutate(self, code: str, change: Callable[[Session], Awaitable[T]]) -> Tuple[Session, T]:
		"""Apply ``change`` to a fresh copy of the battle and compare-and-set it."""
		for attempt in range(1, self._mutation_retries + 1):
			state = await self._store.get_required(code)
			expected = state.version
			result = await change(state)
			try:
				saved = await self._store.save(state, expected)
			except StaleWrite:
				logger.info("[%s] stale write on attempt %d, retrying", code, attempt)
				continue
			return saved, result
		raise Conflict("Battle is busy, please retry")

	async def _publish(self, code: str, event: str, payload: Dict[str, Any]) -> None:
		channel = battle_channel(code)
		try:
			with anyio.fail_after(self._broadcast_timeout):
				await self._broadcaster.publish(channel, event, payload)
		except (TransportError, TimeoutError, OSError) as exc:
			# The committed state stands; clients catch up by polling.
			logger.warning("[%s] publish %s failed: %s", channel, event, exc)

	async def _audit(self, record: Dict[str, Any]) -> None:
		if self._auditor is not None:
			await self._auditor.log(record)

	async def _require_session(self, code: str) -> str:
		code = _required(code, "battle code").upper()
		if not await self._store.exists(code):
			raise NotFound("Battle not found")
		return code

	# ── create ───────────────────────────────────────────────────────────────

	async def _free_code(self) -> str:
		for _ in range(self._code_attempts):
			code = self._code_factory()
			if not await self._store.exists(code):
				return code
		raise Conflict("Could not allocate a battle code")

	async def _generate_questions(self, topic: str, difficulty: str) -> List[str]:
		try:
			with anyio.fail_after(self._question_timeout):
				raw = await self._oracle.generate_battle_questions(topic, difficulty)
		except OracleError:
			raise
		except TimeoutError:
			raise OracleError("Question generation timed out")
		except Exception as exc:
			raise OracleError(f"Question generation failed: {exc}")
		questions = [str(q).strip() for q in (raw or []) if str(q).strip()]
		if not questions:
			raise OracleError("No questions generated")
		return questions[: self._question_count]

	async def create_session(self, topic: str, difficulty: str, max_participants: int, owner_id: str, display_name: str, avatar: str = "") -> str:
		topic = _required(topic, "topic")
		difficulty = _required(difficulty, "difficulty").lower()
		owner_id = _required(owner_id, "owner id")
		display_name = _required(display_name, "display name")
		if len(topic) < MIN_TOPIC_LENGTH:
			raise ValidationError(f"Topic must be at least {MIN_TOPIC_LENGTH} characters long")
		if difficulty not in DIFFICULTIES:
			raise ValidationError(f"Difficulty must be one of: {', '.join(DIFFICULTIES)}")
		if not isinstance(max_participants, int) or isinstance(max_participants, bool):
			raise ValidationError("Max participants must be a whole number")
		if not 2 <= max_participants <= self._max_participants_limit:
			raise ValidationError(f"Max participants must be between 2 and {self._max_participants_limit}")

		code = await self._free_code()
		questions = await self._generate_questions(topic, difficulty)
		state = Session(
			code=code,
			owner_id=owner_id,
			topic=topic,
			difficulty=difficulty,
			max_participants=max_participants,
			questions=questions,
			participants=[Participant(participant_id=owner_id, display_name=display_name, avatar=avatar or "")],
		)
		# Another creator may have taken the code while the questions were generated.
		for _ in range(self._code_attempts):
			if await self._store.insert(state):
				break
			state.code = await self._free_code()
		else:
			raise Conflict("Could not allocate a battle code")

		logger.info("[%s] battle created by %s (%s/%s, %d players)", state.code, owner_id, topic, difficulty, max_participants)
		await self._audit({"type": "battle_created", "code": state.code, "owner_id": owner_id, "topic": topic, "difficulty": difficulty})
		return state.code

	# ── join ─────────────────────────────────────────────────────────────────

	async def join_session(self, code: str, participant_id: str, display_name: str, avatar: str = "") -> List[dict]:
		participant_id = _required(participant_id, "participant id")
		display_name = _required(display_name, "display name")
		code = await self._require_session(code)

		async def change(state: Session) -> bool:
			if state.owner_id == participant_id:
				raise Conflict("Creator cannot join")
			if state.participant(participant_id) is not None:
				raise Conflict("Already joined")
			if state.is_full or state.status != WAITING:
				raise Conflict("Roster full")
			state.participants.append(Participant(participant_id=participant_id, display_name=display_name, avatar=avatar or ""))
			if len(state.participants) == state.max_participants:
				state.status = ONGOING
				return True
			return False

		async with self._lock_for(code):
			saved, started = await self._mutate(code, change)
			await self._publish(code, PLAYER_JOINED, {"participants": saved.roster(), "version": saved.version})
			if started:
				await self._publish(code, BATTLE_STARTED, {
					"code": code,
					"status": saved.status,
					"current_index": saved.current_index,
					"question": saved.current_question,
					"version": saved.version,
				})

		await self._audit({"type": "battle_joined", "code": code, "participant_id": participant_id})
		if started:
			logger.info("[%s] roster full, battle started", code)
			await self._audit({"type": "battle_started", "code": code})
		return saved.roster()

	# ── answer ───────────────────────────────────────────────────────────────

	async def _score(self, code: str, question: str, answer: str) -> float:
		try:
			with anyio.fail_after(self._oracle_timeout):
				return float(await self._oracle.score_answer(question, answer))
		except TimeoutError:
			logger.warning("[%s] scoring timed out; using %s", code, self._fallback_score)
		except Exception as exc:
			logger.warning("[%s] scoring failed (%s); using %s", code, exc, self._fallback_score)
		return self._fallback_score

	async def submit_answer(self, code: str, participant_id: str, answer_text: str) -> SubmitResult:
		participant_id = _required(participant_id, "participant id")
		text = _required(answer_text, "answer")
		code = _required(code, "battle code").upper()

		state = await self._store.get_required(code)
		if state.participant(participant_id) is None:
			raise NotFound("Participant is not in this battle")
		if state.status != ONGOING:
			raise InvalidState(f"Battle is {state.status}")
		index = state.current_index
		if index >= len(state.questions):
			raise NotFound("Round not found")
		if await self._ledger.exists(code, participant_id, index):
			raise Conflict("Already answered")

		# Scoring is slow; keep it outside the lock so other rounds' work is not held up.
		score = await self._score(code, state.questions[index], text)

		async with self._lock_for(code):
			recorded: Dict[str, bool] = {}

			async def change(s: Session) -> Tuple[bool, bool]:
				if not recorded:
					if s.status != ONGOING:
						raise InvalidState(f"Battle is {s.status}")
					if s.current_index != index:
						raise Conflict("Round already closed")
					await self._ledger.record(code, participant_id, index, text, score)
					recorded["done"] = True
				# Once in the ledger the score is owed, even if another writer closed the round.
				s.participant(participant_id).score += score
				if s.status != ONGOING or s.current_index != index:
					return False, False
				answered = await self._ledger.count_for_round(code, index)
				if answered < len(s.participants):
					return False, False
				if s.current_index + 1 >= len(s.questions):
					s.current_index = len(s.questions)
					s.status = COMPLETED
					s.completed_at = utcnow()
					return False, True
				s.current_index += 1
				return True, False

			try:
				saved, (advanced, completed) = await self._mutate(code, change)
			except BattleError:
				if recorded:
					# The score never reached the battle, so the answer must not stay either.
					await self._ledger.discard(code, participant_id, index)
				raise

			await self._publish(code, SCORE_UPDATED, {
				"participants": saved.roster(),
				"current_index": saved.current_index,
				"version": saved.version,
			})
			if advanced:
				await self._publish(code, NEXT_QUESTION, {
					"current_index": saved.current_index,
					"question": saved.current_question,
					"status": saved.status,
					"version": saved.version,
				})
			elif completed:
				await self._publish(code, BATTLE_COMPLETED, {
					"status": saved.status,
					"current_index": saved.current_index,
					"version": saved.version,
				})

		await self._audit({"type": "battle_answer", "code": code, "participant_id": participant_id, "index": index, "score": score})
		if advanced:
			logger.info("[%s] round %d complete, advancing to %d", code, index, saved.current_index)
		elif completed:
			logger.info("[%s] final round complete, battle completed", code)
			await self._audit({"type": "battle_completed", "code": code})
		return SubmitResult(current_index=saved.current_index, status=saved.status, score=score, advanced=advanced, completed=completed)

	# ── reads ────────────────────────────────────────────────────────────────

	async def get_current_question(self, code: str) -> Dict[str, Any]:
		state = await self._store.get_required(_required(code, "battle code").upper())
		return {
			"question": state.current_question,
			"index": state.current_index,
			"status": state.status,
			"participants": state.roster(),
			"finished": state.finished,
			"version": state.version,
		}

	async def has_answered(self, code: str, participant_id: str) -> bool:
		participant_id = _required(participant_id, "participant id")
		state = await self._store.get_required(_required(code, "battle code").upper())
		return await self._ledger.exists(state.code, participant_id, state.current_index)

	async def get_lobby(self, code: str) -> Dict[str, Any]:
		state = await self._store.get_required(_required(code, "battle code").upper())
		return {
			"participants": state.roster(),
			"max_participants": state.max_participants,
			"status": state.status,
			"topic": state.topic,
			"difficulty": state.difficulty,
			"version": state.version,
		}

	# ── summary ──────────────────────────────────────────────────────────────

	def _select_rankings(self, state: Session, ranked: List[Dict[str, str]]) -> List[Dict[str, str]]:
		names = {p.participant_id: p.display_name for p in state.participants}
		seen: set = set()
		selected: List[Dict[str, str]] = []
		for item in ranked or []:
			question = (item.get("question") or "").strip()
			if not question or question in seen:
				continue
			seen.add(question)
			participant_id = item.get("participant_id") or ""
			selected.append({
				"participant_id": participant_id,
				"display_name": names.get(participant_id, "Unknown"),
				"question": question,
				"answer": item.get("answer") or "",
			})
			if len(selected) == MAX_RANKED:
				break
		return selected

	async def get_ranked_summary(self, code: str) -> Dict[str, Any]:
		state = await self._store.get_required(_required(code, "battle code").upper())
		summary = {"ready": False, "rankings": [], "participants": state.roster(), "status": state.status}
		if state.status != COMPLETED:
			return summary
		summary["ready"] = True
		if state.ranked_answers is not None:
			summary["rankings"] = state.ranked_answers
			return summary

		records = await self._ledger.list_for_session(state.code)
		if not records:
			logger.info("[%s] no answers left to rank", state.code)
			return summary
		records.sort(key=lambda r: (r.participant_id, r.question_index))
		answers = [
			{"participant_id": r.participant_id, "question": state.questions[r.question_index], "answer": r.answer_text}
			for r in records
			if r.question_index < len(state.questions)
		]
		try:
			with anyio.fail_after(self._ranking_timeout):
				ranked = await self._oracle.rank_answers(answers)
		except TimeoutError:
			logger.warning("[%s] ranking timed out", state.code)
			return summary
		except Exception as exc:
			logger.warning("[%s] ranking failed: %s", state.code, exc)
			return summary
		rankings = self._select_rankings(state, ranked)
		if not rankings:
			logger.info("[%s] ranking returned nothing usable", state.code)
			return summary

		async with self._lock_for(state.code):
			current = await self._store.get_required(state.code)
			if current.ranked_answers is not None:
				# Someone else cached first; theirs stands.
				summary["rankings"] = current.ranked_answers
				return summary

			async def change(s: Session) -> None:
				s.ranked_answers = rankings

			saved, _ = await self._mutate(state.code, change)

		await self._audit({"type": "battle_ranked", "code": state.code, "count": len(rankings)})
		summary["rankings"] = saved.ranked_answers
		summary["participants"] = saved.roster()
		return summary

	# ── typing & housekeeping ────────────────────────────────────────────────

	async def send_typing(self, code: str, participant_id: str, typing: bool) -> None:
		participant_id = _required(participant_id, "participant id")
		code = await self._require_session(code)
		await self._publish(code, TYPING_EVENT, {"participant_id": participant_id, "typing": bool(typing)})

	async def purge_expired(self) -> List[str]:
		expired = await self._store.purge_expired()
		await self._ledger.purge_expired()
		for code in expired:
			lock = self._locks.get(code)
			if lock is not None and not lock.locked():
				self._locks.pop(code, None)
		return expired
