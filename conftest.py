from typing import Dict, List, Optional

import anyio
import pytest

from interview_battle.errors import OracleError
from interview_battle.services.answer_ledger import AnswerLedger
from interview_battle.services.broadcaster import PresenceBroadcaster
from interview_battle.services.coordinator import BattleCoordinator
from interview_battle.services.session_store import SessionStore


QUESTIONS = [
	"What is an array?",
	"How do you reverse an array in place?",
	"Explain two pointers on sorted arrays.",
	"What is the cost of inserting at the front of an array?",
	"How would you find a duplicate in an array?",
]


class FakeOracle:
	"""Deterministic stand-in for the LLM service."""

	def __init__(self, questions: Optional[List[str]] = None, score: float = 7.0) -> None:
		self.questions = list(QUESTIONS if questions is None else questions)
		self.score = score
		self.scores: Dict[str, float] = {}
		self.score_delay = 0.0
		self.fail_questions = False
		self.fail_scoring = False
		self.fail_ranking = False
		self.ranking: Optional[List[Dict[str, str]]] = None
		self.question_calls = 0
		self.score_calls = 0
		self.rank_calls = 0
		self.ranked_input: List[Dict[str, str]] = []

	async def generate_battle_questions(self, topic: str, difficulty: str) -> List[str]:
		self.question_calls += 1
		if self.fail_questions:
			raise OracleError("generator down")
		return list(self.questions)

	async def score_answer(self, question: str, answer: str) -> float:
		self.score_calls += 1
		if self.score_delay:
			await anyio.sleep(self.score_delay)
		if self.fail_scoring:
			raise OracleError("scorer down")
		return self.scores.get(answer, self.score)

	async def rank_answers(self, answers: List[Dict[str, str]]) -> List[Dict[str, str]]:
		self.rank_calls += 1
		self.ranked_input = list(answers)
		if self.fail_ranking:
			raise OracleError("ranker down")
		if self.ranking is not None:
			return list(self.ranking)
		return [dict(a) for a in answers][:3]


class RecordingBroadcaster(PresenceBroadcaster):
	def __init__(self, **kwargs) -> None:
		super().__init__(**kwargs)
		self.published: List[tuple] = []

	async def publish(self, channel, event, payload, exclude=None):
		self.published.append((channel, event, payload))
		return await super().publish(channel, event, payload, exclude=exclude)

	def names(self, event: Optional[str] = None) -> List[str]:
		return [e for _, e, _ in self.published if event is None or e == event]


@pytest.fixture
def anyio_backend():
	return "asyncio"


@pytest.fixture
def oracle():
	return FakeOracle()


@pytest.fixture
def broadcaster():
	return RecordingBroadcaster()


@pytest.fixture
def store():
	return SessionStore(retention_seconds=86400)


@pytest.fixture
def ledger():
	return AnswerLedger(retention_seconds=3600)


@pytest.fixture
def coordinator(store, ledger, oracle, broadcaster):
	return BattleCoordinator(store, ledger, oracle, broadcaster, oracle_timeout=0.5, broadcast_timeout=0.5)
