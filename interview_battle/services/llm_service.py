from __future__ import annotations

from typing import Any, Dict, List, Optional
import json
import logging
import math
import re

import anyio
from groq import Groq
try:
    import google.generativeai as genai
except Exception:
    genai = None

from interview_battle.config import settings
from interview_battle.errors import OracleError


logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


BATTLE_QUESTIONS_PROMPT = (
	"You are an AI interview simulator. Generate **{count} technical interview questions** on the topic "
	"{topic} with {difficulty} difficulty.\n"
	"Guidelines:\n"
	"- Ensure questions match the requested difficulty.\n"
	"- No duplicate, irrelevant, or overly simple questions.\n"
	"- Questions should cover theoretical, practical and scenario-based angles.\n"
	"- Keep each question answerable in a few sentences.\n"
	"Return ONLY JSON in this shape:\n"
	"{{\"questions\": [\"Question 1\", \"Question 2\", \"...\"]}}"
)

SCORE_PROMPT = (
	"Evaluate the answer to the interview question and return only JSON with a score from 0 to 10.\n\n"
	"Question: {question}\n"
	"Answer: {answer}\n\n"
	"Judge correctness, clarity and depth. Reply exactly as:\n"
	"{{\"score\": <0-10>, \"message\": \"<one short line of feedback>\"}}"
)

RANKING_PROMPT = (
	"You are an expert evaluator. Rank the following answers by correctness, clarity, depth and relevance.\n\n"
	"Ranking rules:\n"
	"- One participant per question: pick the single best answer for each question.\n"
	"- A participant may appear more than once if they gave the best answer to several questions.\n"
	"- Return at most 3 results, each for a different question, best first.\n\n"
	"Return ONLY a JSON array:\n"
	"[{{\"participantId\": \"...\", \"question\": \"...\", \"answer\": \"...\"}}]\n\n"
	"Answers to rank:\n{answers}"
)


def _strip_fences(text: str) -> str:
	return _FENCE.sub("", text or "").strip()


def _first_json(text: str) -> Any:
	"""Parse the first JSON object or array found in a model reply."""
	cleaned = _strip_fences(text)
	try:
		return json.loads(cleaned)
	except ValueError:
		pass
	for opener, closer in (("{", "}"), ("[", "]")):
		start = cleaned.find(opener)
		end = cleaned.rfind(closer)
		if start != -1 and end > start:
			try:
				return json.loads(cleaned[start:end + 1])
			except ValueError:
				continue
	raise OracleError("Model reply was not valid JSON")


class LLMService:
	"""Question generation, answer scoring and answer ranking backed by Groq or Gemini.

	The configured provider is tried first; the other one is used as a
	fallback when it has a key. Blocking SDK calls run on a worker thread.
	"""

	def __init__(self) -> None:
		self._client: Groq | None = None

	def _ensure_client(self, provider: Optional[str] = None):
		provider = (provider or settings.llm_provider or "groq").lower()
		if provider == "groq":
			api_key = settings.groq_api_key
			if not api_key:
				self._client = None
				return None
			if self._client is None or not isinstance(self._client, Groq):
				self._client = Groq(api_key=api_key)
			return self._client
		elif provider == "gemini":
			if genai is None:
				return None
			api_key = settings.gemini_api_key
			if not api_key:
				return None
			# For gemini we return a configured module handle to keep usage simple
			genai.configure(api_key=api_key)
			return genai
		else:
			return None

	@property
	def enabled(self) -> bool:
		return bool(settings.groq_api_key) or bool(settings.gemini_api_key and genai is not None)

	def _providers(self) -> List[str]:
		primary = (settings.llm_provider or "groq").lower()
		secondary = "gemini" if primary == "groq" else "groq"
		return [primary, secondary]

	def _complete(self, prompt: str, max_tokens: int) -> str:
		last_error: Exception | None = None
		for provider in self._providers():
			client = self._ensure_client(provider)
			if client is None:
				continue
			try:
				if provider == "groq":
					resp = client.chat.completions.create(
						model=settings.groq_model,
						messages=[{"role": "user", "content": prompt}],
						temperature=settings.oracle_temperature,
						max_tokens=max_tokens,
					)
					text = resp.choices[0].message.content or ""
				else:
					gmodel = client.GenerativeModel(settings.gemini_model)
					resp = gmodel.generate_content(prompt)
					text = getattr(resp, "text", None) or (resp.candidates[0].content.parts[0].text if getattr(resp, "candidates", None) else "")
			except Exception as exc:
				logger.warning("%s request failed: %s", provider, exc)
				last_error = exc
				continue
			text = _strip_fences(text)
			if text:
				return text
		if last_error is not None:
			raise OracleError(f"LLM request failed: {last_error}")
		raise OracleError("No LLM provider configured")

	async def _ask(self, prompt: str, max_tokens: int) -> str:
		return await anyio.to_thread.run_sync(self._complete, prompt, max_tokens, abandon_on_cancel=True)

	async def generate_battle_questions(self, topic: str, difficulty: str) -> List[str]:
		count = settings.battle_question_count
		reply = await self._ask(BATTLE_QUESTIONS_PROMPT.format(count=count, topic=topic, difficulty=difficulty), 1000)
		try:
			data = _first_json(reply)
			questions = data.get("questions") if isinstance(data, dict) else data
		except OracleError:
			# Plain list reply, one question per line
			questions = reply.splitlines()
		if not isinstance(questions, list):
			raise OracleError("Model did not return a question list")
		return [str(q).strip() for q in questions if str(q).strip()]

	async def score_answer(self, question: str, answer: str) -> float:
		reply = await self._ask(SCORE_PROMPT.format(question=question, answer=answer), 300)
		data = _first_json(reply)
		if not isinstance(data, dict):
			raise OracleError("Score reply was not an object")
		try:
			score = float(data.get("score"))
		except (TypeError, ValueError):
			raise OracleError("Score reply had no numeric score")
		if not math.isfinite(score):
			raise OracleError("Score reply was not a finite number")
		return max(0.0, min(10.0, score))

	async def rank_answers(self, answers: List[Dict[str, str]]) -> List[Dict[str, str]]:
		listing = "\n".join(
			f"Participant: {a['participant_id']}, Q: {a['question']}, A: {a['answer']}" for a in answers
		)
		reply = await self._ask(RANKING_PROMPT.format(answers=listing), 4000)
		data = _first_json(reply)
		if not isinstance(data, list):
			raise OracleError("Ranking reply was not a list")
		ranked: List[Dict[str, str]] = []
		for item in data:
			if not isinstance(item, dict):
				continue
			ranked.append({
				"participant_id": str(item.get("participantId") or item.get("participant_id") or ""),
				"question": str(item.get("question") or ""),
				"answer": str(item.get("answer") or ""),
			})
		return ranked[:3]


llm_service = LLMService()
