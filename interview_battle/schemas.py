from pydantic import BaseModel, Field
from typing import List, Optional


class ParticipantOut(BaseModel):
	participant_id: str
	display_name: str
	score: float = 0.0
	avatar: str = ""


class CreateBattleIn(BaseModel):
	owner_id: str = Field(..., description="Participant id of the creator")
	display_name: str = Field(..., description="Creator's name shown to other players")
	topic: str = Field(..., description="Subject of the questions, e.g. arrays")
	difficulty: str = Field(..., description="easy|medium|hard")
	max_participants: int = Field(..., description="Roster size that starts the battle (creator included)")
	avatar: Optional[str] = Field(default="", description="Avatar URL or reference")


class CreateBattleOut(BaseModel):
	code: str


class JoinBattleIn(BaseModel):
	code: str
	participant_id: str
	display_name: str
	avatar: Optional[str] = ""


class RosterOut(BaseModel):
	message: str = "Joined successfully"
	participants: List[ParticipantOut]


class AnswerIn(BaseModel):
	code: str
	participant_id: str
	answer: str = Field(..., description="Free text answer to the current question")


class AnswerAck(BaseModel):
	message: str = "Answer submitted"
	current_index: int
	status: str
	score: float
	advanced: bool
	completed: bool


class QuestionOut(BaseModel):
	question: Optional[str] = None
	index: int
	status: str
	participants: List[ParticipantOut]
	finished: bool = False
	version: int


class HasAnsweredOut(BaseModel):
	has_answered: bool


class LobbyOut(BaseModel):
	participants: List[ParticipantOut]
	max_participants: int
	status: str
	topic: str
	difficulty: str
	version: int


class RankedAnswer(BaseModel):
	participant_id: str
	display_name: str
	question: str
	answer: str


class SummaryOut(BaseModel):
	"""Ranked answers for a finished battle.

	``ready`` is false while the battle is still running; the caller should
	send the participant back to the live battle instead of showing results.
	"""
	ready: bool
	rankings: List[RankedAnswer]
	participants: List[ParticipantOut]
	status: str


class TypingIn(BaseModel):
	code: str
	participant_id: str
	typing: bool
