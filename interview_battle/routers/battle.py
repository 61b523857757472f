from fastapi import APIRouter, Depends, Query, Request, status

from interview_battle.schemas import (
	AnswerAck,
	AnswerIn,
	CreateBattleIn,
	CreateBattleOut,
	HasAnsweredOut,
	JoinBattleIn,
	LobbyOut,
	QuestionOut,
	RosterOut,
	SummaryOut,
	TypingIn,
)
from interview_battle.services.coordinator import BattleCoordinator
from interview_battle.utils.security import verify_api_key


router = APIRouter(dependencies=[Depends(verify_api_key)])


def get_coordinator(request: Request) -> BattleCoordinator:
	return request.app.state.coordinator


@router.post("/battle/create", response_model=CreateBattleOut, status_code=status.HTTP_201_CREATED)
async def create_battle(payload: CreateBattleIn, coordinator: BattleCoordinator = Depends(get_coordinator)):
	code = await coordinator.create_session(
		payload.topic,
		payload.difficulty,
		payload.max_participants,
		payload.owner_id,
		payload.display_name,
		avatar=payload.avatar or "",
	)
	return CreateBattleOut(code=code)


@router.post("/battle/join", response_model=RosterOut)
async def join_battle(payload: JoinBattleIn, coordinator: BattleCoordinator = Depends(get_coordinator)):
	roster = await coordinator.join_session(payload.code, payload.participant_id, payload.display_name, avatar=payload.avatar or "")
	return RosterOut(participants=roster)


@router.post("/battle/answer", response_model=AnswerAck)
async def submit_answer(payload: AnswerIn, coordinator: BattleCoordinator = Depends(get_coordinator)):
	result = await coordinator.submit_answer(payload.code, payload.participant_id, payload.answer)
	return AnswerAck(
		current_index=result.current_index,
		status=result.status,
		score=result.score,
		advanced=result.advanced,
		completed=result.completed,
	)


@router.get("/battle/question", response_model=QuestionOut)
async def current_question(code: str = Query(...), coordinator: BattleCoordinator = Depends(get_coordinator)):
	return QuestionOut(**await coordinator.get_current_question(code))


@router.get("/battle/has-answered", response_model=HasAnsweredOut)
async def has_answered(code: str = Query(...), participant_id: str = Query(...), coordinator: BattleCoordinator = Depends(get_coordinator)):
	return HasAnsweredOut(has_answered=await coordinator.has_answered(code, participant_id))


@router.get("/battle/lobby", response_model=LobbyOut)
async def lobby(code: str = Query(...), coordinator: BattleCoordinator = Depends(get_coordinator)):
	return LobbyOut(**await coordinator.get_lobby(code))


@router.get("/battle/summary", response_model=SummaryOut)
async def summary(code: str = Query(...), coordinator: BattleCoordinator = Depends(get_coordinator)):
	return SummaryOut(**await coordinator.get_ranked_summary(code))


@router.post("/battle/typing")
async def typing(payload: TypingIn, coordinator: BattleCoordinator = Depends(get_coordinator)):
	await coordinator.send_typing(payload.code, payload.participant_id, payload.typing)
	return {"success": True}
