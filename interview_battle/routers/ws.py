from __future__ import annotations

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Depends, Query, status
import json
import logging

import anyio

from interview_battle.errors import BattleError, NotFound
from interview_battle.services.broadcaster import PresenceBroadcaster, Subscription, battle_channel
from interview_battle.services.coordinator import BattleCoordinator
from interview_battle.utils.security import websocket_verify_api_key


logger = logging.getLogger(__name__)

router = APIRouter()


async def _pump(websocket: WebSocket, sub: Subscription, scope: anyio.CancelScope) -> None:
	try:
		async for event in sub:
			await websocket.send_json(event.to_message())
	except (WebSocketDisconnect, RuntimeError):
		pass
	finally:
		scope.cancel()


async def _listen(websocket: WebSocket, code: str, participant_id: str, presence: PresenceBroadcaster, coordinator: BattleCoordinator, scope: anyio.CancelScope) -> None:
	channel = battle_channel(code)
	try:
		while True:
			message = await websocket.receive()
			if message["type"] == "websocket.disconnect":
				break
			# Any traffic counts as a sign of life
			presence.heartbeat(channel, participant_id)
			text = message.get("text")
			if text is None:
				continue
			if text == "ping":
				await websocket.send_json({"event": "pong", "payload": {}})
				continue
			try:
				msg = json.loads(text)
			except ValueError:
				continue
			if isinstance(msg, dict) and msg.get("type") == "typing":
				try:
					await coordinator.send_typing(code, participant_id, bool(msg.get("typing")))
				except BattleError as exc:
					logger.info("[%s] typing hint from %s ignored: %s", code, participant_id, exc.message)
	except WebSocketDisconnect:
		pass
	finally:
		scope.cancel()


@router.websocket("/ws/battle/{code}")
async def battle_socket(
	websocket: WebSocket,
	code: str,
	participant_id: str = Query(...),
	name: str = Query(default="Anonymous"),
	_: None = Depends(websocket_verify_api_key),
):
	coordinator: BattleCoordinator = websocket.app.state.coordinator
	presence: PresenceBroadcaster = websocket.app.state.broadcaster
	code = code.upper()
	try:
		await coordinator.get_lobby(code)
	except NotFound:
		await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Battle not found")
		return

	await websocket.accept()
	channel = battle_channel(code)
	sub = await presence.join(channel, participant_id, {"name": name})
	try:
		async with anyio.create_task_group() as tg:
			tg.start_soon(_pump, websocket, sub, tg.cancel_scope)
			tg.start_soon(_listen, websocket, code, participant_id, presence, coordinator, tg.cancel_scope)
	finally:
		await presence.leave(channel, participant_id, sub)
