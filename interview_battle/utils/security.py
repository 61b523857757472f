from __future__ import annotations

from fastapi import Header, HTTPException, Query, Request, WebSocket, WebSocketException, status
from typing import Optional
import secrets

from interview_battle.config import Settings, settings


def _expected_key(app) -> Optional[str]:
	config: Settings = getattr(app.state, "config", settings)
	return config.api_key


def _matches(presented: str, expected: str) -> bool:
	return secrets.compare_digest(presented.encode(), expected.encode())


async def verify_api_key(request: Request, authorization: Optional[str] = Header(default=None)) -> None:
	expected = _expected_key(request.app)
	if not expected:
		return
	if not authorization or not authorization.startswith("Bearer "):
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing API key")
	if not _matches(authorization.removeprefix("Bearer "), expected):
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


async def websocket_verify_api_key(
	websocket: WebSocket,
	sec_websocket_protocol: Optional[str] = Header(default=None),
	token: Optional[str] = Query(default=None),
) -> None:
	# Browsers cannot set Authorization on a socket; accept the subprotocol or ?token=
	expected = _expected_key(websocket.app)
	if not expected:
		return
	key = sec_websocket_protocol or token
	if not key:
		raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason="Missing API key")
	if not _matches(key, expected):
		raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid API key")
