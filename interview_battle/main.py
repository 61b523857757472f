from contextlib import asynccontextmanager
import asyncio
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from interview_battle.config import Settings, settings
from interview_battle.errors import BattleError
from interview_battle.utils.logging import configure_logging
from interview_battle.routers.battle import router as battle_router
from interview_battle.routers.ws import router as ws_router
from interview_battle.services.answer_ledger import AnswerLedger
from interview_battle.services.broadcaster import PresenceBroadcaster
from interview_battle.services.coordinator import BattleCoordinator
from interview_battle.services.llm_service import llm_service
from interview_battle.services.session_store import SessionStore
from interview_battle.utils.audit import auditor


logger = logging.getLogger(__name__)


async def _sweep_forever(app: FastAPI, interval: float) -> None:
	"""Expire old battles and answers, and drop silent presence members."""
	while True:
		await asyncio.sleep(interval)
		try:
			await app.state.coordinator.purge_expired()
			await app.state.broadcaster.sweep()
		except Exception:
			logger.exception("Sweep failed")


def create_app(
	config: Optional[Settings] = None,
	coordinator: Optional[BattleCoordinator] = None,
	broadcaster: Optional[PresenceBroadcaster] = None,
	oracle=None,
) -> FastAPI:
	config = config or settings
	configure_logging(config.log_level)
	auditor.configure(config.analytics_path)

	if broadcaster is None:
		broadcaster = PresenceBroadcaster(queue_size=config.subscriber_queue_size, timeout=config.presence_timeout_seconds)
	if coordinator is None:
		coordinator = BattleCoordinator.from_settings(
			config,
			SessionStore(config.session_retention_seconds, data_dir=config.data_dir or None),
			AnswerLedger(config.answer_retention_seconds, data_dir=config.data_dir or None),
			oracle or llm_service,
			broadcaster,
			auditor=auditor,
		)

	@asynccontextmanager
	async def lifespan(app: FastAPI):
		sweeper = asyncio.create_task(_sweep_forever(app, config.sweep_interval_seconds))
		try:
			yield
		finally:
			sweeper.cancel()
			await broadcaster.close()

	app = FastAPI(title="Interview Battle Backend", version="0.1.0", lifespan=lifespan)
	app.state.config = config
	app.state.coordinator = coordinator
	app.state.broadcaster = broadcaster

	# CORS
	app.add_middleware(
		CORSMiddleware,
		allow_origins=config.cors_allow_origins,
		# Browsers reject wildcard origins combined with credentials
		allow_credentials=False if config.cors_allow_origins == ["*"] else True,
		allow_methods=["*"],
		allow_headers=["*"],
		max_age=3600,
	)

	@app.exception_handler(BattleError)
	async def battle_error_handler(request: Request, exc: BattleError) -> JSONResponse:
		return JSONResponse({"detail": exc.message, "error": type(exc).__name__}, status_code=exc.status_code)

	@app.exception_handler(RequestValidationError)
	async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
		return JSONResponse({"detail": "Missing or invalid fields", "errors": jsonable_encoder(exc.errors()), "error": "ValidationError"}, status_code=400)

	@app.get("/health")
	async def health() -> JSONResponse:
		return JSONResponse({
			"status": "ok",
			"version": app.version,
			"llm": {"provider": config.llm_provider, "enabled": llm_service.enabled},
		})

	# Routers
	app.include_router(battle_router, prefix="/api", tags=["battle"])
	app.include_router(ws_router, tags=["realtime"])
	return app


app = create_app()
