from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import List
from dotenv import load_dotenv


# Ensure .env is loaded eagerly
load_dotenv(dotenv_path=".env")


class Settings(BaseSettings):
	# Server
	host: str = "0.0.0.0"
	port: int = 8000
	cors_allow_origins: List[str] = [
		"http://localhost:3000",
		"http://localhost:5173",
		"http://127.0.0.1:3000",
		"http://127.0.0.1:5173",
	]

	# Auth
	api_key: str | None = None  # simple bearer key if provided

	# LLM Provider Selection
	llm_provider: str = "groq"  # options: groq, gemini

	# Groq
	groq_api_key: str | None = None
	groq_model: str = "openai/gpt-oss-120b"
	oracle_temperature: float = 0.4

	# Google Gemini
	gemini_api_key: str | None = None
	gemini_model: str = "models/gemini-2.0-flash"

	# Battle rules
	battle_question_count: int = 5
	max_participants_limit: int = 10
	code_attempts: int = 20
	mutation_retries: int = 5
	fallback_score: float = 0.0

	# Timeouts (seconds)
	oracle_timeout_seconds: float = 15.0
	question_timeout_seconds: float = 30.0
	ranking_timeout_seconds: float = 45.0
	broadcast_timeout_seconds: float = 2.0

	# Retention (seconds)
	session_retention_seconds: int = 86400
	answer_retention_seconds: int = 3600
	sweep_interval_seconds: float = 30.0

	# Presence
	presence_timeout_seconds: float = 30.0
	subscriber_queue_size: int = 256

	# Typing hints
	typing_interval_seconds: float = 1.0
	typing_idle_seconds: float = 2.0

	# Persistence; empty disables JSON snapshots
	data_dir: str = "data"

	# Logging
	log_level: str = "INFO"
	analytics_path: str | None = None  # e.g., logs/battles.jsonl

	@field_validator("oracle_temperature")
	@classmethod
	def clamp_temperature(cls, v: float) -> float:
		return max(0.0, min(1.0, v))

	@field_validator("max_participants_limit")
	@classmethod
	def at_least_two(cls, v: int) -> int:
		return max(2, v)

	@field_validator("cors_allow_origins", mode="before")
	@classmethod
	def parse_cors_origins(cls, v):
		# Allow environment variable override
		if isinstance(v, str):
			return [origin.strip() for origin in v.split(",")]
		return v

	class Config:
		env_file = ".env"
		env_file_encoding = "utf-8"


settings = Settings()
