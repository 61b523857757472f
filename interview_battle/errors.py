from __future__ import annotations


class BattleError(Exception):
	"""Base class for failures surfaced by the battle core."""

	status_code = 500

	def __init__(self, message: str) -> None:
		super().__init__(message)
		self.message = message


class ValidationError(BattleError):
	"""Malformed or missing input. Never retried automatically."""

	status_code = 400


class NotFound(BattleError):
	status_code = 404


class Conflict(BattleError):
	"""Duplicate join or answer, full roster, or a lost capacity race."""

	status_code = 409


class StaleWrite(Conflict):
	"""Raised by the store when a compare-and-set sees a newer version."""


class InvalidState(BattleError):
	"""Action attempted against the wrong lifecycle status."""

	status_code = 409


class OracleError(BattleError):
	status_code = 502


class TransportError(BattleError):
	"""Broadcast publish failed. Callers log and continue."""

	status_code = 503
