"""Error taxonomy for the round lifecycle."""

from __future__ import annotations

from netrounds.infra.store import TransientStoreError


class RoundsError(RuntimeError):
	status_code = 400

	def __init__(self, code: str, *, status_code: int | None = None, message: str | None = None) -> None:
		super().__init__(message or code)
		self.code = code
		if status_code is not None:
			self.status_code = status_code
		self.detail = message or code


class ValidationError(RoundsError):
	"""Malformed input; fatal to the single request."""

	status_code = 422


class WindowClosedError(RoundsError):
	"""The round's current phase does not allow the request."""

	status_code = 409


class RegistrationClosed(WindowClosedError):
	def __init__(self, message: str | None = None) -> None:
		super().__init__("registration_closed", message=message)


class TooLateToCancel(WindowClosedError):
	def __init__(self, message: str | None = None) -> None:
		super().__init__("too_late_to_cancel", message=message)


class NotFoundError(RoundsError):
	status_code = 404


class ConflictError(RoundsError):
	"""Transition not legal from the stored status."""

	status_code = 409


class ForbiddenError(RoundsError):
	status_code = 403


__all__ = [
	"ConflictError",
	"ForbiddenError",
	"NotFoundError",
	"RegistrationClosed",
	"RoundsError",
	"TooLateToCancel",
	"TransientStoreError",
	"ValidationError",
	"WindowClosedError",
]
