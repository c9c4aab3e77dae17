"""Policy helpers: which mutations are legal during which phase, and session validation."""

from __future__ import annotations

from datetime import timedelta
from typing import Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from netrounds.domain.rounds import models
from netrounds.domain.rounds.errors import (
	ConflictError,
	ForbiddenError,
	RegistrationClosed,
	ValidationError,
	WindowClosedError,
)
from netrounds.domain.rounds.models import Phase, RUNNING_PHASES
from netrounds.infra.auth import AuthenticatedUser

CONFIRMATION_PHASES = frozenset({Phase.WAITING_FOR_CONFIRMATION, Phase.MATCHING})


def ensure_registration_open(phase: Phase) -> None:
	if phase == Phase.OPEN_FOR_REGISTRATION:
		return
	if phase.is_before(Phase.OPEN_FOR_REGISTRATION):
		raise RegistrationClosed("registration has not opened yet")
	raise RegistrationClosed("registration for this round has closed")


def ensure_verification_open(phase: Phase) -> None:
	# in-flight registrations may still finish inside the safety window
	if phase.is_at_or_after(Phase.MATCHING):
		raise RegistrationClosed("the round has already started")


def ensure_confirmation_open(phase: Phase) -> None:
	if phase not in CONFIRMATION_PHASES:
		raise WindowClosedError("confirmation_closed", message=f"attendance cannot be confirmed during {phase.value}")


def ensure_round_running(phase: Phase) -> None:
	if phase not in RUNNING_PHASES:
		raise WindowClosedError("round_not_running")


def ensure_matching_started(phase: Phase) -> None:
	if phase.is_before(Phase.MATCHING):
		raise WindowClosedError("matching_not_started")


def ensure_capacity_available(session: models.Session, active_registrations: int) -> None:
	if not session.limit_participants or not session.max_participants:
		return
	if active_registrations >= session.max_participants:
		raise ConflictError("round_full", message="this round has reached its participant limit")


def ensure_owner(session: models.Session, user: AuthenticatedUser) -> None:
	if session.organizer_id != user.id and not user.is_admin():
		raise ForbiddenError("forbidden")


def ensure_session_editable(
	session: models.Session, phases: Iterable[Phase]
) -> None:
	"""A published session is frozen once any round stopped taking registrations."""
	if session.status == models.SessionStatus.COMPLETED:
		raise ConflictError("session_locked", message="completed sessions cannot be edited")
	if session.status != models.SessionStatus.PUBLISHED:
		return
	if any(phase.is_at_or_after(Phase.SAFETY_WINDOW) for phase in phases):
		raise ConflictError("session_locked", message="registration for a round has already closed")


def validate_session(session: models.Session, params: models.SystemParameters) -> None:
	try:
		ZoneInfo(session.timezone)
	except (ZoneInfoNotFoundError, ValueError) as exc:
		raise ValidationError("invalid_timezone") from exc
	if not session.name.strip():
		raise ValidationError("invalid_name")
	ids = [round_.id for round_ in session.rounds]
	if len(set(ids)) != len(ids):
		raise ValidationError("invalid_round_id", message="round ids must be unique")
	for round_ in session.rounds:
		try:
			models.parse_clock_time(round_.start_time)
		except ValueError as exc:
			raise ValidationError("invalid_start_time", message=f"round {round_.name}: {exc}") from exc
		if not params.minimal_round_duration_minutes <= round_.duration_minutes <= params.maximal_round_duration_minutes:
			raise ValidationError(
				"invalid_duration",
				message=(
					f"round {round_.name}: duration must be between "
					f"{params.minimal_round_duration_minutes} and {params.maximal_round_duration_minutes} minutes"
				),
			)
		if round_.group_size < 1:
			raise ValidationError("invalid_group_size")
	_validate_round_order(session, params)
	if session.limit_participants and not (session.max_participants and session.max_participants > 0):
		raise ValidationError("invalid_max_participants")
	if session.limit_groups and not (session.max_groups and session.max_groups > 0):
		raise ValidationError("invalid_max_groups")
	if session.matching_type != models.MatchingType.RANDOM and not session.teams:
		raise ValidationError("invalid_teams", message="team based matching needs at least one team")
	if session.require_shared_topic and not session.topics:
		raise ValidationError("invalid_topics", message="shared-topic matching needs at least one topic")
	point_ids = [point.id for point in session.meeting_points]
	if len(set(point_ids)) != len(point_ids):
		raise ValidationError("invalid_meeting_point", message="meeting point ids must be unique")
	for point in session.meeting_points:
		if point.is_virtual() and not point.video_url:
			raise ValidationError("invalid_meeting_point", message=f"{point.name}: virtual meeting points need a video_url")


def _validate_round_order(session: models.Session, params: models.SystemParameters) -> None:
	gap = timedelta(minutes=params.minimal_gap_between_rounds_minutes)
	previous: models.Round | None = None
	for round_ in session.rounds:
		if previous is not None:
			if session.round_start(round_) < session.round_end(previous) + gap:
				raise ValidationError(
					"invalid_round_order",
					message=(
						f"round {round_.name} must start at least "
						f"{params.minimal_gap_between_rounds_minutes} minutes after {previous.name} ends"
					),
				)
		previous = round_
