"""Round phase calculator.

A round's phase is never stored. It is recomputed on every read from the
session status, the round's start instant and duration, the configured window
widths and an explicit ``now``.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from netrounds.domain.rounds.models import (
	PHASE_ORDER,
	Phase,
	Round,
	Session,
	SessionStatus,
	SystemParameters,
)
from netrounds.infra.clock import ensure_aware


def phase_order() -> tuple[Phase, ...]:
	return PHASE_ORDER


def compute_phase(session: Session, round_: Round, params: SystemParameters, now: datetime) -> Phase:
	if session.status == SessionStatus.DRAFT:
		return Phase.DRAFT
	if session.status == SessionStatus.SCHEDULED:
		return Phase.SCHEDULED
	if session.status == SessionStatus.COMPLETED:
		return Phase.COMPLETED
	return phase_at(
		session.round_start(round_),
		duration_minutes=round_.duration_minutes,
		params=params,
		now=now,
	)


def phase_at(start: datetime, *, duration_minutes: int, params: SystemParameters, now: datetime) -> Phase:
	"""Phase of a published round starting at ``start``."""
	now = ensure_aware(now)
	start = ensure_aware(start)
	if now >= start + timedelta(minutes=duration_minutes):
		return Phase.COMPLETED
	if now > start:
		if now <= start + timedelta(minutes=params.walking_time_minutes):
			return Phase.WALKING_TO_MEETING_POINT
		return Phase.NETWORKING
	if now == start:
		return Phase.MATCHING
	# An inverted configuration (safety < confirmation) leaves the safety window empty.
	if now > start - timedelta(minutes=params.confirmation_window_minutes):
		return Phase.WAITING_FOR_CONFIRMATION
	if now >= start - timedelta(minutes=params.safety_window_minutes):
		return Phase.SAFETY_WINDOW
	return Phase.OPEN_FOR_REGISTRATION


def phase_boundaries(session: Session, round_: Round, params: SystemParameters) -> dict[str, datetime]:
	"""Instants at which a published round changes phase."""
	start = session.round_start(round_)
	return {
		"registration_closes_at": start - timedelta(minutes=params.safety_window_minutes),
		"confirmation_opens_at": start - timedelta(minutes=params.confirmation_window_minutes),
		"start_at": start,
		"walking_ends_at": start + timedelta(minutes=params.walking_time_minutes),
		"end_at": start + timedelta(minutes=round_.duration_minutes),
	}


def is_matching_due(session: Session, round_: Round, now: datetime) -> bool:
	"""True once the matching instant has been reached on a published session."""
	if session.status != SessionStatus.PUBLISHED:
		return False
	return ensure_aware(now) >= session.round_start(round_)


__all__ = ["compute_phase", "is_matching_due", "phase_at", "phase_boundaries", "phase_order"]
