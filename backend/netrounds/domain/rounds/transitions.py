"""Registration state machine.

``next_status`` is the pure transition table. ``apply_transition`` is the only
place a registration's status is written: it re-reads the stored record,
decides from *that* status, and writes only when something actually changes.
Automatic callers (driver, matching engine) and user actions converge here, so
a late automatic event can never undo what a user already advanced.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from netrounds.domain.rounds import models
from netrounds.domain.rounds.errors import ConflictError, NotFoundError, TooLateToCancel
from netrounds.domain.rounds.models import Phase, RegistrationStatus
from netrounds.domain.rounds.repository import RoundsRepository
from netrounds.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

Status = RegistrationStatus


class RegistrationEvent(str, Enum):
	REGISTER = "register"
	VERIFY_EMAIL = "verify-email"
	CANCEL = "cancel"
	ENTER_CONFIRMATION_WINDOW = "enter-confirmation-window"
	CONFIRM = "confirm"
	AUTO_UNCONFIRM = "auto-unconfirm"
	ENTER_MATCHING = "enter-matching"
	CHECK_IN = "check-in"
	CONFIRM_PARTNER_MET = "confirm-partner-met"
	ROUND_ENDS_WITHOUT_CHECK_IN = "round-ends-without-check-in"

	@property
	def automatic(self) -> bool:
		return self in AUTOMATIC_EVENTS


AUTOMATIC_EVENTS = frozenset(
	{
		RegistrationEvent.ENTER_CONFIRMATION_WINDOW,
		RegistrationEvent.AUTO_UNCONFIRM,
		RegistrationEvent.ENTER_MATCHING,
		RegistrationEvent.ROUND_ENDS_WITHOUT_CHECK_IN,
	}
)

CANCELLABLE = frozenset(
	{
		Status.PENDING_VERIFICATION,
		Status.REGISTERED,
		Status.WAITING_FOR_CONFIRMATION,
		Status.CONFIRMED,
		Status.UNCONFIRMED,
	}
)

CONFIRMABLE = frozenset({Status.REGISTERED, Status.WAITING_FOR_CONFIRMATION, Status.UNCONFIRMED})

# a late confirm finding any of these is a no-op success
ALREADY_CONFIRMED = frozenset(
	{
		Status.CONFIRMED,
		Status.MATCHED,
		Status.CHECKED_IN,
		Status.MET,
		Status.MISSED,
		Status.LEFT_ALONE,
		Status.NO_MATCH,
	}
)

UNCONFIRMABLE = frozenset({Status.PENDING_VERIFICATION, Status.REGISTERED, Status.WAITING_FOR_CONFIRMATION})

PRE_CONFIRMATION = frozenset({Status.PENDING_VERIFICATION, Status.REGISTERED, Status.WAITING_FOR_CONFIRMATION})


class TransitionKind(str, Enum):
	APPLIED = "applied"
	SATISFIED = "satisfied"
	SKIPPED = "skipped"


@dataclass(slots=True, frozen=True)
class Transition:
	kind: TransitionKind
	status: Optional[RegistrationStatus] = None

	@classmethod
	def applied(cls, status: RegistrationStatus) -> "Transition":
		return cls(TransitionKind.APPLIED, status)

	@property
	def changed(self) -> bool:
		return self.kind == TransitionKind.APPLIED


SATISFIED = Transition(TransitionKind.SATISFIED)
SKIPPED = Transition(TransitionKind.SKIPPED)


def _reject(event: RegistrationEvent, current: Optional[RegistrationStatus]) -> Transition:
	if event.automatic:
		return SKIPPED
	state = current.value if current else "none"
	raise ConflictError("invalid_transition", message=f"cannot {event.value} from {state}")


def next_status(
	current: Optional[RegistrationStatus],
	event: RegistrationEvent,
	*,
	phase: Optional[Phase] = None,
	verification_required: bool = False,
	matched: bool = False,
	partner_checked_in: bool = False,
) -> Transition:
	"""Decide what ``event`` does to a registration currently in ``current``."""
	if event == RegistrationEvent.REGISTER:
		if current is None or current == Status.CANCELLED:
			return Transition.applied(Status.PENDING_VERIFICATION if verification_required else Status.REGISTERED)
		return SATISFIED

	if current is None:
		raise NotFoundError("registration_not_found")

	if event == RegistrationEvent.VERIFY_EMAIL:
		if current == Status.PENDING_VERIFICATION:
			return Transition.applied(Status.REGISTERED)
		if current == Status.CANCELLED:
			return _reject(event, current)
		return SATISFIED

	if event == RegistrationEvent.CANCEL:
		if current == Status.CANCELLED:
			return SATISFIED
		if phase is not None and phase.is_at_or_after(Phase.MATCHING):
			raise TooLateToCancel("the round has already been matched")
		if current in CANCELLABLE:
			return Transition.applied(Status.CANCELLED)
		raise TooLateToCancel("a match already references this registration")

	if event == RegistrationEvent.ENTER_CONFIRMATION_WINDOW:
		if current == Status.REGISTERED:
			return Transition.applied(Status.WAITING_FOR_CONFIRMATION)
		return SKIPPED

	if event == RegistrationEvent.CONFIRM:
		if current in CONFIRMABLE:
			return Transition.applied(Status.CONFIRMED)
		if current in ALREADY_CONFIRMED:
			return SATISFIED
		return _reject(event, current)

	if event == RegistrationEvent.AUTO_UNCONFIRM:
		if current in UNCONFIRMABLE:
			return Transition.applied(Status.UNCONFIRMED)
		return SKIPPED

	if event == RegistrationEvent.ENTER_MATCHING:
		if current == Status.CONFIRMED:
			return Transition.applied(Status.MATCHED if matched else Status.NO_MATCH)
		return SKIPPED

	if event == RegistrationEvent.CHECK_IN:
		if current == Status.MATCHED:
			return Transition.applied(Status.CHECKED_IN)
		if current in (Status.CHECKED_IN, Status.MET):
			return SATISFIED
		return _reject(event, current)

	if event == RegistrationEvent.CONFIRM_PARTNER_MET:
		if current in (Status.MATCHED, Status.CHECKED_IN):
			return Transition.applied(Status.MET)
		if current == Status.MET:
			return SATISFIED
		return _reject(event, current)

	if event == RegistrationEvent.ROUND_ENDS_WITHOUT_CHECK_IN:
		if current == Status.MATCHED:
			return Transition.applied(Status.MISSED)
		if current == Status.CHECKED_IN:
			return Transition.applied(Status.MET if partner_checked_in else Status.LEFT_ALONE)
		return SKIPPED

	raise ValueError(f"unknown event {event!r}")  # pragma: no cover


def is_backward(current: RegistrationStatus, target: RegistrationStatus) -> bool:
	"""Moving a confirmed-or-later registration back before confirmation."""
	if current == Status.CANCELLED or target == Status.CANCELLED:
		return False
	confirmed_rank = models.STATUS_RANK[Status.CONFIRMED]
	return models.STATUS_RANK[current] >= confirmed_rank and target in PRE_CONFIRMATION


@dataclass(slots=True)
class TransitionResult:
	registration: models.Registration
	transition: Transition
	previous: Optional[RegistrationStatus] = None

	@property
	def changed(self) -> bool:
		return self.transition.changed


def _stamp(registration: models.Registration, status: RegistrationStatus, now: datetime) -> None:
	attr = models.STATUS_TIMESTAMP.get(status)
	if attr and getattr(registration, attr) is None:
		setattr(registration, attr, now)


async def apply_transition(
	repo: RoundsRepository,
	round_id: str,
	participant_id: str,
	event: RegistrationEvent,
	now: datetime,
	*,
	phase: Optional[Phase] = None,
	verification_required: bool = False,
	matched_id: Optional[str] = None,
	partner_checked_in: bool = False,
	reason: Optional[str] = None,
) -> TransitionResult:
	"""Read the stored registration, transition it, persist and merge into its match."""
	registration = await repo.get_registration(round_id, participant_id)
	if registration is None:
		raise NotFoundError("registration_not_found")
	current = registration.status
	try:
		transition = next_status(
			current,
			event,
			phase=phase,
			verification_required=verification_required,
			matched=matched_id is not None,
			partner_checked_in=partner_checked_in,
		)
	except Exception:
		obs_metrics.record_transition(event.value, "rejected")
		raise
	if transition.changed and is_backward(current, transition.status):
		# unreachable through the table; kept as a hard stop
		_LOG.error(
			"registration.backward_transition",
			extra={"registration_id": registration.id, "from": current.value, "to": transition.status.value},
		)
		transition = SKIPPED
	obs_metrics.record_transition(event.value, transition.kind.value)
	if not transition.changed:
		return TransitionResult(registration=registration, transition=transition, previous=current)

	new_status = transition.status
	registration.status = new_status
	_stamp(registration, new_status, now)
	registration.last_status_update = now
	registration.history.append(models.HistoryEntry(status=new_status, event=event.value, at=now))
	if new_status == Status.MATCHED:
		registration.match_id = matched_id
	elif new_status == Status.NO_MATCH:
		registration.no_match_reason = reason
	elif new_status == Status.UNCONFIRMED:
		registration.unconfirmed_reason = reason
	elif new_status in (Status.REGISTERED, Status.PENDING_VERIFICATION) and event == RegistrationEvent.REGISTER:
		registration.match_id = None
		registration.cancelled_at = None
	await repo.save_registration(registration)
	_LOG.info(
		"registration.transition",
		extra={
			"registration_id": registration.id,
			"round_id": round_id,
			"event": event.value,
			"from": current.value,
			"to": new_status.value,
		},
	)
	if registration.match_id:
		await merge_into_match(repo, registration, now)
	return TransitionResult(registration=registration, transition=transition, previous=current)


async def merge_into_match(repo: RoundsRepository, registration: models.Registration, now: datetime) -> None:
	match = await repo.get_match(registration.match_id)
	if match is None:
		return
	member = match.member(registration.participant_id)
	if member is None or member.status == registration.status:
		return
	member.status = registration.status
	if registration.status == Status.CHECKED_IN and member.checked_in_at is None:
		member.checked_in_at = registration.checked_in_at or now
	await repo.save_match(match)


__all__ = [
	"RegistrationEvent",
	"Transition",
	"TransitionKind",
	"TransitionResult",
	"apply_transition",
	"is_backward",
	"merge_into_match",
	"next_status",
]
