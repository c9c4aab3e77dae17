"""Check-ins and terminal per-participant outcomes (met / missed / left-alone)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime

from netrounds.domain.rounds import models, policy
from netrounds.domain.rounds.errors import ForbiddenError
from netrounds.domain.rounds.models import Phase, RegistrationStatus
from netrounds.domain.rounds.repository import RoundsRepository, outcomes_lock_key
from netrounds.domain.rounds.transitions import RegistrationEvent, TransitionResult, apply_transition
from netrounds.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

SHOWED_UP = frozenset({RegistrationStatus.CHECKED_IN, RegistrationStatus.MET})


@dataclass(slots=True)
class OutcomeReport:
	round_id: str
	state: str
	counts: dict[str, int] = field(default_factory=dict)

	def to_dict(self) -> dict:
		return {"round_id": self.round_id, "state": self.state, "counts": dict(self.counts)}


def _ensure_member(match: models.Match, participant_id: str) -> None:
	if match.member(participant_id) is None:
		raise ForbiddenError("forbidden", message="participant is not part of this match")


async def check_in(
	repo: RoundsRepository, match: models.Match, participant_id: str, phase: Phase, now: datetime
) -> TransitionResult:
	policy.ensure_round_running(phase)
	_ensure_member(match, participant_id)
	return await apply_transition(repo, match.round_id, participant_id, RegistrationEvent.CHECK_IN, now)


async def confirm_partner_met(
	repo: RoundsRepository, match: models.Match, participant_id: str, phase: Phase, now: datetime
) -> TransitionResult:
	policy.ensure_round_running(phase)
	_ensure_member(match, participant_id)
	return await apply_transition(repo, match.round_id, participant_id, RegistrationEvent.CONFIRM_PARTNER_MET, now)


async def record_round_outcomes(
	repo: RoundsRepository, session: models.Session, round_: models.Round, now: datetime
) -> OutcomeReport:
	"""Resolve every matched participant of a finished round, once per round instant."""
	lock_key = outcomes_lock_key(round_.id, session.round_start(round_))
	lock = await repo.get_marker(lock_key)
	if lock and lock.get("state") == "completed":
		return OutcomeReport(round_id=round_.id, state="noop", counts=dict(lock.get("counts") or {}))

	started = time.perf_counter()
	registrations = {item.participant_id: item for item in await repo.list_round_registrations(round_.id)}
	counts: dict[str, int] = {}
	for match in await repo.list_round_matches(round_.id):
		# decide from statuses as they stood when the round ended
		showed_up = {
			pid
			for pid in match.participant_ids
			if pid in registrations and registrations[pid].status in SHOWED_UP
		}
		for participant_id in match.participant_ids:
			if participant_id not in registrations:
				continue
			partner_checked_in = any(pid != participant_id for pid in showed_up)
			result = await apply_transition(
				repo,
				round_.id,
				participant_id,
				RegistrationEvent.ROUND_ENDS_WITHOUT_CHECK_IN,
				now,
				partner_checked_in=partner_checked_in,
			)
			if result.changed:
				status = result.registration.status.value
				counts[status] = counts.get(status, 0) + 1

	await repo.set_marker(lock_key, {"state": "completed", "at": now.isoformat(), "counts": counts})
	obs_metrics.record_job_run(
		"outcomes", result="ok", duration_seconds=time.perf_counter() - started
	)
	_LOG.info("outcomes.recorded", extra={"round_id": round_.id, "session_id": session.id, "counts": counts})
	return OutcomeReport(round_id=round_.id, state="completed", counts=counts)
