"""Periodic transition driver.

Advances everything that changes purely because time passed: reminders,
entering the confirmation window, matching at the start instant, late
confirmation sweeps, outcomes once a round ends, and the scheduled → published
→ completed session lifecycle. Every step goes through the same guarded
transitions as user actions, so a tick that overlaps a user request (or
another tick) never undoes anything.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from netrounds.domain.rounds import matching, models, outcomes
from netrounds.domain.rounds.models import Phase, RegistrationStatus, SessionStatus
from netrounds.domain.rounds.phase import compute_phase
from netrounds.domain.rounds.repository import RoundsRepository, outcomes_lock_key, reminder_key
from netrounds.domain.rounds.transitions import RegistrationEvent, apply_transition
from netrounds.infra import notifications
from netrounds.infra.clock import clock
from netrounds.obs import metrics as obs_metrics
from netrounds.obs.logging import bind_context, reset_context

_LOG = logging.getLogger(__name__)

REMINDER_STATUSES = frozenset(
	{
		RegistrationStatus.REGISTERED,
		RegistrationStatus.WAITING_FOR_CONFIRMATION,
		RegistrationStatus.CONFIRMED,
	}
)


@dataclass(slots=True)
class TickReport:
	now: datetime
	sessions: int = 0
	rounds: int = 0
	reminders: int = 0
	confirmation_windows: int = 0
	matching_runs: int = 0
	outcomes_recorded: int = 0
	published: int = 0
	completed: int = 0
	round_errors: int = 0

	def to_dict(self) -> dict:
		return {
			"now": self.now.isoformat(),
			"sessions": self.sessions,
			"rounds": self.rounds,
			"reminders": self.reminders,
			"confirmation_windows": self.confirmation_windows,
			"matching_runs": self.matching_runs,
			"outcomes_recorded": self.outcomes_recorded,
			"published": self.published,
			"completed": self.completed,
			"round_errors": self.round_errors,
		}


class TransitionDriver:
	"""Runs one pass over every session per tick."""

	def __init__(
		self,
		*,
		repository: RoundsRepository | None = None,
		notifier: notifications.Notifier | None = None,
	) -> None:
		self.repo = repository or RoundsRepository()
		self.notifier = notifier or notifications.RedisStreamNotifier()

	async def run_once(self, now: Optional[datetime] = None) -> TickReport:
		now = now or clock.now()
		report = TickReport(now=now)
		started = time.perf_counter()
		try:
			params = await self.repo.get_parameters()
			sessions = await self.repo.list_sessions()
		except Exception:
			_LOG.exception("driver.tick_failed")
			obs_metrics.record_tick("error")
			obs_metrics.record_job_run("transition_driver", result="error")
			raise
		for session in sessions:
			if session.status == SessionStatus.SCHEDULED:
				if not await self._maybe_publish(session, now, report):
					continue
			if session.status != SessionStatus.PUBLISHED:
				continue
			report.sessions += 1
			failed = 0
			for round_ in session.ordered_rounds():
				report.rounds += 1
				context = bind_context(session_id=session.id, round_id=round_.id)
				try:
					await self.process_round(session, round_, params, now, report)
				except Exception:
					failed += 1
					_LOG.exception("driver.round_failed")
				finally:
					reset_context(context)
			report.round_errors += failed
			if not failed:
				await self._maybe_complete(session, params, now, report)
		result = "partial" if report.round_errors else "ok"
		obs_metrics.record_tick(result, round_errors=report.round_errors)
		obs_metrics.record_job_run(
			"transition_driver", result=result, duration_seconds=time.perf_counter() - started
		)
		_LOG.info("driver.tick", extra=report.to_dict())
		return report

	async def process_round(
		self,
		session: models.Session,
		round_: models.Round,
		params: models.SystemParameters,
		now: datetime,
		report: TickReport,
	) -> None:
		phase = compute_phase(session, round_, params, now)
		if phase.is_before(Phase.MATCHING):
			report.reminders += await self._send_reminders(session, round_, params, now)
			if phase == Phase.WAITING_FOR_CONFIRMATION:
				report.confirmation_windows += await self._enter_confirmation_window(session, round_, params, now)
			return
		if not await matching.matching_completed(self.repo, session, round_):
			await matching.run_matching(self.repo, session, round_, now, trigger="driver")
			report.matching_runs += 1
		await matching.sweep_late_confirmations(self.repo, session, round_, now)
		if phase == Phase.COMPLETED:
			result = await outcomes.record_round_outcomes(self.repo, session, round_, now)
			if result.state == "completed":
				report.outcomes_recorded += 1

	async def _send_reminders(
		self,
		session: models.Session,
		round_: models.Round,
		params: models.SystemParameters,
		now: datetime,
	) -> int:
		if not params.notification_early_enabled:
			return 0
		start = session.round_start(round_)
		if now < start - timedelta(minutes=params.notification_early_minutes):
			return 0
		marker = reminder_key(round_.id, start)
		if await self.repo.get_marker(marker):
			return 0
		sent = 0
		for registration in await self.repo.list_round_registrations(round_.id):
			if registration.status not in REMINDER_STATUSES:
				continue
			participant = await self.repo.get_participant(registration.participant_id)
			if participant is None:
				continue
			result = await self.notifier.send(
				participant,
				notifications.TEMPLATE_ROUND_STARTING_SOON,
				_variables(session, round_, registration, participant),
			)
			if result == notifications.NotificationResult.SUCCESS:
				sent += 1
		await self.repo.set_marker(marker, {"sent_at": now.isoformat(), "count": sent})
		return sent

	async def _enter_confirmation_window(
		self,
		session: models.Session,
		round_: models.Round,
		params: models.SystemParameters,
		now: datetime,
	) -> int:
		moved = 0
		for registration in await self.repo.list_round_registrations(round_.id):
			if registration.status != RegistrationStatus.REGISTERED:
				continue
			result = await apply_transition(
				self.repo,
				round_.id,
				registration.participant_id,
				RegistrationEvent.ENTER_CONFIRMATION_WINDOW,
				now,
			)
			if not result.changed:
				continue
			moved += 1
			if params.confirmation_notification_enabled:
				participant = await self.repo.get_participant(registration.participant_id)
				if participant is not None:
					await self.notifier.send(
						participant,
						notifications.TEMPLATE_CONFIRM_ATTENDANCE,
						_variables(session, round_, result.registration, participant),
					)
		return moved

	async def _maybe_publish(self, session: models.Session, now: datetime, report: TickReport) -> bool:
		if session.publish_at is None or now < session.publish_at:
			return False
		session.status = SessionStatus.PUBLISHED
		session.updated_at = now
		await self.repo.save_session(session)
		report.published += 1
		_LOG.info("session.published", extra={"session_id": session.id, "trigger": "driver"})
		return True

	async def _maybe_complete(
		self,
		session: models.Session,
		params: models.SystemParameters,
		now: datetime,
		report: TickReport,
	) -> None:
		if not session.rounds:
			return
		for round_ in session.rounds:
			if compute_phase(session, round_, params, now) != Phase.COMPLETED:
				return
			if not await self.repo.get_marker(outcomes_lock_key(round_.id, session.round_start(round_))):
				return
		session.status = SessionStatus.COMPLETED
		session.updated_at = now
		await self.repo.save_session(session)
		report.completed += 1
		_LOG.info("session.completed", extra={"session_id": session.id, "trigger": "driver"})


def _variables(
	session: models.Session,
	round_: models.Round,
	registration: models.Registration,
	participant: models.Participant,
) -> dict:
	return {
		"first_name": participant.first_name,
		"session_name": session.name,
		"round_name": round_.name,
		"start_at": session.round_start(round_).isoformat(),
		"registration_id": registration.id,
		"token": participant.token,
	}


__all__ = ["TickReport", "TransitionDriver"]
