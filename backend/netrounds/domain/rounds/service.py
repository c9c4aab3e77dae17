"""Round lifecycle service layer."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime
from typing import Iterable, List, Optional

import ulid

from netrounds.domain.rounds import matching, models, outcomes, policy, schemas
from netrounds.domain.rounds.errors import (
	ConflictError,
	ForbiddenError,
	NotFoundError,
	ValidationError,
)
from netrounds.domain.rounds.models import Phase, RegistrationStatus, SessionStatus
from netrounds.domain.rounds.phase import compute_phase, phase_boundaries
from netrounds.domain.rounds.repository import RoundsRepository
from netrounds.domain.rounds.transitions import (
	ALREADY_CONFIRMED,
	RegistrationEvent,
	apply_transition,
	next_status,
)
from netrounds.infra import notifications
from netrounds.infra.auth import AuthenticatedUser
from netrounds.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)


def _new_id() -> str:
	return str(ulid.new())


def _new_token() -> str:
	return secrets.token_urlsafe(24)


class RoundService:
	def __init__(
		self,
		*,
		repository: RoundsRepository | None = None,
		notifier: notifications.Notifier | None = None,
	) -> None:
		self.repo = repository or RoundsRepository()
		self.notifier = notifier or notifications.RedisStreamNotifier()

	# lookups

	async def _session(self, session_id: str) -> models.Session:
		session = await self.repo.get_session(session_id)
		if session is None:
			raise NotFoundError("session_not_found")
		return session

	async def _round(self, round_id: str) -> tuple[models.Session, models.Round]:
		found = await self.repo.find_round(round_id)
		if found is None:
			raise NotFoundError("round_not_found")
		return found

	async def _registration(
		self, registration_id: str, participant: Optional[models.Participant] = None
	) -> models.Registration:
		registration = await self.repo.get_registration_by_id(registration_id)
		if registration is None:
			raise NotFoundError("registration_not_found")
		if participant is not None and registration.participant_id != participant.id:
			raise ForbiddenError("forbidden")
		return registration

	async def _match(self, match_id: str) -> models.Match:
		match = await self.repo.get_match(match_id)
		if match is None:
			raise NotFoundError("match_not_found")
		return match

	async def _owned_session(self, user: AuthenticatedUser, session_id: str) -> models.Session:
		session = await self._session(session_id)
		policy.ensure_owner(session, user)
		return session

	async def participant_by_token(self, token: str) -> models.Participant:
		participant = await self.repo.get_participant_by_token(token)
		if participant is None:
			raise NotFoundError("participant_not_found")
		return participant

	# participant surface

	async def register_participant(self, payload: schemas.RegisterRequest, now: datetime) -> schemas.RegisterResponse:
		params = await self.repo.get_parameters()
		session = await self._session(payload.session_id)
		rounds: list[models.Round] = []
		for round_id in dict.fromkeys(payload.round_ids):
			round_ = session.find_round(round_id)
			if round_ is None:
				raise NotFoundError("round_not_found")
			# gate every round before writing anything
			policy.ensure_registration_open(compute_phase(session, round_, params, now))
			rounds.append(round_)
		self._validate_selections(session, payload.selected_team, payload.selected_topics)

		participant, created = await self._upsert_participant(payload.participant, now)
		verification_required = params.require_email_verification and not participant.email_verified
		if verification_required and not participant.verification_token:
			participant.verification_token = _new_token()
			await self.repo.save_participant(participant)

		registration_ids: list[str] = []
		already: list[str] = []
		for round_ in rounds:
			existing = await self.repo.get_registration(round_.id, participant.id)
			if existing is not None and existing.status != RegistrationStatus.CANCELLED:
				already.append(round_.id)
				registration_ids.append(existing.id)
				continue
			active = [item for item in await self.repo.list_round_registrations(round_.id) if item.is_active()]
			policy.ensure_capacity_available(session, len(active))
			if existing is None:
				registration = self._new_registration(
					session, round_, participant, payload, now, verification_required=verification_required
				)
				await self.repo.save_registration(registration)
				obs_metrics.record_transition(RegistrationEvent.REGISTER.value, "applied")
			else:
				existing.selected_team = payload.selected_team
				existing.selected_topics = list(payload.selected_topics)
				await self.repo.save_registration(existing)
				result = await apply_transition(
					self.repo,
					round_.id,
					participant.id,
					RegistrationEvent.REGISTER,
					now,
					verification_required=verification_required,
				)
				registration = result.registration
			registration_ids.append(registration.id)

		new_rounds = [round_ for round_ in rounds if round_.id not in already]
		if new_rounds:
			template = (
				notifications.TEMPLATE_EMAIL_VERIFICATION
				if verification_required
				else notifications.TEMPLATE_REGISTRATION
			)
			await self.notifier.send(
				participant,
				template,
				{
					"first_name": participant.first_name,
					"session_name": session.name,
					"rounds": ", ".join(round_.name for round_ in new_rounds),
					"token": participant.token,
					"verification_token": participant.verification_token if verification_required else None,
				},
			)
		_LOG.info(
			"registration.created",
			extra={
				"session_id": session.id,
				"participant_id": participant.id,
				"rounds": [round_.id for round_ in new_rounds],
				"already_registered": already,
				"new_participant": created,
			},
		)
		return schemas.RegisterResponse(
			status=RegistrationStatus.PENDING_VERIFICATION if verification_required else RegistrationStatus.REGISTERED,
			participant_id=participant.id,
			participant_token=participant.token,
			registration_ids=registration_ids,
			already_registered=already,
		)

	def _validate_selections(self, session: models.Session, team: Optional[str], topics: Iterable[str]) -> None:
		if team is not None and session.teams and team not in session.teams:
			raise ValidationError("invalid_team")
		if session.matching_type != models.MatchingType.RANDOM and team is None:
			raise ValidationError("invalid_team", message="this session matches by team; pick one")
		unknown = [topic for topic in topics if session.topics and topic not in session.topics]
		if unknown:
			raise ValidationError("invalid_topics", message=f"unknown topics: {', '.join(unknown)}")

	async def _upsert_participant(
		self, info: schemas.ParticipantInfo, now: datetime
	) -> tuple[models.Participant, bool]:
		email = info.email.strip().lower()
		participant = await self.repo.get_participant_by_email(email)
		created = participant is None
		if participant is None:
			participant = models.Participant(
				id=_new_id(),
				email=email,
				first_name=info.first_name.strip(),
				last_name=info.last_name.strip(),
				token=_new_token(),
				phone=info.phone,
				notifications_enabled=info.notifications_enabled,
				created_at=now,
			)
		else:
			participant.first_name = info.first_name.strip() or participant.first_name
			participant.last_name = info.last_name.strip() or participant.last_name
			participant.phone = info.phone or participant.phone
			participant.notifications_enabled = info.notifications_enabled
		participant.updated_at = now
		await self.repo.save_participant(participant)
		return participant, created

	def _new_registration(
		self,
		session: models.Session,
		round_: models.Round,
		participant: models.Participant,
		payload: schemas.RegisterRequest,
		now: datetime,
		*,
		verification_required: bool,
	) -> models.Registration:
		transition = next_status(None, RegistrationEvent.REGISTER, verification_required=verification_required)
		return models.Registration(
			id=_new_id(),
			session_id=session.id,
			round_id=round_.id,
			participant_id=participant.id,
			status=transition.status,
			selected_team=payload.selected_team,
			selected_topics=list(payload.selected_topics),
			registered_at=now,
			last_status_update=now,
			history=[
				models.HistoryEntry(status=transition.status, event=RegistrationEvent.REGISTER.value, at=now)
			],
		)

	async def verify_email(self, token: str, now: datetime) -> List[schemas.RegistrationOut]:
		participant = await self.repo.get_participant_by_verification_token(token)
		if participant is None:
			raise NotFoundError("participant_not_found", message="unknown verification token")
		if not participant.email_verified:
			participant.email_verified = True
			participant.updated_at = now
			await self.repo.save_participant(participant)
		params = await self.repo.get_parameters()
		result: list[schemas.RegistrationOut] = []
		for registration in await self.repo.list_participant_registrations(participant.id):
			if registration.status == RegistrationStatus.PENDING_VERIFICATION:
				found = await self.repo.find_round(registration.round_id)
				if found is not None:
					session, round_ = found
					phase = compute_phase(session, round_, params, now)
					if phase.is_before(Phase.MATCHING):
						registration = (
							await apply_transition(
								self.repo, round_.id, participant.id, RegistrationEvent.VERIFY_EMAIL, now, phase=phase
							)
						).registration
			result.append(_registration_out(registration))
		return result

	async def confirm_attendance(
		self, registration_id: str, now: datetime, *, participant: Optional[models.Participant] = None
	) -> schemas.ConfirmResponse:
		registration = await self._registration(registration_id, participant)
		if registration.status in ALREADY_CONFIRMED:
			# late duplicate confirm: success without touching anything
			obs_metrics.record_transition(RegistrationEvent.CONFIRM.value, "satisfied")
			return schemas.ConfirmResponse(
				registration_id=registration.id,
				status=registration.status,
				confirmed_at=registration.confirmed_at,
			)
		session, round_ = await self._round(registration.round_id)
		params = await self.repo.get_parameters()
		phase = compute_phase(session, round_, params, now)
		policy.ensure_confirmation_open(phase)
		result = await apply_transition(
			self.repo, round_.id, registration.participant_id, RegistrationEvent.CONFIRM, now, phase=phase
		)
		registration = result.registration
		if result.changed and await matching.matching_completed(self.repo, session, round_):
			registration = (
				await apply_transition(
					self.repo,
					round_.id,
					registration.participant_id,
					RegistrationEvent.ENTER_MATCHING,
					now,
					reason=matching.REASON_LATE_CONFIRMATION,
				)
			).registration
		return schemas.ConfirmResponse(
			registration_id=registration.id,
			status=registration.status,
			confirmed_at=registration.confirmed_at,
		)

	async def unregister(
		self, registration_id: str, now: datetime, *, participant: Optional[models.Participant] = None
	) -> schemas.RegistrationStatusResponse:
		registration = await self._registration(registration_id, participant)
		session, round_ = await self._round(registration.round_id)
		params = await self.repo.get_parameters()
		phase = compute_phase(session, round_, params, now)
		result = await apply_transition(
			self.repo, round_.id, registration.participant_id, RegistrationEvent.CANCEL, now, phase=phase
		)
		return schemas.RegistrationStatusResponse(
			registration_id=result.registration.id, status=result.registration.status
		)

	async def check_in(self, match_id: str, participant_id: str, now: datetime) -> schemas.RegistrationStatusResponse:
		match = await self._match(match_id)
		phase = await self._match_phase(match, now)
		result = await outcomes.check_in(self.repo, match, participant_id, phase, now)
		return schemas.RegistrationStatusResponse(
			registration_id=result.registration.id, status=result.registration.status
		)

	async def confirm_met(
		self, match_id: str, participant_id: str, now: datetime
	) -> schemas.RegistrationStatusResponse:
		match = await self._match(match_id)
		phase = await self._match_phase(match, now)
		result = await outcomes.confirm_partner_met(self.repo, match, participant_id, phase, now)
		return schemas.RegistrationStatusResponse(
			registration_id=result.registration.id, status=result.registration.status
		)

	async def _match_phase(self, match: models.Match, now: datetime) -> Phase:
		session, round_ = await self._round(match.round_id)
		params = await self.repo.get_parameters()
		return compute_phase(session, round_, params, now)

	async def get_round_phase(self, round_id: str, as_of: datetime) -> schemas.PhaseResponse:
		session, round_ = await self._round(round_id)
		params = await self.repo.get_parameters()
		return schemas.PhaseResponse(
			round_id=round_.id,
			session_id=session.id,
			phase=compute_phase(session, round_, params, as_of),
			as_of=as_of,
			**phase_boundaries(session, round_, params),
		)

	async def participant_dashboard(
		self, participant: models.Participant, now: datetime
	) -> schemas.DashboardResponse:
		params = await self.repo.get_parameters()
		entries: list[schemas.DashboardEntry] = []
		for registration in await self.repo.list_participant_registrations(participant.id):
			found = await self.repo.find_round(registration.round_id)
			if found is None:
				continue
			session, round_ = found
			match = await self.repo.get_match(registration.match_id) if registration.match_id else None
			entries.append(
				schemas.DashboardEntry(
					registration=_registration_out(registration),
					session_name=session.name,
					round_name=round_.name,
					start_at=session.round_start(round_),
					phase=compute_phase(session, round_, params, now),
					match=_match_out(match) if match else None,
				)
			)
		entries.sort(key=lambda entry: entry.start_at)
		return schemas.DashboardResponse(
			participant_id=participant.id,
			name=participant.display_name,
			email_verified=participant.email_verified,
			registrations=entries,
		)

	async def get_match(
		self, match_id: str, *, participant: Optional[models.Participant] = None
	) -> schemas.MatchOut:
		match = await self._match(match_id)
		if participant is not None and match.member(participant.id) is None:
			raise ForbiddenError("forbidden")
		return _match_out(match)

	# organizer surface

	async def create_session(
		self, user: AuthenticatedUser, payload: schemas.SessionCreateRequest, now: datetime
	) -> schemas.SessionOut:
		params = await self.repo.get_parameters()
		session = models.Session(
			id=_new_id(),
			organizer_id=user.id,
			name=payload.name.strip(),
			status=SessionStatus.DRAFT,
			date=payload.date,
			created_at=now,
			updated_at=now,
		)
		if payload.timezone:
			session.timezone = payload.timezone
		self._apply_fields(session, payload.model_dump(exclude={"name", "date", "timezone"}), params)
		policy.validate_session(session, params)
		await self._claim_round_ids(session)
		await self.repo.save_session(session)
		_LOG.info("session.created", extra={"session_id": session.id, "organizer_id": user.id})
		return _session_out(session, params, now)

	async def update_session(
		self, user: AuthenticatedUser, session_id: str, payload: schemas.SessionUpdateRequest, now: datetime
	) -> schemas.SessionOut:
		session = await self._owned_session(user, session_id)
		params = await self.repo.get_parameters()
		policy.ensure_session_editable(
			session, (compute_phase(session, round_, params, now) for round_ in session.rounds)
		)
		changes = payload.model_dump(exclude_unset=True)
		if "name" in changes and changes["name"] is not None:
			session.name = changes.pop("name").strip()
		if changes.get("date") is not None:
			session.date = changes.pop("date")
		if changes.get("timezone"):
			session.timezone = changes.pop("timezone")
		previous_ids = [round_.id for round_ in session.rounds]
		self._apply_fields(session, changes, params)
		policy.validate_session(session, params)
		dropped = [round_id for round_id in previous_ids if session.find_round(round_id) is None]
		await self._ensure_droppable(dropped)
		await self._claim_round_ids(session)
		session.updated_at = now
		await self.repo.save_session(session)
		for round_id in dropped:
			await self.repo.release_round(round_id, session.id)
		_LOG.info("session.updated", extra={"session_id": session.id, "fields": sorted(payload.model_fields_set)})
		return _session_out(session, params, now)

	async def _claim_round_ids(self, session: models.Session) -> None:
		claimed: list[str] = []
		for round_ in session.rounds:
			if await self.repo.claim_round(round_.id, session.id):
				claimed.append(round_.id)
				continue
			if await self.repo.round_owner(round_.id) != session.id:
				for round_id in claimed:
					await self.repo.release_round(round_id, session.id)
				raise ConflictError("round_id_taken", message=f"round id {round_.id} belongs to another session")

	async def _ensure_droppable(self, round_ids: Iterable[str]) -> None:
		for round_id in round_ids:
			registrations = await self.repo.list_round_registrations(round_id)
			if any(item.is_active() for item in registrations):
				raise ConflictError(
					"round_has_registrations",
					message=f"round {round_id} has active registrations and cannot be removed",
				)

	def _apply_fields(self, session: models.Session, fields: dict, params: models.SystemParameters) -> None:
		if fields.get("rounds") is not None:
			session.rounds = _merged_rounds(session.rounds, fields["rounds"], params.default_group_size)
		if fields.get("meeting_points") is not None:
			session.meeting_points = [
				models.MeetingPoint(
					id=item.get("id") or _new_id(),
					name=item["name"],
					kind=models.MeetingPointKind(item.get("kind") or models.MeetingPointKind.PHYSICAL),
					photo_url=None if item.get("kind") == models.MeetingPointKind.VIRTUAL else item.get("photo_url"),
					video_url=item.get("video_url"),
				)
				for item in fields["meeting_points"]
			]
		for name in (
			"teams",
			"topics",
			"matching_type",
			"require_shared_topic",
			"limit_participants",
			"max_participants",
			"limit_groups",
			"max_groups",
		):
			if name not in fields:
				continue
			value = fields[name]
			if value is None and name not in ("max_participants", "max_groups"):
				continue
			if name == "matching_type":
				value = models.MatchingType(value)
			setattr(session, name, value)

	async def schedule_session(
		self, user: AuthenticatedUser, session_id: str, publish_at: datetime, now: datetime
	) -> schemas.SessionOut:
		session = await self._owned_session(user, session_id)
		if session.status not in (SessionStatus.DRAFT, SessionStatus.SCHEDULED):
			raise ConflictError("invalid_transition", message=f"cannot schedule a {session.status.value} session")
		if not session.rounds:
			raise ValidationError("invalid_rounds", message="a session needs at least one round")
		session.status = SessionStatus.SCHEDULED
		session.publish_at = publish_at
		session.updated_at = now
		await self.repo.save_session(session)
		_LOG.info("session.scheduled", extra={"session_id": session.id, "publish_at": publish_at.isoformat()})
		return _session_out(session, await self.repo.get_parameters(), now)

	async def publish_session(self, user: AuthenticatedUser, session_id: str, now: datetime) -> schemas.SessionOut:
		session = await self._owned_session(user, session_id)
		if session.status == SessionStatus.COMPLETED:
			raise ConflictError("session_locked", message="completed sessions cannot be published")
		if not session.rounds:
			raise ValidationError("invalid_rounds", message="a session needs at least one round")
		if session.status != SessionStatus.PUBLISHED:
			session.status = SessionStatus.PUBLISHED
			session.updated_at = now
			await self.repo.save_session(session)
			_LOG.info("session.published", extra={"session_id": session.id, "trigger": "organizer"})
		return _session_out(session, await self.repo.get_parameters(), now)

	async def complete_session(self, user: AuthenticatedUser, session_id: str, now: datetime) -> schemas.SessionOut:
		session = await self._owned_session(user, session_id)
		if session.status != SessionStatus.COMPLETED:
			session.status = SessionStatus.COMPLETED
			session.updated_at = now
			await self.repo.save_session(session)
			_LOG.info("session.completed", extra={"session_id": session.id, "trigger": "organizer"})
		return _session_out(session, await self.repo.get_parameters(), now)

	async def list_sessions(self, user: AuthenticatedUser, now: datetime) -> List[schemas.SessionOut]:
		if user.is_admin():
			sessions = await self.repo.list_sessions()
		else:
			sessions = await self.repo.list_organizer_sessions(user.id)
		params = await self.repo.get_parameters()
		sessions.sort(key=lambda item: (item.date, item.created_at or now))
		return [_session_out(session, params, now) for session in sessions]

	async def get_session(self, user: AuthenticatedUser, session_id: str, now: datetime) -> schemas.SessionOut:
		session = await self._owned_session(user, session_id)
		return _session_out(session, await self.repo.get_parameters(), now)

	async def round_participants(
		self, user: AuthenticatedUser, round_id: str, now: datetime
	) -> schemas.RoundParticipantsResponse:
		session, round_ = await self._round(round_id)
		policy.ensure_owner(session, user)
		params = await self.repo.get_parameters()
		registrations = await self.repo.list_round_registrations(round_id)
		registrations.sort(key=lambda item: (item.registered_at or now, item.id))
		counts: dict[str, int] = {}
		for registration in registrations:
			counts[registration.status.value] = counts.get(registration.status.value, 0) + 1
		return schemas.RoundParticipantsResponse(
			round_id=round_id,
			phase=compute_phase(session, round_, params, now),
			counts=counts,
			registrations=[_registration_out(item) for item in registrations],
		)

	async def run_matching(
		self, user: AuthenticatedUser, round_id: str, now: datetime
	) -> schemas.MatchingRunResponse:
		session, round_ = await self._round(round_id)
		policy.ensure_owner(session, user)
		params = await self.repo.get_parameters()
		policy.ensure_matching_started(compute_phase(session, round_, params, now))
		report = await matching.run_matching(self.repo, session, round_, now, trigger="organizer")
		return schemas.MatchingRunResponse(**report.to_dict())

	async def get_parameters(self) -> schemas.ParametersResponse:
		params = await self.repo.get_parameters()
		return schemas.ParametersResponse(parameters=params.to_dict(), warnings=params.warnings())

	async def update_parameters(self, payload: schemas.SystemParametersUpdate) -> schemas.ParametersResponse:
		params = await self.repo.get_parameters()
		for name, value in payload.model_dump(exclude_none=True).items():
			setattr(params, name, value)
		await self.repo.save_parameters(params)
		warnings = params.warnings()
		for warning in warnings:
			_LOG.warning("parameters.warning", extra={"warning": warning})
		_LOG.info("parameters.updated", extra={"fields": sorted(payload.model_dump(exclude_none=True))})
		return schemas.ParametersResponse(parameters=params.to_dict(), warnings=warnings)


def _merged_rounds(existing: List[models.Round], items: List[dict], default_group_size: int) -> List[models.Round]:
	"""Build the edited round list; a round sent without id keeps the id of the existing round with its name."""
	explicit = {item["id"] for item in items if item.get("id")}
	by_name = {_round_name_key(round_.name): round_.id for round_ in existing if round_.id not in explicit}
	rounds: List[models.Round] = []
	for item in items:
		round_id = item.get("id") or by_name.pop(_round_name_key(item["name"]), None) or _new_id()
		rounds.append(
			models.Round(
				id=round_id,
				name=item["name"],
				date=item.get("date"),
				start_time=item["start_time"],
				duration_minutes=item["duration_minutes"],
				group_size=item.get("group_size") or default_group_size,
			)
		)
	return rounds


def _round_name_key(name: str) -> str:
	return name.strip().lower()


def _registration_out(registration: models.Registration) -> schemas.RegistrationOut:
	return schemas.RegistrationOut.model_validate(registration.to_dict())


def _match_out(match: models.Match) -> schemas.MatchOut:
	return schemas.MatchOut.model_validate(match.to_dict())


def _session_out(session: models.Session, params: models.SystemParameters, now: datetime) -> schemas.SessionOut:
	data = session.to_dict()
	data["rounds"] = [
		{
			**round_.to_dict(),
			"start_at": session.round_start(round_),
			"end_at": session.round_end(round_),
			"phase": compute_phase(session, round_, params, now),
		}
		for round_ in session.rounds
	]
	return schemas.SessionOut.model_validate(data)


__all__ = ["RoundService"]
