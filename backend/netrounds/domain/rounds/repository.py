"""Keyed-store persistence for the rounds domain.

Every record lives under its own key and every write is a single ``set``.
Reference keys (``round_ref``, ``registration_ref``, ``match_ref`` …) let the
service resolve an id without scanning. Round ids are global: a
``round_ref`` is claimed set-if-absent before a session first stores the round,
so round-keyed records (registrations, matches, locks) never mix sessions.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from netrounds.domain.rounds import models
from netrounds.infra.clock import ensure_aware
from netrounds.infra.store import KeyedStore, store as default_store

SYSTEM_PARAMETERS_KEY = "system_parameters"


def instant_key(at: datetime) -> str:
	return ensure_aware(at).astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def session_key(session_id: str) -> str:
	return f"session:{session_id}"


def organizer_session_key(organizer_id: str, session_id: str) -> str:
	return f"organizer_session:{organizer_id}:{session_id}"


def round_ref_key(round_id: str) -> str:
	return f"round_ref:{round_id}"


def participant_key(participant_id: str) -> str:
	return f"participant:{participant_id}"


def participant_email_key(email: str) -> str:
	return f"participant_email:{email.strip().lower()}"


def participant_token_key(token: str) -> str:
	return f"participant_token:{token}"


def verification_token_key(token: str) -> str:
	return f"participant_verification:{token}"


def registration_key(round_id: str, participant_id: str) -> str:
	return f"registration:{round_id}:{participant_id}"


def registration_ref_key(registration_id: str) -> str:
	return f"registration_ref:{registration_id}"


def participant_round_key(participant_id: str, round_id: str) -> str:
	return f"participant_round:{participant_id}:{round_id}"


def match_key(round_id: str, match_id: str) -> str:
	return f"match:{round_id}:{match_id}"


def match_ref_key(match_id: str) -> str:
	return f"match_ref:{match_id}"


def matching_lock_key(round_id: str, at: datetime) -> str:
	return f"matching_lock:{round_id}:{instant_key(at)}"


def outcomes_lock_key(round_id: str, at: datetime) -> str:
	return f"outcomes_lock:{round_id}:{instant_key(at)}"


def reminder_key(round_id: str, at: datetime) -> str:
	return f"reminder_sent:{round_id}:{instant_key(at)}"


class RoundsRepository:
	def __init__(self, store: KeyedStore | None = None) -> None:
		self.store = store or default_store

	# sessions

	async def get_session(self, session_id: str) -> Optional[models.Session]:
		data = await self.store.get(session_key(session_id))
		return models.Session.from_dict(data) if data else None

	async def save_session(self, session: models.Session) -> None:
		await self.store.set(session_key(session.id), session.to_dict())
		await self.store.set(
			organizer_session_key(session.organizer_id, session.id), {"session_id": session.id}
		)
		for round_ in session.rounds:
			await self.store.set(round_ref_key(round_.id), {"session_id": session.id})

	async def list_sessions(self) -> list[models.Session]:
		items = await self.store.get_by_prefix(session_key(""))
		return [models.Session.from_dict(item) for item in items]

	async def list_organizer_sessions(self, organizer_id: str) -> list[models.Session]:
		refs = await self.store.get_by_prefix(f"organizer_session:{organizer_id}:")
		sessions: list[models.Session] = []
		for ref in refs:
			session = await self.get_session(ref["session_id"])
			if session is not None:
				sessions.append(session)
		return sessions

	async def claim_round(self, round_id: str, session_id: str) -> bool:
		"""Reserve a globally unique round id; False when the id is already referenced."""
		return await self.store.add(round_ref_key(round_id), {"session_id": session_id})

	async def round_owner(self, round_id: str) -> Optional[str]:
		ref = await self.store.get(round_ref_key(round_id))
		return ref["session_id"] if ref else None

	async def release_round(self, round_id: str, session_id: str) -> None:
		if await self.round_owner(round_id) == session_id:
			await self.store.delete(round_ref_key(round_id))

	async def find_round(self, round_id: str) -> Optional[tuple[models.Session, models.Round]]:
		ref = await self.store.get(round_ref_key(round_id))
		if not ref:
			return None
		session = await self.get_session(ref["session_id"])
		if session is None:
			return None
		round_ = session.find_round(round_id)
		if round_ is None:
			# round removed by a later session edit
			return None
		return session, round_

	# participants

	async def get_participant(self, participant_id: str) -> Optional[models.Participant]:
		data = await self.store.get(participant_key(participant_id))
		return models.Participant.from_dict(data) if data else None

	async def _participant_via(self, ref_key: str) -> Optional[models.Participant]:
		ref = await self.store.get(ref_key)
		if not ref:
			return None
		return await self.get_participant(ref["participant_id"])

	async def get_participant_by_email(self, email: str) -> Optional[models.Participant]:
		return await self._participant_via(participant_email_key(email))

	async def get_participant_by_token(self, token: str) -> Optional[models.Participant]:
		return await self._participant_via(participant_token_key(token))

	async def get_participant_by_verification_token(self, token: str) -> Optional[models.Participant]:
		return await self._participant_via(verification_token_key(token))

	async def save_participant(self, participant: models.Participant) -> None:
		ref = {"participant_id": participant.id}
		await self.store.set(participant_key(participant.id), participant.to_dict())
		await self.store.set(participant_email_key(participant.email), ref)
		await self.store.set(participant_token_key(participant.token), ref)
		if participant.verification_token:
			await self.store.set(verification_token_key(participant.verification_token), ref)

	# registrations

	async def get_registration(self, round_id: str, participant_id: str) -> Optional[models.Registration]:
		data = await self.store.get(registration_key(round_id, participant_id))
		return models.Registration.from_dict(data) if data else None

	async def get_registration_by_id(self, registration_id: str) -> Optional[models.Registration]:
		ref = await self.store.get(registration_ref_key(registration_id))
		if not ref:
			return None
		return await self.get_registration(ref["round_id"], ref["participant_id"])

	async def save_registration(self, registration: models.Registration) -> None:
		await self.store.set(
			registration_key(registration.round_id, registration.participant_id), registration.to_dict()
		)
		ref = {"round_id": registration.round_id, "participant_id": registration.participant_id}
		await self.store.set(registration_ref_key(registration.id), ref)
		await self.store.set(participant_round_key(registration.participant_id, registration.round_id), ref)

	async def list_round_registrations(self, round_id: str) -> list[models.Registration]:
		items = await self.store.get_by_prefix(f"registration:{round_id}:")
		return [models.Registration.from_dict(item) for item in items]

	async def list_participant_registrations(self, participant_id: str) -> list[models.Registration]:
		refs = await self.store.get_by_prefix(f"participant_round:{participant_id}:")
		registrations: list[models.Registration] = []
		for ref in refs:
			registration = await self.get_registration(ref["round_id"], ref["participant_id"])
			if registration is not None:
				registrations.append(registration)
		return registrations

	# matches

	async def save_match(self, match: models.Match) -> None:
		await self.store.set(match_key(match.round_id, match.id), match.to_dict())
		await self.store.set(match_ref_key(match.id), {"round_id": match.round_id})

	async def get_match(self, match_id: str) -> Optional[models.Match]:
		ref = await self.store.get(match_ref_key(match_id))
		if not ref:
			return None
		data = await self.store.get(match_key(ref["round_id"], match_id))
		return models.Match.from_dict(data) if data else None

	async def list_round_matches(self, round_id: str) -> list[models.Match]:
		items = await self.store.get_by_prefix(f"match:{round_id}:")
		return [models.Match.from_dict(item) for item in items]

	# markers

	async def get_marker(self, key: str) -> Optional[dict[str, Any]]:
		return await self.store.get(key)

	async def set_marker(self, key: str, value: dict[str, Any]) -> None:
		await self.store.set(key, value)

	async def add_marker(self, key: str, value: dict[str, Any]) -> bool:
		return await self.store.add(key, value)

	# system parameters

	async def get_parameters(self) -> models.SystemParameters:
		return models.SystemParameters.from_dict(await self.store.get(SYSTEM_PARAMETERS_KEY))

	async def save_parameters(self, params: models.SystemParameters) -> None:
		await self.store.set(SYSTEM_PARAMETERS_KEY, params.to_dict())
