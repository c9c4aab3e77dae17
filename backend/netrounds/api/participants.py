"""FastAPI routes used by participants: register, confirm, cancel, check in."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from netrounds.api.errors import DomainError, as_http_error
from netrounds.domain.rounds import RoundService, models, schemas
from netrounds.domain.rounds.errors import NotFoundError
from netrounds.infra.auth import get_participant_token
from netrounds.infra.clock import ensure_aware, request_now

router = APIRouter(tags=["participants"])

_service = RoundService()


async def current_participant(token: str = Depends(get_participant_token)) -> models.Participant:
	try:
		return await _service.participant_by_token(token)
	except NotFoundError as exc:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_participant_token") from exc
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.post("/registrations", response_model=schemas.RegisterResponse, status_code=status.HTTP_201_CREATED)
async def register_endpoint(
	payload: schemas.RegisterRequest,
	now: datetime = Depends(request_now),
) -> schemas.RegisterResponse:
	try:
		return await _service.register_participant(payload, now)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.post("/participants/verify-email", response_model=List[schemas.RegistrationOut])
async def verify_email_endpoint(
	payload: schemas.VerifyEmailRequest,
	now: datetime = Depends(request_now),
) -> List[schemas.RegistrationOut]:
	try:
		return await _service.verify_email(payload.token, now)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.post("/registrations/{registration_id}/confirm", response_model=schemas.ConfirmResponse)
async def confirm_endpoint(
	registration_id: str,
	participant: models.Participant = Depends(current_participant),
	now: datetime = Depends(request_now),
) -> schemas.ConfirmResponse:
	try:
		return await _service.confirm_attendance(registration_id, now, participant=participant)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.post("/registrations/{registration_id}/cancel", response_model=schemas.RegistrationStatusResponse)
async def cancel_endpoint(
	registration_id: str,
	participant: models.Participant = Depends(current_participant),
	now: datetime = Depends(request_now),
) -> schemas.RegistrationStatusResponse:
	try:
		return await _service.unregister(registration_id, now, participant=participant)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.get("/participants/me/dashboard", response_model=schemas.DashboardResponse)
async def dashboard_endpoint(
	participant: models.Participant = Depends(current_participant),
	now: datetime = Depends(request_now),
) -> schemas.DashboardResponse:
	try:
		return await _service.participant_dashboard(participant, now)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.get("/matches/{match_id}", response_model=schemas.MatchOut)
async def get_match_endpoint(
	match_id: str,
	participant: models.Participant = Depends(current_participant),
) -> schemas.MatchOut:
	try:
		return await _service.get_match(match_id, participant=participant)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.post("/matches/{match_id}/check-in", response_model=schemas.RegistrationStatusResponse)
async def check_in_endpoint(
	match_id: str,
	participant: models.Participant = Depends(current_participant),
	now: datetime = Depends(request_now),
) -> schemas.RegistrationStatusResponse:
	try:
		return await _service.check_in(match_id, participant.id, now)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.post("/matches/{match_id}/met", response_model=schemas.RegistrationStatusResponse)
async def met_endpoint(
	match_id: str,
	participant: models.Participant = Depends(current_participant),
	now: datetime = Depends(request_now),
) -> schemas.RegistrationStatusResponse:
	try:
		return await _service.confirm_met(match_id, participant.id, now)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.get("/rounds/{round_id}/phase", response_model=schemas.PhaseResponse)
async def round_phase_endpoint(
	round_id: str,
	as_of: Optional[datetime] = Query(default=None, description="Evaluate the phase at this instant"),
	now: datetime = Depends(request_now),
) -> schemas.PhaseResponse:
	try:
		return await _service.get_round_phase(round_id, ensure_aware(as_of) if as_of else now)
	except DomainError as exc:
		raise as_http_error(exc) from exc
