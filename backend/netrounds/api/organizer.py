"""FastAPI routes for organizers (sessions, rounds, manual matching) and admins."""

from __future__ import annotations

from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, status

from netrounds.api.errors import DomainError, as_http_error
from netrounds.domain.rounds import RoundService, schemas
from netrounds.infra.auth import AuthenticatedUser, require_roles
from netrounds.infra.clock import ensure_aware, request_now

router = APIRouter(prefix="/organizer", tags=["organizer"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])

_service = RoundService()

_organizer = require_roles("organizer")
_admin = require_roles("admin")


@router.post("/sessions", response_model=schemas.SessionOut, status_code=status.HTTP_201_CREATED)
async def create_session_endpoint(
	payload: schemas.SessionCreateRequest,
	auth_user: AuthenticatedUser = Depends(_organizer),
	now: datetime = Depends(request_now),
) -> schemas.SessionOut:
	try:
		return await _service.create_session(auth_user, payload, now)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.get("/sessions", response_model=List[schemas.SessionOut])
async def list_sessions_endpoint(
	auth_user: AuthenticatedUser = Depends(_organizer),
	now: datetime = Depends(request_now),
) -> List[schemas.SessionOut]:
	try:
		return await _service.list_sessions(auth_user, now)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.get("/sessions/{session_id}", response_model=schemas.SessionOut)
async def get_session_endpoint(
	session_id: str,
	auth_user: AuthenticatedUser = Depends(_organizer),
	now: datetime = Depends(request_now),
) -> schemas.SessionOut:
	try:
		return await _service.get_session(auth_user, session_id, now)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.patch("/sessions/{session_id}", response_model=schemas.SessionOut)
async def update_session_endpoint(
	session_id: str,
	payload: schemas.SessionUpdateRequest,
	auth_user: AuthenticatedUser = Depends(_organizer),
	now: datetime = Depends(request_now),
) -> schemas.SessionOut:
	try:
		return await _service.update_session(auth_user, session_id, payload, now)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.post("/sessions/{session_id}/schedule", response_model=schemas.SessionOut)
async def schedule_session_endpoint(
	session_id: str,
	payload: schemas.ScheduleRequest,
	auth_user: AuthenticatedUser = Depends(_organizer),
	now: datetime = Depends(request_now),
) -> schemas.SessionOut:
	try:
		return await _service.schedule_session(auth_user, session_id, ensure_aware(payload.publish_at), now)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.post("/sessions/{session_id}/publish", response_model=schemas.SessionOut)
async def publish_session_endpoint(
	session_id: str,
	auth_user: AuthenticatedUser = Depends(_organizer),
	now: datetime = Depends(request_now),
) -> schemas.SessionOut:
	try:
		return await _service.publish_session(auth_user, session_id, now)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.post("/sessions/{session_id}/complete", response_model=schemas.SessionOut)
async def complete_session_endpoint(
	session_id: str,
	auth_user: AuthenticatedUser = Depends(_organizer),
	now: datetime = Depends(request_now),
) -> schemas.SessionOut:
	try:
		return await _service.complete_session(auth_user, session_id, now)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.get("/rounds/{round_id}/participants", response_model=schemas.RoundParticipantsResponse)
async def round_participants_endpoint(
	round_id: str,
	auth_user: AuthenticatedUser = Depends(_organizer),
	now: datetime = Depends(request_now),
) -> schemas.RoundParticipantsResponse:
	try:
		return await _service.round_participants(auth_user, round_id, now)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@router.post("/rounds/{round_id}/matching", response_model=schemas.MatchingRunResponse)
async def run_matching_endpoint(
	round_id: str,
	auth_user: AuthenticatedUser = Depends(_organizer),
	now: datetime = Depends(request_now),
) -> schemas.MatchingRunResponse:
	try:
		return await _service.run_matching(auth_user, round_id, now)
	except DomainError as exc:
		raise as_http_error(exc) from exc


@admin_router.get("/parameters", response_model=schemas.ParametersResponse)
async def get_parameters_endpoint(
	auth_user: AuthenticatedUser = Depends(_admin),
) -> schemas.ParametersResponse:
	try:
		return await _service.get_parameters()
	except DomainError as exc:
		raise as_http_error(exc) from exc


@admin_router.put("/parameters", response_model=schemas.ParametersResponse)
async def update_parameters_endpoint(
	payload: schemas.SystemParametersUpdate,
	auth_user: AuthenticatedUser = Depends(_admin),
) -> schemas.ParametersResponse:
	try:
		return await _service.update_parameters(payload)
	except DomainError as exc:
		raise as_http_error(exc) from exc
