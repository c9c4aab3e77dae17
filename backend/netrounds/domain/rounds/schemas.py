from __future__ import annotations

import datetime as dt
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from netrounds.domain.rounds.models import (
    MatchingType,
    MeetingPointKind,
    Phase,
    RegistrationStatus,
    SessionStatus,
)

_TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"
_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
# ids become key segments, so no ":" or glob characters
_ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"


class RoundIn(BaseModel):
    id: Optional[str] = Field(None, pattern=_ID_PATTERN)
    name: str = Field(..., min_length=1, max_length=120)
    date: Optional[dt.date] = None  # defaults to the session date
    start_time: str = Field(..., pattern=_TIME_PATTERN)
    duration_minutes: int = Field(..., ge=1, le=24 * 60)
    group_size: Optional[int] = Field(None, ge=1, le=50)


class MeetingPointIn(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=120)
    kind: MeetingPointKind = MeetingPointKind.PHYSICAL
    photo_url: Optional[str] = None
    video_url: Optional[str] = None


class SessionCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    date: dt.date
    timezone: Optional[str] = None
    rounds: List[RoundIn] = Field(default_factory=list)
    meeting_points: List[MeetingPointIn] = Field(default_factory=list)
    teams: List[str] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)
    matching_type: MatchingType = MatchingType.RANDOM
    require_shared_topic: bool = False
    limit_participants: bool = False
    max_participants: Optional[int] = Field(None, ge=1)
    limit_groups: bool = False
    max_groups: Optional[int] = Field(None, ge=1)


class SessionUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    date: Optional[dt.date] = None
    timezone: Optional[str] = None
    rounds: Optional[List[RoundIn]] = None
    meeting_points: Optional[List[MeetingPointIn]] = None
    teams: Optional[List[str]] = None
    topics: Optional[List[str]] = None
    matching_type: Optional[MatchingType] = None
    require_shared_topic: Optional[bool] = None
    limit_participants: Optional[bool] = None
    max_participants: Optional[int] = Field(None, ge=1)
    limit_groups: Optional[bool] = None
    max_groups: Optional[int] = Field(None, ge=1)


class ScheduleRequest(BaseModel):
    publish_at: datetime


class ParticipantInfo(BaseModel):
    email: str = Field(..., pattern=_EMAIL_PATTERN, max_length=254)
    first_name: str = Field(..., min_length=1, max_length=80)
    last_name: str = Field("", max_length=80)
    phone: Optional[str] = Field(None, max_length=32)
    notifications_enabled: bool = True


class RegisterRequest(BaseModel):
    session_id: str
    round_ids: List[str] = Field(..., min_length=1)
    participant: ParticipantInfo
    selected_team: Optional[str] = None
    selected_topics: List[str] = Field(default_factory=list)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1)


class SystemParametersUpdate(BaseModel):
    safety_window_minutes: Optional[int] = Field(None, ge=0)
    confirmation_window_minutes: Optional[int] = Field(None, ge=0)
    walking_time_minutes: Optional[int] = Field(None, ge=0)
    notification_early_minutes: Optional[int] = Field(None, ge=0)
    notification_early_enabled: Optional[bool] = None
    confirmation_notification_enabled: Optional[bool] = None
    minimal_gap_between_rounds_minutes: Optional[int] = Field(None, ge=0)
    minimal_round_duration_minutes: Optional[int] = Field(None, ge=1)
    maximal_round_duration_minutes: Optional[int] = Field(None, ge=1)
    default_group_size: Optional[int] = Field(None, ge=1)
    require_email_verification: Optional[bool] = None


class MeetingPointOut(BaseModel):
    id: str
    name: str
    kind: MeetingPointKind
    photo_url: Optional[str] = None
    video_url: Optional[str] = None


class RoundOut(BaseModel):
    id: str
    name: str
    date: Optional[dt.date] = None
    start_time: str
    duration_minutes: int
    group_size: int
    start_at: datetime
    end_at: datetime
    phase: Phase


class SessionOut(BaseModel):
    id: str
    organizer_id: str
    name: str
    status: SessionStatus
    date: dt.date
    timezone: str
    rounds: List[RoundOut]
    meeting_points: List[MeetingPointOut]
    teams: List[str]
    topics: List[str]
    matching_type: MatchingType
    require_shared_topic: bool
    limit_participants: bool
    max_participants: Optional[int] = None
    limit_groups: bool
    max_groups: Optional[int] = None
    publish_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class HistoryEntryOut(BaseModel):
    status: RegistrationStatus
    event: str
    at: datetime


class RegistrationOut(BaseModel):
    id: str
    session_id: str
    round_id: str
    participant_id: str
    status: RegistrationStatus
    selected_team: Optional[str] = None
    selected_topics: List[str] = Field(default_factory=list)
    match_id: Optional[str] = None
    registered_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    unconfirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    matched_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    met_at: Optional[datetime] = None
    outcome_at: Optional[datetime] = None
    last_status_update: Optional[datetime] = None
    unconfirmed_reason: Optional[str] = None
    no_match_reason: Optional[str] = None
    history: List[HistoryEntryOut] = Field(default_factory=list)


class RegisterResponse(BaseModel):
    status: RegistrationStatus
    participant_id: str
    participant_token: str
    registration_ids: List[str]
    already_registered: List[str] = Field(default_factory=list)


class ConfirmResponse(BaseModel):
    registration_id: str
    status: RegistrationStatus
    confirmed_at: Optional[datetime] = None


class RegistrationStatusResponse(BaseModel):
    registration_id: str
    status: RegistrationStatus


class PhaseResponse(BaseModel):
    round_id: str
    session_id: str
    phase: Phase
    as_of: datetime
    registration_closes_at: datetime
    confirmation_opens_at: datetime
    start_at: datetime
    walking_ends_at: datetime
    end_at: datetime


class MatchMemberOut(BaseModel):
    participant_id: str
    name: str
    team: Optional[str] = None
    topics: List[str] = Field(default_factory=list)
    status: RegistrationStatus
    checked_in_at: Optional[datetime] = None


class MatchOut(BaseModel):
    id: str
    session_id: str
    round_id: str
    round_instant: datetime
    members: List[MatchMemberOut]
    meeting_point: Optional[MeetingPointOut] = None
    created_at: Optional[datetime] = None


class DashboardEntry(BaseModel):
    registration: RegistrationOut
    session_name: str
    round_name: str
    start_at: datetime
    phase: Phase
    match: Optional[MatchOut] = None


class DashboardResponse(BaseModel):
    participant_id: str
    name: str
    email_verified: bool
    registrations: List[DashboardEntry]


class SystemParametersOut(BaseModel):
    safety_window_minutes: int
    confirmation_window_minutes: int
    walking_time_minutes: int
    notification_early_minutes: int
    notification_early_enabled: bool
    confirmation_notification_enabled: bool
    minimal_gap_between_rounds_minutes: int
    minimal_round_duration_minutes: int
    maximal_round_duration_minutes: int
    default_group_size: int
    require_email_verification: bool


class ParametersResponse(BaseModel):
    parameters: SystemParametersOut
    warnings: List[str] = Field(default_factory=list)


class MatchingRunResponse(BaseModel):
    round_id: str
    instant: datetime
    state: str
    match_ids: List[str]
    matched: int
    no_match: int
    unconfirmed: int


class RoundParticipantsResponse(BaseModel):
    round_id: str
    phase: Phase
    counts: Dict[str, int]
    registrations: List[RegistrationOut]
