"""Domain models for sessions, rounds, registrations and matches."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from netrounds.infra.clock import ensure_aware, parse_instant
from netrounds.settings import settings


class SessionStatus(str, Enum):
	DRAFT = "draft"
	SCHEDULED = "scheduled"
	PUBLISHED = "published"
	COMPLETED = "completed"


class Phase(str, Enum):
	DRAFT = "draft"
	SCHEDULED = "scheduled"
	OPEN_FOR_REGISTRATION = "open-for-registration"
	SAFETY_WINDOW = "safety-window"
	WAITING_FOR_CONFIRMATION = "waiting-for-confirmation"
	MATCHING = "matching"
	WALKING_TO_MEETING_POINT = "walking-to-meeting-point"
	NETWORKING = "networking"
	COMPLETED = "completed"

	@property
	def rank(self) -> int:
		return PHASE_ORDER.index(self)

	def is_before(self, other: "Phase") -> bool:
		return self.rank < other.rank

	def is_at_or_after(self, other: "Phase") -> bool:
		return self.rank >= other.rank


PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)

# phases during which a round is physically running
RUNNING_PHASES = frozenset({Phase.MATCHING, Phase.WALKING_TO_MEETING_POINT, Phase.NETWORKING})


class RegistrationStatus(str, Enum):
	PENDING_VERIFICATION = "pending-verification"
	REGISTERED = "registered"
	WAITING_FOR_CONFIRMATION = "waiting-for-confirmation"
	CONFIRMED = "confirmed"
	UNCONFIRMED = "unconfirmed"
	CANCELLED = "cancelled"
	MATCHED = "matched"
	CHECKED_IN = "checked-in"
	MET = "met"
	MISSED = "missed"
	LEFT_ALONE = "left-alone"
	NO_MATCH = "no-match"


# Position on the forward path. Statuses sharing a rank are alternative branches.
# CANCELLED sits outside the path and is handled explicitly by the state machine.
STATUS_RANK: dict[RegistrationStatus, int] = {
	RegistrationStatus.PENDING_VERIFICATION: 0,
	RegistrationStatus.REGISTERED: 1,
	RegistrationStatus.WAITING_FOR_CONFIRMATION: 2,
	RegistrationStatus.UNCONFIRMED: 3,
	RegistrationStatus.CONFIRMED: 3,
	RegistrationStatus.MATCHED: 4,
	RegistrationStatus.NO_MATCH: 4,
	RegistrationStatus.CHECKED_IN: 5,
	RegistrationStatus.MET: 6,
	RegistrationStatus.MISSED: 6,
	RegistrationStatus.LEFT_ALONE: 6,
}

TERMINAL_STATUSES = frozenset(
	{
		RegistrationStatus.CANCELLED,
		RegistrationStatus.UNCONFIRMED,
		RegistrationStatus.NO_MATCH,
		RegistrationStatus.MET,
		RegistrationStatus.MISSED,
		RegistrationStatus.LEFT_ALONE,
	}
)

ACTIVE_STATUSES = frozenset(
	{
		RegistrationStatus.PENDING_VERIFICATION,
		RegistrationStatus.REGISTERED,
		RegistrationStatus.WAITING_FOR_CONFIRMATION,
		RegistrationStatus.CONFIRMED,
	}
)


class MatchingType(str, Enum):
	RANDOM = "random"
	ACROSS_TEAMS = "across-teams"
	WITHIN_TEAMS = "within-teams"


class MeetingPointKind(str, Enum):
	PHYSICAL = "physical"
	VIRTUAL = "virtual"


def _iso(value: Optional[datetime]) -> Optional[str]:
	return ensure_aware(value).isoformat() if value is not None else None


def _instant(value: Any) -> Optional[datetime]:
	if value in (None, ""):
		return None
	if isinstance(value, datetime):
		return ensure_aware(value)
	return parse_instant(str(value))


def _day(value: Any) -> Optional[date]:
	if value in (None, ""):
		return None
	if isinstance(value, date):
		return value
	return date.fromisoformat(str(value))


def parse_clock_time(value: str) -> time:
	"""Parse "HH:MM" (seconds tolerated)."""
	parts = str(value).strip().split(":")
	if len(parts) < 2:
		raise ValueError(f"invalid time {value!r}")
	hours, minutes = int(parts[0]), int(parts[1])
	seconds = int(parts[2]) if len(parts) > 2 else 0
	return time(hours, minutes, seconds)


@dataclass(slots=True)
class MeetingPoint:
	id: str
	name: str
	kind: MeetingPointKind = MeetingPointKind.PHYSICAL
	photo_url: Optional[str] = None
	video_url: Optional[str] = None

	def is_virtual(self) -> bool:
		return self.kind == MeetingPointKind.VIRTUAL

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"name": self.name,
			"kind": self.kind.value,
			# a virtual point has no physical location to show
			"photo_url": None if self.is_virtual() else self.photo_url,
			"video_url": self.video_url,
		}

	@classmethod
	def from_dict(cls, data: dict) -> "MeetingPoint":
		return cls(
			id=data["id"],
			name=data["name"],
			kind=MeetingPointKind(data.get("kind") or MeetingPointKind.PHYSICAL.value),
			photo_url=data.get("photo_url"),
			video_url=data.get("video_url"),
		)


@dataclass(slots=True)
class Round:
	id: str
	name: str
	start_time: str
	duration_minutes: int
	group_size: int = 2
	date: Optional[date] = None

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"name": self.name,
			"date": self.date.isoformat() if self.date else None,
			"start_time": self.start_time,
			"duration_minutes": self.duration_minutes,
			"group_size": self.group_size,
		}

	@classmethod
	def from_dict(cls, data: dict) -> "Round":
		return cls(
			id=data["id"],
			name=data.get("name") or data["id"],
			date=_day(data.get("date")),
			start_time=data["start_time"],
			duration_minutes=int(data["duration_minutes"]),
			group_size=int(data.get("group_size") or settings.default_group_size),
		)


@dataclass(slots=True)
class Session:
	"""Event-level container owned by an organizer."""

	id: str
	organizer_id: str
	name: str
	status: SessionStatus
	date: date
	rounds: list[Round] = field(default_factory=list)
	meeting_points: list[MeetingPoint] = field(default_factory=list)
	teams: list[str] = field(default_factory=list)
	topics: list[str] = field(default_factory=list)
	timezone: str = field(default_factory=lambda: settings.default_timezone)
	matching_type: MatchingType = MatchingType.RANDOM
	require_shared_topic: bool = False
	limit_participants: bool = False
	max_participants: Optional[int] = None
	limit_groups: bool = False
	max_groups: Optional[int] = None
	publish_at: Optional[datetime] = None
	created_at: Optional[datetime] = None
	updated_at: Optional[datetime] = None

	@property
	def tzinfo(self) -> ZoneInfo:
		return ZoneInfo(self.timezone)

	def find_round(self, round_id: str) -> Optional[Round]:
		for item in self.rounds:
			if item.id == round_id:
				return item
		return None

	def round_start(self, round_: Round) -> datetime:
		day = round_.date or self.date
		local = datetime.combine(day, parse_clock_time(round_.start_time), tzinfo=self.tzinfo)
		return local.astimezone(ZoneInfo("UTC"))

	def round_end(self, round_: Round) -> datetime:
		return self.round_start(round_) + timedelta(minutes=round_.duration_minutes)

	def ordered_rounds(self) -> list[Round]:
		return sorted(self.rounds, key=self.round_start)

	def find_meeting_point(self, meeting_point_id: str) -> Optional[MeetingPoint]:
		for point in self.meeting_points:
			if point.id == meeting_point_id:
				return point
		return None

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"organizer_id": self.organizer_id,
			"name": self.name,
			"status": self.status.value,
			"date": self.date.isoformat(),
			"timezone": self.timezone,
			"rounds": [item.to_dict() for item in self.rounds],
			"meeting_points": [item.to_dict() for item in self.meeting_points],
			"teams": list(self.teams),
			"topics": list(self.topics),
			"matching_type": self.matching_type.value,
			"require_shared_topic": self.require_shared_topic,
			"limit_participants": self.limit_participants,
			"max_participants": self.max_participants,
			"limit_groups": self.limit_groups,
			"max_groups": self.max_groups,
			"publish_at": _iso(self.publish_at),
			"created_at": _iso(self.created_at),
			"updated_at": _iso(self.updated_at),
		}

	@classmethod
	def from_dict(cls, data: dict) -> "Session":
		return cls(
			id=data["id"],
			organizer_id=data["organizer_id"],
			name=data.get("name") or "",
			status=SessionStatus(data.get("status") or SessionStatus.DRAFT.value),
			date=_day(data["date"]),
			timezone=data.get("timezone") or settings.default_timezone,
			rounds=[Round.from_dict(item) for item in data.get("rounds") or []],
			meeting_points=[MeetingPoint.from_dict(item) for item in data.get("meeting_points") or []],
			teams=list(data.get("teams") or []),
			topics=list(data.get("topics") or []),
			matching_type=MatchingType(data.get("matching_type") or MatchingType.RANDOM.value),
			require_shared_topic=bool(data.get("require_shared_topic")),
			limit_participants=bool(data.get("limit_participants")),
			max_participants=data.get("max_participants"),
			limit_groups=bool(data.get("limit_groups")),
			max_groups=data.get("max_groups"),
			publish_at=_instant(data.get("publish_at")),
			created_at=_instant(data.get("created_at")),
			updated_at=_instant(data.get("updated_at")),
		)


@dataclass(slots=True)
class SystemParameters:
	"""Window widths and defaults shared by every session."""

	safety_window_minutes: int = 6
	confirmation_window_minutes: int = 5
	walking_time_minutes: int = 3
	notification_early_minutes: int = 10
	notification_early_enabled: bool = True
	confirmation_notification_enabled: bool = True
	minimal_gap_between_rounds_minutes: int = 10
	minimal_round_duration_minutes: int = 5
	maximal_round_duration_minutes: int = 240
	default_group_size: int = 2
	require_email_verification: bool = False

	@classmethod
	def defaults(cls) -> "SystemParameters":
		return cls(**{name: getattr(settings, name) for name in cls.field_names()})

	@classmethod
	def field_names(cls) -> tuple[str, ...]:
		return tuple(cls.__dataclass_fields__)

	def warnings(self) -> list[str]:
		"""Configuration problems worth surfacing; values are never corrected."""
		issues: list[str] = []
		if self.confirmation_window_minutes < 0:
			issues.append("confirmation_window_minutes is negative")
		if self.safety_window_minutes < self.confirmation_window_minutes:
			issues.append(
				"safety_window_minutes (%d) is smaller than confirmation_window_minutes (%d); "
				"the safety window is empty" % (self.safety_window_minutes, self.confirmation_window_minutes)
			)
		if self.walking_time_minutes < 0:
			issues.append("walking_time_minutes is negative")
		if self.minimal_round_duration_minutes > self.maximal_round_duration_minutes:
			issues.append("minimal_round_duration_minutes exceeds maximal_round_duration_minutes")
		if self.default_group_size < 1:
			issues.append("default_group_size must be at least 1")
		return issues

	def to_dict(self) -> dict:
		return {name: getattr(self, name) for name in self.field_names()}

	@classmethod
	def from_dict(cls, data: dict | None) -> "SystemParameters":
		base = cls.defaults()
		for name in cls.field_names():
			if data and data.get(name) is not None:
				setattr(base, name, type(getattr(base, name))(data[name]))
		return base


@dataclass(slots=True)
class Participant:
	id: str
	email: str
	first_name: str
	last_name: str
	token: str
	phone: Optional[str] = None
	email_verified: bool = False
	verification_token: Optional[str] = None
	notifications_enabled: bool = True
	created_at: Optional[datetime] = None
	updated_at: Optional[datetime] = None

	@property
	def display_name(self) -> str:
		return f"{self.first_name} {self.last_name}".strip()

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"email": self.email,
			"first_name": self.first_name,
			"last_name": self.last_name,
			"token": self.token,
			"phone": self.phone,
			"email_verified": self.email_verified,
			"verification_token": self.verification_token,
			"notifications_enabled": self.notifications_enabled,
			"created_at": _iso(self.created_at),
			"updated_at": _iso(self.updated_at),
		}

	@classmethod
	def from_dict(cls, data: dict) -> "Participant":
		return cls(
			id=data["id"],
			email=data["email"],
			first_name=data.get("first_name") or "",
			last_name=data.get("last_name") or "",
			token=data["token"],
			phone=data.get("phone"),
			email_verified=bool(data.get("email_verified")),
			verification_token=data.get("verification_token"),
			notifications_enabled=data.get("notifications_enabled", True) is not False,
			created_at=_instant(data.get("created_at")),
			updated_at=_instant(data.get("updated_at")),
		)


@dataclass(slots=True)
class HistoryEntry:
	status: RegistrationStatus
	event: str
	at: datetime

	def to_dict(self) -> dict:
		return {"status": self.status.value, "event": self.event, "at": _iso(self.at)}

	@classmethod
	def from_dict(cls, data: dict) -> "HistoryEntry":
		return cls(status=RegistrationStatus(data["status"]), event=data["event"], at=_instant(data["at"]))


# Timestamp attribute stamped the first time a status is reached.
STATUS_TIMESTAMP: dict[RegistrationStatus, str] = {
	RegistrationStatus.REGISTERED: "registered_at",
	RegistrationStatus.PENDING_VERIFICATION: "registered_at",
	RegistrationStatus.CONFIRMED: "confirmed_at",
	RegistrationStatus.UNCONFIRMED: "unconfirmed_at",
	RegistrationStatus.CANCELLED: "cancelled_at",
	RegistrationStatus.MATCHED: "matched_at",
	RegistrationStatus.CHECKED_IN: "checked_in_at",
	RegistrationStatus.MET: "met_at",
	RegistrationStatus.MISSED: "outcome_at",
	RegistrationStatus.LEFT_ALONE: "outcome_at",
	RegistrationStatus.NO_MATCH: "outcome_at",
}


@dataclass(slots=True)
class Registration:
	"""One participant's standing for one round; never deleted."""

	id: str
	session_id: str
	round_id: str
	participant_id: str
	status: RegistrationStatus
	selected_team: Optional[str] = None
	selected_topics: list[str] = field(default_factory=list)
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
	history: list[HistoryEntry] = field(default_factory=list)

	def is_active(self) -> bool:
		return self.status in ACTIVE_STATUSES

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"session_id": self.session_id,
			"round_id": self.round_id,
			"participant_id": self.participant_id,
			"status": self.status.value,
			"selected_team": self.selected_team,
			"selected_topics": list(self.selected_topics),
			"match_id": self.match_id,
			"registered_at": _iso(self.registered_at),
			"confirmed_at": _iso(self.confirmed_at),
			"unconfirmed_at": _iso(self.unconfirmed_at),
			"cancelled_at": _iso(self.cancelled_at),
			"matched_at": _iso(self.matched_at),
			"checked_in_at": _iso(self.checked_in_at),
			"met_at": _iso(self.met_at),
			"outcome_at": _iso(self.outcome_at),
			"last_status_update": _iso(self.last_status_update),
			"unconfirmed_reason": self.unconfirmed_reason,
			"no_match_reason": self.no_match_reason,
			"history": [entry.to_dict() for entry in self.history],
		}

	@classmethod
	def from_dict(cls, data: dict) -> "Registration":
		return cls(
			id=data["id"],
			session_id=data["session_id"],
			round_id=data["round_id"],
			participant_id=data["participant_id"],
			status=RegistrationStatus(data["status"]),
			selected_team=data.get("selected_team"),
			selected_topics=list(data.get("selected_topics") or []),
			match_id=data.get("match_id"),
			registered_at=_instant(data.get("registered_at")),
			confirmed_at=_instant(data.get("confirmed_at")),
			unconfirmed_at=_instant(data.get("unconfirmed_at")),
			cancelled_at=_instant(data.get("cancelled_at")),
			matched_at=_instant(data.get("matched_at")),
			checked_in_at=_instant(data.get("checked_in_at")),
			met_at=_instant(data.get("met_at")),
			outcome_at=_instant(data.get("outcome_at")),
			last_status_update=_instant(data.get("last_status_update")),
			unconfirmed_reason=data.get("unconfirmed_reason"),
			no_match_reason=data.get("no_match_reason"),
			history=[HistoryEntry.from_dict(item) for item in data.get("history") or []],
		)


@dataclass(slots=True)
class MatchMember:
	participant_id: str
	name: str
	team: Optional[str] = None
	topics: list[str] = field(default_factory=list)
	status: RegistrationStatus = RegistrationStatus.MATCHED
	checked_in_at: Optional[datetime] = None

	def has_shown_up(self) -> bool:
		return self.status in (RegistrationStatus.CHECKED_IN, RegistrationStatus.MET)

	def to_dict(self) -> dict:
		return {
			"participant_id": self.participant_id,
			"name": self.name,
			"team": self.team,
			"topics": list(self.topics),
			"status": self.status.value,
			"checked_in_at": _iso(self.checked_in_at),
		}

	@classmethod
	def from_dict(cls, data: dict) -> "MatchMember":
		return cls(
			participant_id=data["participant_id"],
			name=data.get("name") or "",
			team=data.get("team"),
			topics=list(data.get("topics") or []),
			status=RegistrationStatus(data.get("status") or RegistrationStatus.MATCHED.value),
			checked_in_at=_instant(data.get("checked_in_at")),
		)


@dataclass(slots=True)
class Match:
	"""A group of participants sent to one meeting point for one round."""

	id: str
	session_id: str
	round_id: str
	round_instant: datetime
	members: list[MatchMember]
	meeting_point: Optional[MeetingPoint] = None
	created_at: Optional[datetime] = None

	@property
	def participant_ids(self) -> list[str]:
		return [member.participant_id for member in self.members]

	def member(self, participant_id: str) -> Optional[MatchMember]:
		for member in self.members:
			if member.participant_id == participant_id:
				return member
		return None

	def partners_of(self, participant_id: str) -> list[MatchMember]:
		return [member for member in self.members if member.participant_id != participant_id]

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"session_id": self.session_id,
			"round_id": self.round_id,
			"round_instant": _iso(self.round_instant),
			"members": [member.to_dict() for member in self.members],
			"meeting_point": self.meeting_point.to_dict() if self.meeting_point else None,
			"created_at": _iso(self.created_at),
		}

	@classmethod
	def from_dict(cls, data: dict) -> "Match":
		point = data.get("meeting_point")
		return cls(
			id=data["id"],
			session_id=data["session_id"],
			round_id=data["round_id"],
			round_instant=_instant(data["round_instant"]),
			members=[MatchMember.from_dict(item) for item in data.get("members") or []],
			meeting_point=MeetingPoint.from_dict(point) if point else None,
			created_at=_instant(data.get("created_at")),
		)


def unique_pairs(ids: Iterable[str]) -> Iterable[tuple[str, str]]:
	items = list(ids)
	for i, first in enumerate(items):
		for second in items[i + 1 :]:
			yield first, second
