"""Matching engine: partitions a round's confirmed participants into groups.

The engine runs at the round's start instant and must tolerate being triggered
more than once (overlapping driver ticks, a manual organizer trigger). It is
keyed by ``(round, start instant)``:

1. the full plan is computed deterministically (the shuffle is seeded from the
   round and its instant) and written to ``matching_lock`` with
   ``state=planned`` before anything else. The write is set-if-absent, so when
   two triggers plan from different confirmed sets only the first stored plan
   is ever executed;
2. one Match record per planned group is written (skipped if present);
3. participants are transitioned through the state machine;
4. the lock is flipped to ``state=completed``.

A trigger that finds a completed lock does nothing; one that finds a planned
lock resumes the stored plan. Every step is idempotent, so an interrupted run
is finished by the next trigger rather than rolled back.
"""

from __future__ import annotations

import hashlib
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional, Sequence

import ulid

from netrounds.domain.rounds import models
from netrounds.domain.rounds.models import MatchingType, RegistrationStatus
from netrounds.domain.rounds.repository import RoundsRepository, instant_key, matching_lock_key
from netrounds.domain.rounds.transitions import RegistrationEvent, apply_transition
from netrounds.infra.clock import parse_instant
from netrounds.obs import metrics as obs_metrics
from netrounds.settings import settings

_LOG = logging.getLogger(__name__)

LOCK_PLANNED = "planned"
LOCK_COMPLETED = "completed"

REASON_ONLY_PARTICIPANT = "You were the only participant who confirmed attendance"
REASON_GROUPS_FULL = "All groups for this round are full"
REASON_NO_COMPATIBLE = "No compatible group was available for your team or topic selection"
REASON_LATE_CONFIRMATION = "Confirmed after matching had already run"
REASON_NOT_CONFIRMED = "Did not confirm attendance before the round started"


@dataclass(slots=True)
class Candidate:
	participant_id: str
	name: str
	team: Optional[str] = None
	topics: tuple[str, ...] = ()

	def to_member(self) -> models.MatchMember:
		return models.MatchMember(
			participant_id=self.participant_id,
			name=self.name,
			team=self.team,
			topics=list(self.topics),
		)


@dataclass(slots=True)
class GroupingPlan:
	groups: list[list[Candidate]] = field(default_factory=list)
	no_match: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class MatchingReport:
	round_id: str
	instant: datetime
	state: str
	match_ids: list[str] = field(default_factory=list)
	matched: int = 0
	no_match: int = 0
	unconfirmed: int = 0

	def to_dict(self) -> dict:
		return {
			"round_id": self.round_id,
			"instant": self.instant.isoformat(),
			"state": self.state,
			"match_ids": list(self.match_ids),
			"matched": self.matched,
			"no_match": self.no_match,
			"unconfirmed": self.unconfirmed,
		}


def matching_seed(round_id: str, start: datetime) -> bytes:
	material = f"{settings.matching_seed}:{round_id}:{instant_key(start)}"
	return hashlib.sha256(material.encode("utf-8")).digest()


def match_id_for(seed: bytes, start: datetime, index: int) -> str:
	"""ULID whose time part is the round start and whose randomness derives from the seed."""
	digest = hashlib.sha256(seed + index.to_bytes(4, "big")).digest()
	millis = int(start.timestamp() * 1000)
	return ulid.from_bytes(millis.to_bytes(6, "big") + digest[:10]).str


def shuffled(candidates: Iterable[Candidate], seed: bytes) -> list[Candidate]:
	ordered = sorted(candidates, key=lambda item: item.participant_id)
	random.Random(int.from_bytes(seed[:8], "big")).shuffle(ordered)
	return ordered


def _shared_topics(group: Sequence[Candidate]) -> set[str]:
	common = set(group[0].topics)
	for member in group[1:]:
		common &= set(member.topics)
	return common


def is_compatible(
	group: Sequence[Candidate],
	candidate: Candidate,
	*,
	matching_type: MatchingType,
	require_shared_topic: bool,
) -> bool:
	if matching_type == MatchingType.ACROSS_TEAMS and candidate.team is not None:
		if any(member.team == candidate.team for member in group):
			return False
	if matching_type == MatchingType.WITHIN_TEAMS:
		if any(member.team != candidate.team for member in group):
			return False
	if require_shared_topic:
		if not (_shared_topics(group) & set(candidate.topics)):
			return False
	return True


def _meetings(candidate: Candidate, group: Sequence[Candidate], met: set[frozenset[str]]) -> int:
	return sum(1 for member in group if frozenset((member.participant_id, candidate.participant_id)) in met)


def _split_for(
	candidate: Candidate,
	groups: list[list[Candidate]],
	fits: Callable[[Sequence[Candidate], Candidate], bool],
	met: set[frozenset[str]],
) -> bool:
	"""Pair ``candidate`` with a member taken from a group that stays at two or more.

	Dropping a member never breaks a group's team or topic constraints, so the
	donor group stays valid.
	"""
	for donor in reversed(groups):
		if len(donor) < 3:
			continue
		partners = [member for member in donor if fits([member], candidate)]
		if not partners:
			continue
		partner = min(partners, key=lambda member: _meetings(candidate, [member], met))
		donor.remove(partner)
		groups.append([partner, candidate])
		return True
	return False


def build_groups(
	candidates: Sequence[Candidate],
	*,
	group_size: int,
	matching_type: MatchingType = MatchingType.RANDOM,
	require_shared_topic: bool = False,
	already_met: Optional[set[frozenset[str]]] = None,
	max_groups: Optional[int] = None,
) -> GroupingPlan:
	"""Partition ``candidates`` (already in shuffled order) into groups.

	Groups are filled consecutively from the pool. Among compatible candidates
	the one who met the fewest current members in earlier rounds is taken;
	ties keep pool order, so without history or constraints this is a plain
	consecutive partition. A trailing singleton joins the previous group; when
	the team or topic rules forbid every existing group, it is paired with a
	compatible member taken from a group of three or more. Only when neither
	works is it reported as no-match.
	"""
	plan = GroupingPlan()
	met = already_met or set()
	group_size = max(1, group_size)
	if not candidates:
		return plan
	if len(candidates) == 1 and group_size > 1:
		plan.no_match[candidates[0].participant_id] = REASON_ONLY_PARTICIPANT
		return plan

	def fits(group: Sequence[Candidate], candidate: Candidate) -> bool:
		return is_compatible(
			group, candidate, matching_type=matching_type, require_shared_topic=require_shared_topic
		)

	pool = list(candidates)
	groups: list[list[Candidate]] = []
	while pool:
		group = [pool.pop(0)]
		while len(group) < group_size:
			options = [item for item in pool if fits(group, item)]
			if not options:
				break
			best = min(options, key=lambda item: _meetings(item, group, met))
			group.append(best)
			pool.remove(best)
		groups.append(group)

	if group_size > 1:
		singles = [group for group in groups if len(group) == 1]
		for single in singles:
			groups.remove(single)
			candidate = single[0]
			# previous group first, then the rest from the back
			for target in reversed(groups):
				if fits(target, candidate):
					target.append(candidate)
					break
			else:
				room = max_groups is None or len(groups) < max_groups
				if not (room and _split_for(candidate, groups, fits, met)):
					plan.no_match[candidate.participant_id] = REASON_NO_COMPATIBLE

	if max_groups is not None and len(groups) > max_groups:
		for group in groups[max_groups:]:
			for candidate in group:
				plan.no_match[candidate.participant_id] = REASON_GROUPS_FULL
		groups = groups[:max_groups]
	plan.groups = groups
	return plan


async def _previous_pairs(
	repo: RoundsRepository, session: models.Session, round_: models.Round
) -> set[frozenset[str]]:
	start = session.round_start(round_)
	pairs: set[frozenset[str]] = set()
	for other in session.rounds:
		if other.id == round_.id or session.round_start(other) >= start:
			continue
		for match in await repo.list_round_matches(other.id):
			for first, second in models.unique_pairs(match.participant_ids):
				pairs.add(frozenset((first, second)))
	return pairs


async def _candidates(
	repo: RoundsRepository, registrations: Iterable[models.Registration]
) -> list[Candidate]:
	result: list[Candidate] = []
	for registration in registrations:
		participant = await repo.get_participant(registration.participant_id)
		result.append(
			Candidate(
				participant_id=registration.participant_id,
				name=participant.display_name if participant else registration.participant_id,
				team=registration.selected_team,
				topics=tuple(registration.selected_topics),
			)
		)
	return result


async def plan_matching(
	repo: RoundsRepository,
	session: models.Session,
	round_: models.Round,
	now: datetime,
	*,
	trigger: str,
) -> dict:
	start = session.round_start(round_)
	seed = matching_seed(round_.id, start)
	registrations = await repo.list_round_registrations(round_.id)
	confirmed = [item for item in registrations if item.status == RegistrationStatus.CONFIRMED]
	candidates = shuffled(await _candidates(repo, confirmed), seed)
	grouping = build_groups(
		candidates,
		group_size=round_.group_size,
		matching_type=session.matching_type,
		require_shared_topic=session.require_shared_topic,
		already_met=await _previous_pairs(repo, session, round_),
		max_groups=session.max_groups if session.limit_groups else None,
	)
	groups = []
	for index, group in enumerate(grouping.groups):
		point = session.meeting_points[index % len(session.meeting_points)] if session.meeting_points else None
		groups.append(
			{
				"match_id": match_id_for(seed, start, index),
				"members": [candidate.to_member().to_dict() for candidate in group],
				"meeting_point": point.to_dict() if point else None,
			}
		)
	return {
		"state": LOCK_PLANNED,
		"session_id": session.id,
		"round_id": round_.id,
		"instant": start.isoformat(),
		"trigger": trigger,
		"planned_at": now.isoformat(),
		"groups": groups,
		"no_match": grouping.no_match,
	}


async def run_matching(
	repo: RoundsRepository,
	session: models.Session,
	round_: models.Round,
	now: datetime,
	*,
	trigger: str = "driver",
) -> MatchingReport:
	"""Run (or resume) matching for the round's current start instant."""
	start = session.round_start(round_)
	lock_key = matching_lock_key(round_.id, start)
	lock = await repo.get_marker(lock_key)
	if lock and lock.get("state") == LOCK_COMPLETED:
		obs_metrics.record_matching("noop")
		return MatchingReport(
			round_id=round_.id,
			instant=start,
			state="noop",
			match_ids=[group["match_id"] for group in lock.get("groups", [])],
		)
	resumed = lock is not None
	if lock is None:
		plan = await plan_matching(repo, session, round_, now, trigger=trigger)
		if await repo.add_marker(lock_key, plan):
			lock = plan
		else:
			# another trigger stored its plan first; only the stored plan is executed
			resumed = True
			lock = await repo.get_marker(lock_key)

	report = MatchingReport(round_id=round_.id, instant=start, state="resumed" if resumed else "completed")
	planned_at = parse_instant(lock["planned_at"])
	for group in lock["groups"]:
		match_id = group["match_id"]
		if await repo.get_match(match_id) is None:
			point = group.get("meeting_point")
			await repo.save_match(
				models.Match(
					id=match_id,
					session_id=session.id,
					round_id=round_.id,
					round_instant=start,
					members=[models.MatchMember.from_dict(item) for item in group["members"]],
					meeting_point=models.MeetingPoint.from_dict(point) if point else None,
					created_at=planned_at,
				)
			)
		report.match_ids.append(match_id)
		for member in group["members"]:
			result = await apply_transition(
				repo, round_.id, member["participant_id"], RegistrationEvent.ENTER_MATCHING, now, matched_id=match_id
			)
			if result.registration.status == RegistrationStatus.MATCHED:
				report.matched += 1

	for participant_id, reason in lock.get("no_match", {}).items():
		result = await apply_transition(
			repo, round_.id, participant_id, RegistrationEvent.ENTER_MATCHING, now, reason=reason
		)
		if result.registration.status == RegistrationStatus.NO_MATCH:
			report.no_match += 1

	report.unconfirmed = await unconfirm_stragglers(repo, round_, now)

	lock["state"] = LOCK_COMPLETED
	lock["completed_at"] = now.isoformat()
	await repo.set_marker(lock_key, lock)
	obs_metrics.record_matching(report.state, groups=len(report.match_ids))
	_LOG.info(
		"matching.completed",
		extra={
			"round_id": round_.id,
			"session_id": session.id,
			"instant": start.isoformat(),
			"trigger": trigger,
			"groups": len(report.match_ids),
			"matched": report.matched,
			"no_match": report.no_match,
			"unconfirmed": report.unconfirmed,
			"resumed": resumed,
		},
	)
	return report


async def unconfirm_stragglers(repo: RoundsRepository, round_: models.Round, now: datetime) -> int:
	count = 0
	for registration in await repo.list_round_registrations(round_.id):
		if registration.status not in (
			RegistrationStatus.PENDING_VERIFICATION,
			RegistrationStatus.REGISTERED,
			RegistrationStatus.WAITING_FOR_CONFIRMATION,
		):
			continue
		result = await apply_transition(
			repo,
			round_.id,
			registration.participant_id,
			RegistrationEvent.AUTO_UNCONFIRM,
			now,
			reason=REASON_NOT_CONFIRMED,
		)
		if result.changed:
			count += 1
	return count


async def matching_completed(repo: RoundsRepository, session: models.Session, round_: models.Round) -> bool:
	lock = await repo.get_marker(matching_lock_key(round_.id, session.round_start(round_)))
	return bool(lock and lock.get("state") == LOCK_COMPLETED)


async def sweep_late_confirmations(
	repo: RoundsRepository, session: models.Session, round_: models.Round, now: datetime
) -> int:
	"""Confirmations that landed after the lock completed can no longer be grouped."""
	if not await matching_completed(repo, session, round_):
		return 0
	count = 0
	for registration in await repo.list_round_registrations(round_.id):
		if registration.status != RegistrationStatus.CONFIRMED:
			continue
		result = await apply_transition(
			repo,
			round_.id,
			registration.participant_id,
			RegistrationEvent.ENTER_MATCHING,
			now,
			reason=REASON_LATE_CONFIRMATION,
		)
		if result.changed:
			count += 1
	if count:
		_LOG.info("matching.late_confirmations", extra={"round_id": round_.id, "count": count})
	return count


__all__ = [
	"Candidate",
	"GroupingPlan",
	"MatchingReport",
	"build_groups",
	"is_compatible",
	"match_id_for",
	"matching_completed",
	"run_matching",
	"shuffled",
	"sweep_late_confirmations",
	"unconfirm_stragglers",
]
