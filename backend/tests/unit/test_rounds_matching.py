import pytest

from conftest import at
from netrounds.domain.rounds import matching, models
from netrounds.domain.rounds.matching import Candidate, build_groups, run_matching, shuffled
from netrounds.domain.rounds.models import MatchingType, RegistrationStatus
from netrounds.domain.rounds.repository import matching_lock_key


def _candidates(count, *, team=None):
	return [Candidate(participant_id=f"p{index:02d}", name=f"P{index}", team=team) for index in range(1, count + 1)]


def _sizes(plan):
	return sorted(len(group) for group in plan.groups)


def test_seven_participants_in_pairs_form_two_pairs_and_a_trio():
	plan = build_groups(_candidates(7), group_size=2)
	assert _sizes(plan) == [2, 2, 3]
	assert not plan.no_match
	# the trailing singleton joins the previous group
	assert [c.participant_id for c in plan.groups[-1]] == ["p05", "p06", "p07"]


@pytest.mark.parametrize("count,group_size,expected", [(6, 3, [3, 3]), (7, 3, [3, 4]), (8, 2, [2, 2, 2, 2]), (5, 4, [5])])
def test_group_sizes(count, group_size, expected):
	assert _sizes(build_groups(_candidates(count), group_size=group_size)) == expected


def test_group_size_one_gives_every_participant_a_group():
	plan = build_groups(_candidates(3), group_size=1)
	assert _sizes(plan) == [1, 1, 1]
	assert not plan.no_match


def test_single_participant_gets_no_match():
	plan = build_groups(_candidates(1), group_size=2)
	assert plan.groups == []
	assert plan.no_match == {"p01": matching.REASON_ONLY_PARTICIPANT}


def test_empty_pool():
	plan = build_groups([], group_size=2)
	assert plan.groups == [] and plan.no_match == {}


def test_across_teams_never_pairs_teammates():
	pool = [
		Candidate("a1", "A1", team="A"),
		Candidate("a2", "A2", team="A"),
		Candidate("a3", "A3", team="A"),
		Candidate("b1", "B1", team="B"),
	]
	plan = build_groups(pool, group_size=2, matching_type=MatchingType.ACROSS_TEAMS)
	assert [[c.participant_id for c in group] for group in plan.groups] == [["a1", "b1"]]
	assert plan.no_match == {"a2": matching.REASON_NO_COMPATIBLE, "a3": matching.REASON_NO_COMPATIBLE}


def test_across_teams_leftover_takes_a_member_from_a_full_group():
	pool = [
		Candidate("a1", "A1", team="A"),
		Candidate("b1", "B1", team="B"),
		Candidate("c1", "C1", team="C"),
		Candidate("a2", "A2", team="A"),
		Candidate("b2", "B2", team="B"),
		Candidate("a3", "A3", team="A"),
	]
	plan = build_groups(pool, group_size=3, matching_type=MatchingType.ACROSS_TEAMS)

	assert plan.no_match == {}
	placed = sorted(c.participant_id for group in plan.groups for c in group)
	assert placed == ["a1", "a2", "a3", "b1", "b2", "c1"]
	for group in plan.groups:
		assert len(group) >= 2
		assert len({c.team for c in group}) == len(group)


def test_leftover_is_not_split_off_past_max_groups():
	pool = [
		Candidate("a1", "A1", team="A"),
		Candidate("b1", "B1", team="B"),
		Candidate("c1", "C1", team="C"),
		Candidate("a2", "A2", team="A"),
	]
	plan = build_groups(pool, group_size=3, matching_type=MatchingType.ACROSS_TEAMS, max_groups=1)

	assert [[c.participant_id for c in group] for group in plan.groups] == [["a1", "b1", "c1"]]
	assert plan.no_match == {"a2": matching.REASON_NO_COMPATIBLE}


def test_within_teams_groups_teammates():
	pool = [
		Candidate("a1", "A1", team="A"),
		Candidate("b1", "B1", team="B"),
		Candidate("a2", "A2", team="A"),
		Candidate("b2", "B2", team="B"),
	]
	plan = build_groups(pool, group_size=2, matching_type=MatchingType.WITHIN_TEAMS)
	for group in plan.groups:
		assert len({c.team for c in group}) == 1
	assert _sizes(plan) == [2, 2]


def test_shared_topic_required():
	pool = [
		Candidate("p1", "P1", topics=("ai",)),
		Candidate("p2", "P2", topics=("sales",)),
		Candidate("p3", "P3", topics=("ai", "sales")),
		Candidate("p4", "P4", topics=("sales",)),
	]
	plan = build_groups(pool, group_size=2, require_shared_topic=True)
	groups = [[c.participant_id for c in group] for group in plan.groups]
	assert groups == [["p1", "p3"], ["p2", "p4"]]


def test_max_groups_caps_and_reports_overflow():
	plan = build_groups(_candidates(6), group_size=2, max_groups=2)
	assert _sizes(plan) == [2, 2]
	assert plan.no_match == {"p05": matching.REASON_GROUPS_FULL, "p06": matching.REASON_GROUPS_FULL}


def test_prefers_partners_not_met_in_earlier_rounds():
	already_met = {frozenset(("p01", "p02"))}
	plan = build_groups(_candidates(4), group_size=2, already_met=already_met)
	groups = [[c.participant_id for c in group] for group in plan.groups]
	assert groups == [["p01", "p03"], ["p02", "p04"]]


def test_shuffle_is_deterministic_for_a_seed():
	seed = matching.matching_seed("r1", at("14:00"))
	first = [c.participant_id for c in shuffled(_candidates(10), seed)]
	again = [c.participant_id for c in shuffled(reversed(_candidates(10)), seed)]
	assert first == again
	assert sorted(first) == [f"p{index:02d}" for index in range(1, 11)]


def test_match_ids_are_stable_and_distinct():
	seed = matching.matching_seed("r1", at("14:00"))
	ids = [matching.match_id_for(seed, at("14:00"), index) for index in range(3)]
	assert ids == [matching.match_id_for(seed, at("14:00"), index) for index in range(3)]
	assert len(set(ids)) == 3


@pytest.mark.asyncio
async def test_run_matching_groups_confirmed_and_unconfirms_the_rest(world, repo):
	session = await world.save(world.session())
	await world.registrations(session, "r1", 7)
	await world.registration(session, "r1", "late", RegistrationStatus.WAITING_FOR_CONFIRMATION)
	await world.registration(session, "r1", "idle", RegistrationStatus.REGISTERED)
	await world.registration(session, "r1", "gone", RegistrationStatus.CANCELLED)

	report = await run_matching(repo, session, session.rounds[0], at("14:00"))

	assert report.state == "completed"
	assert report.matched == 7
	assert report.unconfirmed == 2
	matches = await repo.list_round_matches("r1")
	assert sorted(len(match.members) for match in matches) == [2, 2, 3]
	for registration in await repo.list_round_registrations("r1"):
		if registration.participant_id.startswith("p"):
			assert registration.status == RegistrationStatus.MATCHED
			assert registration.match_id in report.match_ids
		elif registration.participant_id == "gone":
			assert registration.status == RegistrationStatus.CANCELLED
		else:
			assert registration.status == RegistrationStatus.UNCONFIRMED
			assert registration.unconfirmed_reason == matching.REASON_NOT_CONFIRMED


@pytest.mark.asyncio
async def test_run_matching_twice_is_a_noop(world, repo):
	session = await world.save(world.session())
	await world.registrations(session, "r1", 5)

	first = await run_matching(repo, session, session.rounds[0], at("14:00"))
	before = {item.participant_id: item.to_dict() for item in await repo.list_round_registrations("r1")}
	second = await run_matching(repo, session, session.rounds[0], at("14:00:30"))

	assert second.state == "noop"
	assert sorted(second.match_ids) == sorted(first.match_ids)
	assert len(await repo.list_round_matches("r1")) == len(first.match_ids)
	after = {item.participant_id: item.to_dict() for item in await repo.list_round_registrations("r1")}
	assert after == before


@pytest.mark.asyncio
async def test_run_matching_resumes_a_planned_lock(world, repo):
	session = await world.save(world.session())
	round_ = session.rounds[0]
	await world.registrations(session, "r1", 4)
	plan = await matching.plan_matching(repo, session, round_, at("14:00"), trigger="driver")
	await repo.set_marker(matching_lock_key("r1", at("14:00")), plan)
	# one participant confirmed after the plan was written; the stored plan wins
	await world.registration(session, "r1", "p09", RegistrationStatus.CONFIRMED)

	report = await run_matching(repo, session, round_, at("14:00:05"))

	assert report.state == "resumed"
	assert report.match_ids == [group["match_id"] for group in plan["groups"]]
	lock = await repo.get_marker(matching_lock_key("r1", at("14:00")))
	assert lock["state"] == matching.LOCK_COMPLETED
	assert (await repo.get_registration("r1", "p09")).status == RegistrationStatus.CONFIRMED

	swept = await matching.sweep_late_confirmations(repo, session, round_, at("14:01"))
	assert swept == 1
	late = await repo.get_registration("r1", "p09")
	assert late.status == RegistrationStatus.NO_MATCH
	assert late.no_match_reason == matching.REASON_LATE_CONFIRMATION


@pytest.mark.asyncio
async def test_trigger_that_loses_the_plan_write_runs_the_stored_plan(world, repo, monkeypatch):
	session = await world.save(world.session())
	round_ = session.rounds[0]
	await world.registrations(session, "r1", 4)
	lock_key = matching_lock_key("r1", at("14:00"))
	# a concurrent trigger planned from a smaller confirmed set and stored it first
	stored = await matching.plan_matching(repo, session, round_, at("14:00"), trigger="organizer")
	stored["groups"] = stored["groups"][:1]
	kept = {member["participant_id"] for member in stored["groups"][0]["members"]}
	stored["no_match"] = {}
	await repo.set_marker(lock_key, stored)

	real_get_marker = repo.get_marker
	reads = []

	async def stale_first_read(key):
		reads.append(key)
		if len(reads) == 1:
			return None
		return await real_get_marker(key)

	monkeypatch.setattr(repo, "get_marker", stale_first_read)

	report = await run_matching(repo, session, round_, at("14:00"))

	assert report.state == "resumed"
	assert report.match_ids == [stored["groups"][0]["match_id"]]
	assert len(await repo.list_round_matches("r1")) == 1
	statuses = {item.participant_id: item.status for item in await repo.list_round_registrations("r1")}
	for participant_id, status in statuses.items():
		expected = RegistrationStatus.MATCHED if participant_id in kept else RegistrationStatus.CONFIRMED
		assert status == expected


@pytest.mark.asyncio
async def test_only_confirmed_participant_gets_no_match(world, repo):
	session = await world.save(world.session())
	await world.registrations(session, "r1", 1)

	report = await run_matching(repo, session, session.rounds[0], at("14:00"))

	assert report.match_ids == []
	assert report.no_match == 1
	registration = await repo.get_registration("r1", "p01")
	assert registration.status == RegistrationStatus.NO_MATCH
	assert registration.no_match_reason == matching.REASON_ONLY_PARTICIPANT


@pytest.mark.asyncio
async def test_meeting_points_are_assigned_round_robin(world, repo):
	points = [
		models.MeetingPoint(id="mp-a", name="Lobby"),
		models.MeetingPoint(id="mp-b", name="Online", kind=models.MeetingPointKind.VIRTUAL, video_url="https://meet.example/b"),
	]
	session = await world.save(world.session(meeting_points=points))
	await world.registrations(session, "r1", 6)

	report = await run_matching(repo, session, session.rounds[0], at("14:00"))

	assigned = [(await repo.get_match(match_id)).meeting_point.id for match_id in report.match_ids]
	assert assigned == ["mp-a", "mp-b", "mp-a"]
	virtual = await repo.get_match(report.match_ids[1])
	assert virtual.meeting_point.is_virtual()
	assert virtual.meeting_point.video_url == "https://meet.example/b"


@pytest.mark.asyncio
async def test_later_round_avoids_repeat_partners(world, repo):
	rounds = [
		models.Round(id="r1", name="Round 1", start_time="14:00", duration_minutes=20),
		models.Round(id="r2", name="Round 2", start_time="14:30", duration_minutes=20),
	]
	session = await world.save(world.session(rounds=rounds))
	await world.registrations(session, "r1", 4)
	await world.registrations(session, "r2", 4)

	await run_matching(repo, session, rounds[0], at("14:00"))
	first_pairs = {frozenset(match.participant_ids) for match in await repo.list_round_matches("r1")}
	await run_matching(repo, session, rounds[1], at("14:30"))
	second_pairs = {frozenset(match.participant_ids) for match in await repo.list_round_matches("r2")}

	assert not first_pairs & second_pairs
