import pytest

from conftest import at
from netrounds.domain.rounds import models
from netrounds.domain.rounds.errors import ConflictError, NotFoundError, TooLateToCancel
from netrounds.domain.rounds.models import Phase, RegistrationStatus as S
from netrounds.domain.rounds.transitions import (
	AUTOMATIC_EVENTS,
	PRE_CONFIRMATION,
	RegistrationEvent as E,
	TransitionKind,
	apply_transition,
	is_backward,
	next_status,
)

CONFIRMED_OR_LATER = [
	status
	for status in S
	if status != S.UNCONFIRMED and models.STATUS_RANK.get(status, -1) >= models.STATUS_RANK[S.CONFIRMED]
]


@pytest.mark.parametrize(
	"current,event,kwargs,expected",
	[
		(None, E.REGISTER, {}, S.REGISTERED),
		(None, E.REGISTER, {"verification_required": True}, S.PENDING_VERIFICATION),
		(S.CANCELLED, E.REGISTER, {}, S.REGISTERED),
		(S.PENDING_VERIFICATION, E.VERIFY_EMAIL, {}, S.REGISTERED),
		(S.REGISTERED, E.ENTER_CONFIRMATION_WINDOW, {}, S.WAITING_FOR_CONFIRMATION),
		(S.REGISTERED, E.CONFIRM, {}, S.CONFIRMED),
		(S.WAITING_FOR_CONFIRMATION, E.CONFIRM, {}, S.CONFIRMED),
		(S.UNCONFIRMED, E.CONFIRM, {}, S.CONFIRMED),
		(S.WAITING_FOR_CONFIRMATION, E.AUTO_UNCONFIRM, {}, S.UNCONFIRMED),
		(S.PENDING_VERIFICATION, E.AUTO_UNCONFIRM, {}, S.UNCONFIRMED),
		(S.CONFIRMED, E.ENTER_MATCHING, {"matched": True}, S.MATCHED),
		(S.CONFIRMED, E.ENTER_MATCHING, {}, S.NO_MATCH),
		(S.MATCHED, E.CHECK_IN, {}, S.CHECKED_IN),
		(S.CHECKED_IN, E.CONFIRM_PARTNER_MET, {}, S.MET),
		(S.MATCHED, E.ROUND_ENDS_WITHOUT_CHECK_IN, {}, S.MISSED),
		(S.CHECKED_IN, E.ROUND_ENDS_WITHOUT_CHECK_IN, {}, S.LEFT_ALONE),
		(S.CHECKED_IN, E.ROUND_ENDS_WITHOUT_CHECK_IN, {"partner_checked_in": True}, S.MET),
		(S.WAITING_FOR_CONFIRMATION, E.CANCEL, {"phase": Phase.WAITING_FOR_CONFIRMATION}, S.CANCELLED),
		(S.UNCONFIRMED, E.CANCEL, {"phase": Phase.WAITING_FOR_CONFIRMATION}, S.CANCELLED),
	],
)
def test_legal_transitions(current, event, kwargs, expected):
	transition = next_status(current, event, **kwargs)
	assert transition.kind == TransitionKind.APPLIED
	assert transition.status == expected


@pytest.mark.parametrize("current", CONFIRMED_OR_LATER)
def test_confirm_is_satisfied_once_confirmed(current):
	assert next_status(current, E.CONFIRM).kind == TransitionKind.SATISFIED


@pytest.mark.parametrize("current", CONFIRMED_OR_LATER)
@pytest.mark.parametrize("event", sorted(AUTOMATIC_EVENTS, key=lambda item: item.value))
def test_automatic_events_never_move_back_before_confirmation(current, event):
	transition = next_status(current, event, matched=True)
	if transition.changed:
		assert transition.status not in PRE_CONFIRMATION
		assert not is_backward(current, transition.status)


@pytest.mark.parametrize(
	"current,event",
	[
		(S.CONFIRMED, E.ENTER_CONFIRMATION_WINDOW),
		(S.MATCHED, E.AUTO_UNCONFIRM),
		(S.REGISTERED, E.ENTER_MATCHING),
		(S.CANCELLED, E.ENTER_CONFIRMATION_WINDOW),
		(S.NO_MATCH, E.ROUND_ENDS_WITHOUT_CHECK_IN),
	],
)
def test_automatic_events_skip_instead_of_failing(current, event):
	assert next_status(current, event).kind == TransitionKind.SKIPPED


@pytest.mark.parametrize(
	"current,event",
	[
		(S.CANCELLED, E.CONFIRM),
		(S.PENDING_VERIFICATION, E.CONFIRM),
		(S.CONFIRMED, E.CHECK_IN),
		(S.NO_MATCH, E.CHECK_IN),
		(S.REGISTERED, E.CONFIRM_PARTNER_MET),
		(S.CANCELLED, E.VERIFY_EMAIL),
	],
)
def test_user_events_from_wrong_status_conflict(current, event):
	with pytest.raises(ConflictError) as excinfo:
		next_status(current, event)
	assert excinfo.value.code == "invalid_transition"


def test_event_without_registration_is_not_found():
	with pytest.raises(NotFoundError):
		next_status(None, E.CONFIRM)


@pytest.mark.parametrize("phase", [Phase.MATCHING, Phase.WALKING_TO_MEETING_POINT, Phase.NETWORKING, Phase.COMPLETED])
def test_cancel_from_matching_onwards_is_too_late(phase):
	with pytest.raises(TooLateToCancel) as excinfo:
		next_status(S.CONFIRMED, E.CANCEL, phase=phase)
	assert excinfo.value.code == "too_late_to_cancel"


def test_cancel_matched_registration_is_too_late_regardless_of_phase():
	with pytest.raises(TooLateToCancel):
		next_status(S.MATCHED, E.CANCEL, phase=Phase.WAITING_FOR_CONFIRMATION)


def test_cancel_twice_is_satisfied():
	assert next_status(S.CANCELLED, E.CANCEL, phase=Phase.COMPLETED).kind == TransitionKind.SATISFIED


def test_register_again_while_active_is_satisfied():
	assert next_status(S.CONFIRMED, E.REGISTER).kind == TransitionKind.SATISFIED


@pytest.mark.asyncio
async def test_confirm_twice_keeps_first_timestamp(world, repo):
	session = await world.save(world.session())
	await world.registration(session, "r1", "p01", S.WAITING_FOR_CONFIRMATION)

	first = await apply_transition(repo, "r1", "p01", E.CONFIRM, at("13:56"))
	second = await apply_transition(repo, "r1", "p01", E.CONFIRM, at("13:58"))

	assert first.changed
	assert not second.changed
	stored = await repo.get_registration("r1", "p01")
	assert stored.status == S.CONFIRMED
	assert stored.confirmed_at == at("13:56")
	assert [entry.event for entry in stored.history].count(E.CONFIRM.value) == 1


@pytest.mark.asyncio
async def test_late_confirmation_window_does_not_undo_confirm(world, repo):
	session = await world.save(world.session())
	await world.registration(session, "r1", "p01", S.REGISTERED)
	await apply_transition(repo, "r1", "p01", E.CONFIRM, at("13:55:30"))

	result = await apply_transition(repo, "r1", "p01", E.ENTER_CONFIRMATION_WINDOW, at("13:56"))

	assert result.transition.kind == TransitionKind.SKIPPED
	assert (await repo.get_registration("r1", "p01")).status == S.CONFIRMED


@pytest.mark.asyncio
async def test_apply_transition_stamps_history_and_reason(world, repo):
	session = await world.save(world.session())
	await world.registration(session, "r1", "p01", S.WAITING_FOR_CONFIRMATION)

	await apply_transition(repo, "r1", "p01", E.AUTO_UNCONFIRM, at("14:00"), reason="too slow")

	stored = await repo.get_registration("r1", "p01")
	assert stored.status == S.UNCONFIRMED
	assert stored.unconfirmed_at == at("14:00")
	assert stored.unconfirmed_reason == "too slow"
	assert stored.last_status_update == at("14:00")
	assert stored.history[-1].event == E.AUTO_UNCONFIRM.value


@pytest.mark.asyncio
async def test_check_in_is_merged_into_match(world, repo):
	session = await world.save(world.session())
	await world.registration(session, "r1", "p01", S.CONFIRMED)
	match = models.Match(
		id="m1",
		session_id=session.id,
		round_id="r1",
		round_instant=at("14:00"),
		members=[models.MatchMember(participant_id="p01", name="P01"), models.MatchMember(participant_id="p02", name="P02")],
	)
	await repo.save_match(match)
	await apply_transition(repo, "r1", "p01", E.ENTER_MATCHING, at("14:00"), matched_id="m1")

	await apply_transition(repo, "r1", "p01", E.CHECK_IN, at("14:02"))

	stored = await repo.get_match("m1")
	member = stored.member("p01")
	assert member.status == S.CHECKED_IN
	assert member.checked_in_at == at("14:02")
	assert stored.member("p02").status == S.MATCHED


@pytest.mark.asyncio
async def test_apply_transition_without_registration(repo):
	with pytest.raises(NotFoundError):
		await apply_transition(repo, "r1", "ghost", E.CONFIRM, at("13:58"))
