import pytest

from conftest import at
from netrounds.domain.rounds import RoundService, TransitionDriver, models, outcomes
from netrounds.domain.rounds.errors import ForbiddenError, WindowClosedError
from netrounds.domain.rounds.models import RegistrationStatus, SessionStatus
from netrounds.domain.rounds.repository import reminder_key
from netrounds.infra.notifications import NOTIFICATION_STREAM


@pytest.fixture
def driver(repo):
	return TransitionDriver(repository=repo)


@pytest.fixture
def service(repo):
	return RoundService(repository=repo)


async def _templates(fake_redis):
	return [fields["template"] for _, fields in await fake_redis.xrange(NOTIFICATION_STREAM)]


@pytest.mark.asyncio
async def test_round_lifecycle_driven_by_ticks(world, repo, driver, service, fake_redis):
	session = await world.save(world.session())
	regs = await world.registrations(session, "r1", 4, RegistrationStatus.REGISTERED)

	report = await driver.run_once(at("13:50"))
	assert report.reminders == 4
	assert (await driver.run_once(at("13:51"))).reminders == 0
	assert await repo.get_marker(reminder_key("r1", at("14:00")))

	report = await driver.run_once(at("13:57"))
	assert report.confirmation_windows == 4
	statuses = {item.status for item in await repo.list_round_registrations("r1")}
	assert statuses == {RegistrationStatus.WAITING_FOR_CONFIRMATION}
	assert (await _templates(fake_redis)).count("confirm-attendance") == 4

	for registration in regs[:3]:
		await service.confirm_attendance(registration.id, at("13:58"))

	report = await driver.run_once(at("14:00"))
	assert report.matching_runs == 1
	matches = await repo.list_round_matches("r1")
	assert len(matches) == 1
	assert sorted(matches[0].participant_ids) == ["p01", "p02", "p03"]
	assert (await repo.get_registration("r1", "p04")).status == RegistrationStatus.UNCONFIRMED

	match_id = matches[0].id
	await service.check_in(match_id, "p01", at("14:01"))
	await service.check_in(match_id, "p02", at("14:02"))

	report = await driver.run_once(at("14:30"))
	assert report.outcomes_recorded == 1
	assert report.completed == 1
	final = {item.participant_id: item.status for item in await repo.list_round_registrations("r1")}
	assert final == {
		"p01": RegistrationStatus.MET,
		"p02": RegistrationStatus.MET,
		"p03": RegistrationStatus.MISSED,
		"p04": RegistrationStatus.UNCONFIRMED,
	}
	assert (await repo.get_session(session.id)).status == SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_tick_never_reverts_an_earlier_confirmation(world, repo, driver, service):
	session = await world.save(world.session())
	registration = await world.registration(session, "r1", "p01", RegistrationStatus.REGISTERED)
	await service.confirm_attendance(registration.id, at("13:56"))

	await driver.run_once(at("13:57"))

	assert (await repo.get_registration("r1", "p01")).status == RegistrationStatus.CONFIRMED


@pytest.mark.asyncio
async def test_repeated_ticks_after_matching_change_nothing(world, repo, driver):
	session = await world.save(world.session())
	await world.registrations(session, "r1", 3)
	await driver.run_once(at("14:00"))
	before = [item.to_dict() for item in await repo.list_round_registrations("r1")]

	report = await driver.run_once(at("14:05"))

	assert report.matching_runs == 0
	assert [item.to_dict() for item in await repo.list_round_registrations("r1")] == before


@pytest.mark.asyncio
async def test_failing_round_does_not_block_others(world, repo, driver):
	rounds = [
		models.Round(id="r1", name="Round 1", start_time="14:00", duration_minutes=20),
		models.Round(id="r2", name="Round 2", start_time="14:00", duration_minutes=20),
	]
	session = await world.save(world.session(rounds=rounds))
	await world.registrations(session, "r2", 2)
	original = driver.process_round

	async def flaky(session, round_, params, now, report):
		if round_.id == "r1":
			raise RuntimeError("boom")
		return await original(session, round_, params, now, report)

	driver.process_round = flaky
	report = await driver.run_once(at("14:00"))

	assert report.round_errors == 1
	assert report.matching_runs == 1
	assert len(await repo.list_round_matches("r2")) == 1

	# the session stays open while a round is failing
	await driver.run_once(at("14:30"))
	assert (await repo.get_session(session.id)).status == SessionStatus.PUBLISHED


@pytest.mark.asyncio
async def test_scheduled_session_is_published_on_time(world, repo, driver):
	await world.save(world.session(status=SessionStatus.SCHEDULED, publish_at=at("09:00")))

	early = await driver.run_once(at("08:59"))
	assert early.published == 0
	assert (await repo.get_session("s1")).status == SessionStatus.SCHEDULED

	report = await driver.run_once(at("09:00"))
	assert report.published == 1
	assert (await repo.get_session("s1")).status == SessionStatus.PUBLISHED


@pytest.mark.asyncio
async def test_reminders_disabled(world, repo, driver):
	await repo.save_parameters(models.SystemParameters(notification_early_enabled=False))
	session = await world.save(world.session())
	await world.registrations(session, "r1", 2, RegistrationStatus.REGISTERED)

	report = await driver.run_once(at("13:52"))

	assert report.reminders == 0


@pytest.mark.asyncio
async def test_driver_skips_draft_sessions(world, repo, driver):
	session = await world.save(world.session(status=SessionStatus.DRAFT))
	await world.registrations(session, "r1", 2)

	report = await driver.run_once(at("14:00"))

	assert report.sessions == 0
	assert await repo.list_round_matches("r1") == []


@pytest.mark.asyncio
async def test_outcomes_left_alone_and_partner_met(world, repo, driver, service):
	session = await world.save(world.session())
	await world.registrations(session, "r1", 4)
	await driver.run_once(at("14:00"))
	matches = sorted(await repo.list_round_matches("r1"), key=lambda item: item.id)
	lonely, social = matches
	await service.check_in(lonely.id, lonely.participant_ids[0], at("14:01"))
	await service.check_in(social.id, social.participant_ids[0], at("14:01"))
	await service.confirm_met(social.id, social.participant_ids[1], at("14:10"))

	report = await outcomes.record_round_outcomes(repo, session, session.rounds[0], at("14:30"))

	status = {item.participant_id: item.status for item in await repo.list_round_registrations("r1")}
	assert status[lonely.participant_ids[0]] == RegistrationStatus.LEFT_ALONE
	assert status[lonely.participant_ids[1]] == RegistrationStatus.MISSED
	assert status[social.participant_ids[0]] == RegistrationStatus.MET
	assert status[social.participant_ids[1]] == RegistrationStatus.MET
	assert report.counts == {"left-alone": 1, "missed": 1, "met": 1}

	again = await outcomes.record_round_outcomes(repo, session, session.rounds[0], at("14:31"))
	assert again.state == "noop"


@pytest.mark.asyncio
async def test_check_in_outside_the_round(world, repo, driver, service):
	session = await world.save(world.session())
	await world.registrations(session, "r1", 2)
	await driver.run_once(at("14:00"))
	match = (await repo.list_round_matches("r1"))[0]

	with pytest.raises(WindowClosedError):
		await service.check_in(match.id, "p01", at("14:30"))
	with pytest.raises(ForbiddenError):
		await service.check_in(match.id, "stranger", at("14:05"))
