import sys
from datetime import date, datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from netrounds.domain.rounds import models
from netrounds.domain.rounds.models import RegistrationStatus, SessionStatus
from netrounds.domain.rounds.repository import RoundsRepository
from netrounds.infra.clock import FixedClock, reset_clock, set_clock
from netrounds.main import app
from netrounds.settings import settings

EVENT_DAY = date(2030, 5, 14)


def at(hhmmss: str) -> datetime:
	"""Instant on the event day, UTC. Accepts "HH:MM" or "HH:MM:SS"."""
	parts = [int(part) for part in hhmmss.split(":")]
	while len(parts) < 3:
		parts.append(0)
	return datetime(EVENT_DAY.year, EVENT_DAY.month, EVENT_DAY.day, *parts, tzinfo=timezone.utc)


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from netrounds.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Identity headers and X-Test-Time are only honoured in dev mode."""
	original = {
		"environment": settings.environment,
		"driver_enabled": settings.driver_enabled,
		"matching_seed": settings.matching_seed,
		"obs_admin_token": settings.obs_admin_token,
	}
	settings.environment = "dev"
	settings.driver_enabled = False
	settings.matching_seed = "test-seed"
	settings.obs_admin_token = None
	try:
		yield
	finally:
		for key, value in original.items():
			setattr(settings, key, value)


@pytest.fixture
def fixed_clock():
	clock = FixedClock(at("12:00"))
	set_clock(clock)
	try:
		yield clock
	finally:
		reset_clock()


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client


class RoundsWorld:
	"""Writes sessions, participants and registrations straight into the store."""

	def __init__(self, repo: RoundsRepository) -> None:
		self.repo = repo
		self._seq = 0

	def session(
		self,
		*,
		rounds: list[models.Round] | None = None,
		status: SessionStatus = SessionStatus.PUBLISHED,
		**overrides,
	) -> models.Session:
		data = {
			"id": "s1",
			"organizer_id": "org-1",
			"name": "Spring mixer",
			"status": status,
			"date": EVENT_DAY,
			"timezone": "UTC",
			"rounds": rounds
			if rounds is not None
			else [models.Round(id="r1", name="Round 1", start_time="14:00", duration_minutes=30, group_size=2)],
		}
		data.update(overrides)
		return models.Session(**data)

	async def save(self, session: models.Session) -> models.Session:
		await self.repo.save_session(session)
		return session

	async def participant(self, participant_id: str | None = None, **overrides) -> models.Participant:
		self._seq += 1
		pid = participant_id or f"p{self._seq:02d}"
		data = {
			"id": pid,
			"email": f"{pid}@example.com",
			"first_name": pid.upper(),
			"last_name": "Test",
			"token": f"token-{pid}",
		}
		data.update(overrides)
		participant = models.Participant(**data)
		await self.repo.save_participant(participant)
		return participant

	async def registration(
		self,
		session: models.Session,
		round_id: str,
		participant_id: str,
		status: RegistrationStatus = RegistrationStatus.REGISTERED,
		*,
		team: str | None = None,
		topics: tuple[str, ...] = (),
	) -> models.Registration:
		if await self.repo.get_participant(participant_id) is None:
			await self.participant(participant_id)
		registration = models.Registration(
			id=f"reg-{round_id}-{participant_id}",
			session_id=session.id,
			round_id=round_id,
			participant_id=participant_id,
			status=status,
			selected_team=team,
			selected_topics=list(topics),
			registered_at=at("10:00"),
			confirmed_at=at("13:57") if status == RegistrationStatus.CONFIRMED else None,
		)
		await self.repo.save_registration(registration)
		return registration

	async def registrations(
		self,
		session: models.Session,
		round_id: str,
		count: int,
		status: RegistrationStatus = RegistrationStatus.CONFIRMED,
		*,
		prefix: str = "p",
	) -> list[models.Registration]:
		return [
			await self.registration(session, round_id, f"{prefix}{index:02d}", status)
			for index in range(1, count + 1)
		]


@pytest.fixture
def repo() -> RoundsRepository:
	return RoundsRepository()


@pytest.fixture
def world(repo) -> RoundsWorld:
	return RoundsWorld(repo)
