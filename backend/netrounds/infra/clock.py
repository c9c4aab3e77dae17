"""Pluggable time source.

Domain code never calls ``datetime.now`` directly; entry points ask the shared
``clock`` proxy for "now" and pass it down explicitly. Tests and simulations swap
the target with ``set_clock(FixedClock(...))`` the same way the Redis proxy swaps
its client.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from fastapi import Header, HTTPException, status

from netrounds.settings import settings


class Clock(Protocol):
	def now(self) -> datetime: ...


class SystemClock:
	def now(self) -> datetime:
		return datetime.now(timezone.utc)


class FixedClock:
	"""A clock frozen at a given instant; moves only when told to."""

	def __init__(self, at: datetime) -> None:
		self._at = ensure_aware(at)

	def now(self) -> datetime:
		return self._at

	def set(self, at: datetime) -> None:
		self._at = ensure_aware(at)

	def advance(self, **delta: float) -> datetime:
		self._at = self._at + timedelta(**delta)
		return self._at


class ClockProxy:
	def __init__(self, target: Clock) -> None:
		self._target = target

	def set_target(self, target: Clock) -> None:
		self._target = target

	def now(self) -> datetime:
		return ensure_aware(self._target.now())


clock: ClockProxy = ClockProxy(SystemClock())


def set_clock(target: Clock) -> None:
	clock.set_target(target)


def reset_clock() -> None:
	clock.set_target(SystemClock())


def ensure_aware(value: datetime) -> datetime:
	"""Treat naive datetimes as UTC."""
	if value.tzinfo is None:
		return value.replace(tzinfo=timezone.utc)
	return value


def parse_instant(raw: str) -> datetime:
	text = raw.strip()
	if text.endswith("Z"):
		text = text[:-1] + "+00:00"
	return ensure_aware(datetime.fromisoformat(text))


async def request_now(
	x_test_time: Optional[str] = Header(default=None, alias="X-Test-Time"),
) -> datetime:
	"""FastAPI dependency resolving "now" for one request.

	Honours ``X-Test-Time`` only when time overrides are allowed.
	"""
	if x_test_time and settings.time_override_allowed():
		try:
			return parse_instant(x_test_time)
		except ValueError as exc:
			raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid_test_time") from exc
	return clock.now()
