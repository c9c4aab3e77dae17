"""The shared Redis connection behind the keyed store and the notification stream.

Modules import ``redis_client`` once at import time, so it is a proxy whose
target can be replaced later (tests point it at fakeredis).
"""

from __future__ import annotations

import redis.asyncio as redis

from netrounds.settings import settings

_GLOB_SPECIALS = frozenset("*?[]\\")


def prefix_pattern(prefix: str) -> str:
	"""SCAN pattern matching keys that start with ``prefix`` literally."""
	escaped = "".join("\\" + ch if ch in _GLOB_SPECIALS else ch for ch in prefix)
	return escaped + "*"


class RedisProxy:
	def __init__(self, client: redis.Redis):
		self._client = client

	@property
	def client(self) -> redis.Redis:
		return self._client

	def set_client(self, client: redis.Redis) -> None:
		self._client = client

	async def scan_prefix(self, prefix: str, *, count: int = 500) -> list[str]:
		"""Sorted keys under ``prefix``, collected with SCAN so a large keyspace never blocks."""
		found = set()
		async for key in self._client.scan_iter(match=prefix_pattern(prefix), count=count):
			found.add(key.decode() if isinstance(key, bytes) else str(key))
		return sorted(found)

	def __getattr__(self, item):
		return getattr(self._client, item)


redis_client = RedisProxy(redis.from_url(settings.redis_url, decode_responses=True))


def set_redis_client(client: redis.Redis) -> None:
	redis_client.set_client(client)
