"""JSON keyed store on top of Redis.

get/set/delete on opaque string keys plus prefix listing. Every write touches a
single key; ``add`` is the one conditional write (SET NX). Nothing here offers
multi-key atomicity, so callers must keep their multi-key sequences idempotent.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from netrounds.infra.redis import RedisProxy, redis_client
from netrounds.obs import metrics as obs_metrics
from netrounds.settings import settings

_LOG = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE = (RedisConnectionError, RedisTimeoutError, ConnectionError, asyncio.TimeoutError)


class TransientStoreError(RuntimeError):
	"""Store temporarily unavailable; safe to retry because writes are idempotent."""

	code = "store_unavailable"
	status_code = 503

	def __init__(self, operation: str) -> None:
		super().__init__(f"{operation} failed: store unavailable")
		self.operation = operation
		self.detail = self.code


class KeyedStore:
	def __init__(
		self,
		client: RedisProxy | None = None,
		*,
		max_retries: int | None = None,
		retry_delay_seconds: float | None = None,
	) -> None:
		self._client = client or redis_client
		self._max_retries = max_retries if max_retries is not None else settings.store_max_retries
		self._retry_delay = (
			retry_delay_seconds if retry_delay_seconds is not None else settings.store_retry_delay_seconds
		)

	async def _retry(self, op: str, name: str, action: Callable[[], Awaitable[T]]) -> T:
		attempts = max(1, self._max_retries)
		for attempt in range(1, attempts + 1):
			try:
				return await action()
			except _RETRYABLE as exc:
				if attempt >= attempts:
					_LOG.error(
						"store.unavailable",
						extra={"op": op, "store_key": name, "attempts": attempt, "error": str(exc)},
					)
					raise TransientStoreError(f"{op}({name})") from exc
				delay = self._retry_delay * (2 ** (attempt - 1))
				obs_metrics.inc_store_retry(op)
				_LOG.warning(
					"store.retry",
					extra={"op": op, "store_key": name, "attempt": attempt, "delay": delay},
				)
				await asyncio.sleep(delay)
		raise TransientStoreError(f"{op}({name})")  # pragma: no cover - loop always returns or raises

	async def get(self, key: str) -> Optional[Any]:
		raw = await self._retry("get", key, lambda: self._client.get(key))
		if raw is None:
			return None
		return json.loads(raw)

	async def set(self, key: str, value: Any) -> None:
		payload = json.dumps(value, separators=(",", ":"), default=str)
		await self._retry("set", key, lambda: self._client.set(key, payload))

	async def add(self, key: str, value: Any) -> bool:
		"""Write ``value`` only if ``key`` is absent; False when another writer got there first."""
		payload = json.dumps(value, separators=(",", ":"), default=str)
		stored = await self._retry("add", key, lambda: self._client.set(key, payload, nx=True))
		return bool(stored)

	async def delete(self, key: str) -> None:
		await self._retry("delete", key, lambda: self._client.delete(key))

	async def get_by_prefix_with_keys(self, prefix: str) -> list[tuple[str, Any]]:
		keys = await self._retry("scan", prefix, lambda: self._client.scan_prefix(prefix))
		if not keys:
			return []
		raws = await self._retry("mget", prefix, lambda: self._client.mget(keys))
		items: list[tuple[str, Any]] = []
		for key, raw in zip(keys, raws):
			# a key deleted between SCAN and MGET simply drops out
			if raw is None:
				continue
			items.append((key, json.loads(raw)))
		return items

	async def get_by_prefix(self, prefix: str) -> list[Any]:
		return [value for _, value in await self.get_by_prefix_with_keys(prefix)]


store = KeyedStore()


__all__ = ["KeyedStore", "TransientStoreError", "store"]
