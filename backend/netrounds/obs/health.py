"""Liveness and readiness probes.

Readiness covers the pieces a round needs to advance on time: the keyed
store answering, the system parameters being readable, and (when enabled)
the driver job being scheduled.
"""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Any, Dict, Optional, Tuple

from netrounds.domain.rounds.repository import RoundsRepository
from netrounds.infra.redis import redis_client
from netrounds.infra.scheduler import DriverScheduler
from netrounds.obs import metrics
from netrounds.settings import settings

LOGGER = logging.getLogger(__name__)

DRIVER_JOB_ID = "rounds-transition-driver"


async def _check_redis(timeout: float) -> Dict[str, Any]:
	started = perf_counter()
	try:
		await asyncio.wait_for(redis_client.ping(), timeout=timeout)
	except Exception as exc:  # pragma: no cover - depends on runtime
		metrics.mark_redis(False)
		LOGGER.warning("health.redis_unavailable", exc_info=True)
		return {"ok": False, "error": str(exc)}
	latency = perf_counter() - started
	metrics.mark_redis(True, latency_seconds=latency)
	return {"ok": True, "latency_ms": round(latency * 1000, 2)}


async def _check_parameters() -> Dict[str, Any]:
	try:
		params = await RoundsRepository().get_parameters()
	except Exception as exc:  # pragma: no cover - depends on runtime
		LOGGER.warning("health.parameters_unreadable", exc_info=True)
		return {"ok": False, "error": str(exc)}
	# inconsistent windows still let rounds advance, so they only warn
	return {"ok": True, "warnings": params.warnings()}


def _check_driver(scheduler: Optional[DriverScheduler]) -> Dict[str, Any]:
	if not settings.driver_enabled:
		return {"ok": True, "enabled": False}
	scheduled = scheduler is not None and scheduler.running and DRIVER_JOB_ID in scheduler.job_ids()
	return {"ok": scheduled, "enabled": True, "interval_seconds": settings.driver_interval_seconds}


async def liveness() -> Dict[str, Any]:
	return {"status": "ok"}


async def readiness(
	scheduler: Optional[DriverScheduler] = None, *, timeout: float = 0.2
) -> Tuple[int, Dict[str, Any]]:
	checks = {"redis": await _check_redis(timeout)}
	checks["parameters"] = await _check_parameters() if checks["redis"]["ok"] else {"ok": False, "skipped": True}
	checks["driver"] = _check_driver(scheduler)
	ok = all(check["ok"] for check in checks.values())
	return (200 if ok else 503), {"status": "ok" if ok else "degraded", "checks": checks}
