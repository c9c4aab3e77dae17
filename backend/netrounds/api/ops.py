"""Operational endpoints: probes, Prometheus scrape and a manual driver tick."""

from __future__ import annotations

import time
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from netrounds.api.errors import DomainError, as_http_error
from netrounds.domain.rounds import TransitionDriver
from netrounds.infra.clock import request_now
from netrounds.obs import health
from netrounds.obs import metrics as obs_metrics
from netrounds.settings import settings

router = APIRouter(tags=["ops"])


def presented_admin_token(
	x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
	authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> Optional[str]:
	if x_admin_token:
		return x_admin_token
	scheme, _, credentials = (authorization or "").partition(" ")
	return credentials if scheme.lower() == "bearer" and credentials else None


def require_admin(token: Optional[str] = Depends(presented_admin_token)) -> None:
	expected = settings.obs_admin_token
	if not expected:
		raise HTTPException(status.HTTP_403_FORBIDDEN, detail="admin_token_not_configured")
	if token != expected:
		raise HTTPException(status.HTTP_403_FORBIDDEN, detail="forbidden")


def require_metrics_access(token: Optional[str] = Depends(presented_admin_token)) -> None:
	if not settings.obs_metrics_public:
		require_admin(token)


def _driver_for(request: Request) -> TransitionDriver:
	# the scheduled driver when running, otherwise a fresh one over the shared store
	driver = getattr(request.app.state, "driver", None)
	return driver if driver is not None else TransitionDriver()


@router.get("/health/live")
async def health_live() -> dict:
	return await health.liveness()


@router.get("/health/ready")
async def health_ready(request: Request) -> Response:
	code, payload = await health.readiness(getattr(request.app.state, "driver_scheduler", None))
	return JSONResponse(payload, status_code=code)


@router.get("/metrics", dependencies=[Depends(require_metrics_access)])
async def prometheus_metrics() -> Response:
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.post("/ops/driver/tick", dependencies=[Depends(require_admin)])
async def trigger_driver_tick(request: Request, now: datetime = Depends(request_now)) -> dict:
	"""Run one driver pass at ``now``; honours ``X-Test-Time`` outside production."""
	started = time.perf_counter()
	try:
		report = await _driver_for(request).run_once(now)
	except DomainError as exc:
		obs_metrics.record_job_run("manual_driver_tick", result="error")
		raise as_http_error(exc) from exc
	obs_metrics.record_job_run("manual_driver_tick", result="ok", duration_seconds=time.perf_counter() - started)
	return report.to_dict()
