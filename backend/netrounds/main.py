"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from netrounds.api import ops, organizer, participants
from netrounds.api.errors import install_error_handlers
from netrounds.domain.rounds import TransitionDriver
from netrounds.domain.rounds.repository import RoundsRepository
from netrounds.infra.scheduler import DriverScheduler
from netrounds.obs import init as obs_init
from netrounds.obs.health import DRIVER_JOB_ID
from netrounds.settings import settings

_LOG = logging.getLogger(__name__)


async def log_parameter_warnings(repository: RoundsRepository | None = None) -> list[str]:
	params = await (repository or RoundsRepository()).get_parameters()
	warnings = params.warnings()
	for warning in warnings:
		_LOG.warning("parameters.warning", extra={"warning": warning})
	return warnings


@asynccontextmanager
async def lifespan(app: FastAPI):
	scheduler: DriverScheduler | None = None
	try:
		await log_parameter_warnings()
	except Exception:
		# Redis may not be up yet; the driver retries on its own schedule
		_LOG.exception("parameters.check_failed")
	if settings.driver_enabled:
		driver = TransitionDriver()
		scheduler = DriverScheduler()
		scheduler.start()
		scheduler.schedule_every(DRIVER_JOB_ID, driver.run_once, seconds=settings.driver_interval_seconds)
		app.state.driver = driver
		app.state.driver_scheduler = scheduler
		_LOG.info("driver.started", extra={"interval_seconds": settings.driver_interval_seconds})
	try:
		yield
	finally:
		if scheduler is not None:
			scheduler.shutdown()


def create_app() -> FastAPI:
	app = FastAPI(title="Networking Rounds Core", lifespan=lifespan)
	install_error_handlers(app)

	allow_origins = list(settings.cors_allow_origins)
	if not allow_origins:
		allow_origins = ["http://localhost:3000"] if settings.is_dev() else []
	if "*" in allow_origins:
		# wildcard is not allowed together with credentials
		allow_origins = ["http://localhost:3000", "http://127.0.0.1:3000"] if settings.is_dev() else []
	app.add_middleware(
		CORSMiddleware,
		allow_origins=allow_origins,
		allow_credentials=True,
		allow_methods=["*"],
		allow_headers=["*"],
	)
	obs_init(app)

	app.include_router(participants.router)
	app.include_router(organizer.router)
	app.include_router(organizer.admin_router)
	app.include_router(ops.router)
	return app


app = create_app()
