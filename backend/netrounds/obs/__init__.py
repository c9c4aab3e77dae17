"""Observability bootstrap: JSON logging plus request instrumentation."""

from __future__ import annotations

from fastapi import FastAPI

from netrounds.obs import logging as obs_logging
from netrounds.obs import middleware
from netrounds.settings import settings


def init(app: FastAPI) -> None:
	"""Install logging and middleware once per application."""
	if not settings.obs_enabled or getattr(app.state, "obs_installed", False):
		return
	obs_logging.configure_logging()
	middleware.install(app)
	app.state.obs_installed = True


__all__ = ["init"]
