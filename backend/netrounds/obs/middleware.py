"""Request instrumentation: request ids, bound log context and latency metrics."""

from __future__ import annotations

import re
import time
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from netrounds.obs import logging as obs_logging
from netrounds.obs import metrics
from netrounds.settings import settings

REQUEST_ID_HEADER = "X-Request-Id"

# path ids worth carrying on every log line of the request
_PATH_IDS = {
	"session_id": re.compile(r"/sessions/([^/]+)"),
	"round_id": re.compile(r"/rounds/([^/]+)"),
	"registration_id": re.compile(r"/registrations/([^/]+)/"),
	"match_id": re.compile(r"/matches/([^/]+)"),
}


def _path_context(path: str) -> dict[str, str]:
	found: dict[str, str] = {}
	for name, pattern in _PATH_IDS.items():
		hit = pattern.search(path)
		if hit:
			found[name] = hit.group(1)
	return found


def _actor(request: Request) -> str | None:
	user_id = request.headers.get("X-User-Id")
	if user_id:
		return f"user:{user_id}"
	if request.headers.get("X-Participant-Token"):
		return "participant"
	return None


def _route_template(request: Request) -> str:
	route = request.scope.get("route")
	return getattr(route, "path", None) or request.url.path


class ObservabilityMiddleware(BaseHTTPMiddleware):
	def __init__(self, app, *, enabled: bool = True) -> None:
		super().__init__(app)
		self._enabled = enabled
		self._logger = obs_logging.get_logger("netrounds.http")

	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		if not (self._enabled and settings.obs_enabled):
			return await call_next(request)

		request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
		request.state.request_id = request_id
		context = obs_logging.bind_context(
			request_id=request_id,
			route=request.url.path,
			actor=_actor(request),
			test_time=request.headers.get("X-Test-Time"),
			**_path_context(request.url.path),
		)
		started = time.perf_counter()
		try:
			response = await call_next(request)
		except Exception:
			elapsed = time.perf_counter() - started
			metrics.observe_request(_route_template(request), request.method, 500, elapsed)
			self._logger.exception("http.unhandled", extra={"method": request.method})
			obs_logging.reset_context(context)
			raise

		elapsed = time.perf_counter() - started
		metrics.observe_request(_route_template(request), request.method, response.status_code, elapsed)
		self._logger.info(
			"http.request",
			extra={"method": request.method, "status": response.status_code, "latency_ms": round(elapsed * 1000, 3)},
		)
		obs_logging.reset_context(context)
		response.headers.setdefault(REQUEST_ID_HEADER, request_id)
		return response


def install(app, *, enabled: bool = True) -> None:
	app.add_middleware(ObservabilityMiddleware, enabled=enabled)
