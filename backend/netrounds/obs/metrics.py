"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram

log = logging.getLogger(__name__)


REQUEST_COUNTER = Counter(
	"netrounds_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"netrounds_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

REGISTRATION_TRANSITIONS = Counter(
	"netrounds_registration_transitions_total",
	"Registration state machine outcomes",
	["event", "result"],
)

MATCHING_RUNS = Counter(
	"netrounds_matching_runs_total",
	"Matching engine executions per round instant",
	["result"],
)

MATCHING_GROUPS = Histogram(
	"netrounds_matching_groups",
	"Number of groups created per matching run",
	buckets=(0, 1, 2, 5, 10, 20, 50, 100),
)

DRIVER_TICKS = Counter(
	"netrounds_driver_ticks_total",
	"Periodic transition driver ticks",
	["result"],
)

DRIVER_ROUND_ERRORS = Counter(
	"netrounds_driver_round_errors_total",
	"Rounds whose processing failed during a driver tick",
)

BACKGROUND_RUNS = Counter(
	"netrounds_jobs_runs_total",
	"Background job executions",
	["name", "result"],
)

BACKGROUND_DURATION = Histogram(
	"netrounds_jobs_duration_seconds",
	"Background job duration",
	["name"],
	buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 15.0, 30.0, 60.0),
)

NOTIFICATIONS = Counter(
	"netrounds_notifications_total",
	"Notification dispatch attempts",
	["template", "result"],
)

STORE_RETRIES = Counter(
	"netrounds_store_retries_total",
	"Keyed store operations retried after a transient failure",
	["op"],
)

REDIS_UP = Gauge("netrounds_redis_up", "Redis reachability (1 = up)")

REDIS_LATENCY = Histogram(
	"netrounds_redis_ping_seconds",
	"Redis ping latency",
	buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25),
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def record_transition(event: str, result: str) -> None:
	REGISTRATION_TRANSITIONS.labels(event=event, result=result).inc()


def record_matching(result: str, *, groups: int | None = None) -> None:
	MATCHING_RUNS.labels(result=result).inc()
	if groups is not None:
		MATCHING_GROUPS.observe(groups)


def record_tick(result: str, *, round_errors: int = 0) -> None:
	DRIVER_TICKS.labels(result=result).inc()
	if round_errors:
		DRIVER_ROUND_ERRORS.inc(round_errors)


def record_job_run(name: str, *, result: str, duration_seconds: float | None = None) -> None:
	BACKGROUND_RUNS.labels(name=name, result=result).inc()
	if duration_seconds is not None:
		BACKGROUND_DURATION.labels(name=name).observe(duration_seconds)


def record_notification(template: str, result: str) -> None:
	NOTIFICATIONS.labels(template=template, result=result).inc()


def inc_store_retry(op: str) -> None:
	STORE_RETRIES.labels(op=op).inc()


def mark_redis(ok: bool, *, latency_seconds: float | None = None) -> None:
	REDIS_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		REDIS_LATENCY.observe(latency_seconds)
