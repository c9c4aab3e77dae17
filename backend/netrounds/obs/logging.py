"""Structured JSON logging.

Log calls use event-style messages (``"matching.completed"``) and pass their
fields through ``extra``. Request handlers and the driver bind context
(request id, route, actor, session and round ids) that every record emitted
inside that scope inherits.
"""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from netrounds.settings import settings

_LOGGER_NAME = "netrounds"

_CONTEXT: ContextVar[Mapping[str, str]] = ContextVar("netrounds_log_context", default={})

# participant contact data and credentials never reach the log stream
_REDACTED_KEYS = ("token", "secret", "authorization", "password", "email", "phone", "payload")

_MAX_STRING = 256
_MAX_ITEMS = 20

# attributes every LogRecord carries; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def bind_context(**fields: Optional[str]) -> Token:
	"""Merge non-empty ``fields`` into the logging context; pass the token to ``reset_context``."""
	merged = dict(_CONTEXT.get())
	merged.update({key: str(value) for key, value in fields.items() if value})
	return _CONTEXT.set(merged)


def reset_context(token: Token) -> None:
	_CONTEXT.reset(token)


def current_context() -> Mapping[str, str]:
	return _CONTEXT.get()


def current_request_id() -> Optional[str]:
	return _CONTEXT.get().get("request_id")


def _is_sensitive(key: str) -> bool:
	lowered = key.lower()
	return any(word in lowered for word in _REDACTED_KEYS)


def _clean(value: Any) -> Any:
	if isinstance(value, Enum):
		return value.value
	if isinstance(value, datetime):
		return value.isoformat()
	if isinstance(value, str):
		return value if len(value) <= _MAX_STRING else value[:_MAX_STRING] + "…"
	if isinstance(value, Mapping):
		return {str(key): "[redacted]" if _is_sensitive(str(key)) else _clean(item) for key, item in list(value.items())[:_MAX_ITEMS]}
	if isinstance(value, (list, tuple, set, frozenset)):
		items = [_clean(item) for item in list(value)[:_MAX_ITEMS]]
		if len(value) > _MAX_ITEMS:
			items.append(f"+{len(value) - _MAX_ITEMS} more")
		return items
	return value


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per record: fixed envelope, bound context, then ``extra`` fields."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
		payload: dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"msg": record.getMessage(),
			"logger": record.name,
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		payload.update(_CONTEXT.get())
		for key, value in vars(record).items():
			if key in _RECORD_ATTRS or key in payload:
				continue
			payload[key] = "[redacted]" if _is_sensitive(key) else _clean(value)
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Sample INFO records at ``obs_log_sampling_rate_info``; every other level passes."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = settings.obs_log_sampling_rate_info
		return rate >= 1.0 or random.random() < max(rate, 0.0)


def configure_logging() -> logging.Logger:
	root = logging.getLogger()
	root.handlers.clear()
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_LOGGER_NAME)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _LOGGER_NAME)
