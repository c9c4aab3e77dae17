"""Notification dispatch.

The core only needs "send a notification" as a side effect. Delivery (email,
SMS) belongs to an external worker that consumes the ``x:notifications`` Redis
stream; this module appends to that outbox and never lets a delivery problem
leak into the state transition that triggered it.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping, Optional, Protocol

from netrounds.infra.redis import redis_client
from netrounds.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)

NOTIFICATION_STREAM = "x:notifications"
NOTIFICATION_STREAM_MAXLEN = 10_000

TEMPLATE_REGISTRATION = "registration-confirmation"
TEMPLATE_EMAIL_VERIFICATION = "email-verification"
TEMPLATE_CONFIRM_ATTENDANCE = "confirm-attendance"
TEMPLATE_ROUND_STARTING_SOON = "round-starting-soon"


class NotificationResult(str, Enum):
	SUCCESS = "success"
	SKIPPED = "skipped"
	FAILURE = "failure"


class Recipient(Protocol):
	id: str
	email: str
	phone: Optional[str]
	notifications_enabled: bool


class Notifier(Protocol):
	async def send(
		self, participant: Recipient, template: str, variables: Mapping[str, Any]
	) -> NotificationResult: ...


class RedisStreamNotifier:
	"""Append notifications to a Redis stream outbox."""

	def __init__(self, stream: str = NOTIFICATION_STREAM, *, maxlen: int = NOTIFICATION_STREAM_MAXLEN) -> None:
		self.stream = stream
		self.maxlen = maxlen

	async def send(
		self, participant: Recipient, template: str, variables: Mapping[str, Any]
	) -> NotificationResult:
		if not participant.notifications_enabled:
			obs_metrics.record_notification(template, NotificationResult.SKIPPED.value)
			return NotificationResult.SKIPPED
		fields: dict[str, str] = {
			"template": template,
			"participant_id": participant.id,
			"email": participant.email,
		}
		if participant.phone:
			fields["phone"] = participant.phone
		for key, value in variables.items():
			fields[f"var_{key}"] = "" if value is None else str(value)
		try:
			await redis_client.xadd(self.stream, fields, maxlen=self.maxlen, approximate=True)
		except Exception:
			_LOG.exception(
				"notification.failed",
				extra={"template": template, "participant_id": participant.id},
			)
			obs_metrics.record_notification(template, NotificationResult.FAILURE.value)
			return NotificationResult.FAILURE
		obs_metrics.record_notification(template, NotificationResult.SUCCESS.value)
		return NotificationResult.SUCCESS


__all__ = [
	"NOTIFICATION_STREAM",
	"NotificationResult",
	"Notifier",
	"RedisStreamNotifier",
	"TEMPLATE_CONFIRM_ATTENDANCE",
	"TEMPLATE_EMAIL_VERIFICATION",
	"TEMPLATE_REGISTRATION",
	"TEMPLATE_ROUND_STARTING_SOON",
]
