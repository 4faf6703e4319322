"""Templated, rate-limited, multi-channel notification delivery."""

from __future__ import annotations

import logging
import re
import threading
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Protocol

import httpx

from .audit import AuditEvent, AuditLog
from .errors import (
    ErrorKind,
    ExecutionError,
    PermanentExecutionError,
    TemplateError,
    TransientExecutionError,
)
from .models import (
    AuditLogLevel,
    BackoffStrategy,
    NotificationChannel,
    NotificationRecipient,
    NotificationSettings,
    NotificationTemplate,
    RetryPolicy,
)
from .retry import RetryExecutor

logger = logging.getLogger(__name__)

TEMPLATE_TOKEN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

OUTBOX_SIZE = 500

DELIVERY_RETRY_POLICY = RetryPolicy(
    max_attempts=3,
    backoff_strategy=BackoffStrategy.EXPONENTIAL,
    initial_delay=5,
    max_delay=60,
    retry_on=[
        ErrorKind.NETWORK_ERROR.value,
        ErrorKind.TIMEOUT.value,
        ErrorKind.RATE_LIMITED.value,
        ErrorKind.SERVER_ERROR.value,
        ErrorKind.SERVICE_UNAVAILABLE.value,
    ],
)


def template_variables(text: str) -> set[str]:
    """Names referenced as ``{{name}}`` in ``text``."""
    return set(TEMPLATE_TOKEN.findall(text or ""))


def render(text: str | None, variables: Mapping[str, Any]) -> str:
    """Substitute ``{{name}}`` tokens.

    Raises:
        TemplateError: If a referenced variable is not supplied.
    """
    if not text:
        return ""
    missing = sorted(name for name in template_variables(text) if name not in variables)
    if missing:
        raise TemplateError(f"Missing template variables: {', '.join(missing)}", missing)
    return TEMPLATE_TOKEN.sub(lambda m: str(variables[m.group(1)]), text)


class DeliveryStatus(str, Enum):
    SENT = "sent"
    QUEUED = "queued"
    SUPPRESSED = "suppressed"
    DISABLED = "disabled"
    FAILED = "failed"


@dataclass(frozen=True)
class Recipient:
    """A resolved delivery target."""

    address: str
    recipient_id: str | None = None
    name: str | None = None

    @classmethod
    def from_config(cls, config: NotificationRecipient, channel: NotificationChannel) -> Recipient | None:
        if channel is NotificationChannel.EMAIL:
            address = config.email
        elif channel in (NotificationChannel.SMS, NotificationChannel.CALL):
            address = config.phone
        elif channel is NotificationChannel.SLACK:
            address = config.slack_user_id
        else:
            address = config.webhook_url
        if not address:
            return None
        return cls(address=address, recipient_id=config.id, name=config.name)

    @property
    def key(self) -> str:
        return self.recipient_id or self.address


@dataclass
class Notification:
    id: str
    channel: NotificationChannel
    recipient: Recipient
    notification_type: str
    subject: str
    body: str
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "channel": self.channel.value,
            "recipient": self.recipient.address,
            "recipientId": self.recipient.recipient_id,
            "notificationType": self.notification_type,
            "subject": self.subject,
            "body": self.body,
            "createdAt": self.created_at.isoformat(),
            "metadata": self.metadata,
        }


@dataclass
class DeliveryResult:
    status: DeliveryStatus
    notification_id: str
    recipient: str
    channel: str
    notification_type: str
    reason: str | None = None
    eligible_at: datetime | None = None
    attempts: int = 0
    error_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["eligible_at"] = self.eligible_at.isoformat() if self.eligible_at else None
        return data


class NotificationSender(Protocol):
    """Channel transport. Raises ExecutionError subclasses on failure."""

    def send(self, notification: Notification) -> None: ...


class OutboxSender:
    """Records messages in memory and logs them."""

    def __init__(self, size: int = OUTBOX_SIZE) -> None:
        self._messages: deque[Notification] = deque(maxlen=size)
        self._lock = threading.Lock()

    def send(self, notification: Notification) -> None:
        with self._lock:
            self._messages.append(notification)
        logger.info(
            f"[{notification.channel.value}] {notification.notification_type} -> "
            f"{notification.recipient.key}: {notification.subject}"
        )

    def messages(self) -> list[Notification]:
        with self._lock:
            return list(self._messages)


class WebhookSender:
    """POSTs the notification as JSON to the recipient's URL."""

    def __init__(self, client: httpx.Client | None = None, timeout: float = 10.0) -> None:
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))

    def send(self, notification: Notification) -> None:
        request_json(self._client, "POST", notification.recipient.address, notification.to_dict())

    def close(self) -> None:
        self._client.close()


def request_json(
    client: httpx.Client,
    method: str,
    url: str,
    payload: Any = None,
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    """Send JSON and translate transport failures into execution errors."""
    try:
        response = client.request(method, url, json=payload, headers=headers)
    except httpx.TimeoutException as e:
        raise TransientExecutionError(f"Request to {url} timed out", ErrorKind.TIMEOUT) from e
    except httpx.TransportError as e:
        raise TransientExecutionError(f"Request to {url} failed: {e}", ErrorKind.NETWORK_ERROR) from e

    if response.status_code == 429:
        raise TransientExecutionError(f"{url} rate limited the request", ErrorKind.RATE_LIMITED)
    if response.status_code == 503:
        raise TransientExecutionError(f"{url} unavailable", ErrorKind.SERVICE_UNAVAILABLE)
    if response.status_code >= 500:
        raise TransientExecutionError(
            f"{url} returned {response.status_code}", ErrorKind.SERVER_ERROR
        )
    if response.status_code >= 400:
        raise PermanentExecutionError(
            f"{url} rejected the request with {response.status_code}", ErrorKind.BAD_PARAMETERS
        )
    return response


@dataclass
class Reservation:
    """Outcome of asking the limiter for a send slot.

    ``granted`` holds a slot that counts against the limits until released.
    A refusal carries ``eligible_at`` when a rate limit applies and None when
    the type is in its cooldown.
    """

    granted: bool
    key: str
    notification_type: str
    at: datetime
    eligible_at: datetime | None = None
    previous: datetime | None = None


class RateLimiter:
    """Per-recipient hourly/daily counters and per-type cooldown.

    Checking the limits and taking the slot happen under one lock, so
    concurrent senders to one recipient cannot all pass the check before
    any of them is counted.
    """

    def __init__(self) -> None:
        self._sent: dict[str, deque[datetime]] = {}
        self._last_by_type: dict[tuple[str, str], datetime] = {}
        self._lock = threading.Lock()

    def _next_eligible(
        self, history: deque[datetime], now: datetime, per_hour: int, per_day: int
    ) -> datetime | None:
        day_ago = now - timedelta(days=1)
        while history and history[0] <= day_ago:
            history.popleft()
        hour_ago = now - timedelta(hours=1)
        last_hour = [t for t in history if t > hour_ago]

        eligible: datetime | None = None
        if len(last_hour) >= per_hour:
            eligible = last_hour[len(last_hour) - per_hour] + timedelta(hours=1)
        if len(history) >= per_day:
            day_eligible = history[len(history) - per_day] + timedelta(days=1)
            eligible = max(eligible, day_eligible) if eligible else day_eligible
        return eligible

    def acquire(
        self,
        key: str,
        notification_type: str,
        now: datetime,
        per_hour: int,
        per_day: int,
        cooldown_minutes: float = 0,
    ) -> Reservation:
        """Take a send slot for ``key`` if cooldown and limits allow one now."""
        with self._lock:
            last = self._last_by_type.get((key, notification_type))
            if cooldown_minutes > 0 and last is not None:
                if now - last < timedelta(minutes=cooldown_minutes):
                    return Reservation(False, key, notification_type, now)

            history = self._sent.setdefault(key, deque())
            eligible = self._next_eligible(history, now, per_hour, per_day)
            if eligible is not None:
                return Reservation(False, key, notification_type, now, eligible_at=eligible)

            history.append(now)
            self._last_by_type[(key, notification_type)] = now
            return Reservation(True, key, notification_type, now, previous=last)

    def release(self, reservation: Reservation) -> None:
        """Give back a granted slot whose delivery failed."""
        if not reservation.granted:
            return
        with self._lock:
            history = self._sent.get(reservation.key)
            if history is not None and reservation.at in history:
                history.remove(reservation.at)
            type_key = (reservation.key, reservation.notification_type)
            if self._last_by_type.get(type_key) == reservation.at:
                if reservation.previous is None:
                    del self._last_by_type[type_key]
                else:
                    self._last_by_type[type_key] = reservation.previous


@dataclass
class _Deferred:
    notification: Notification
    eligible_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationDispatcher:
    """Renders templates and delivers notifications within rate limits."""

    def __init__(
        self,
        settings: Callable[[], NotificationSettings],
        senders: dict[NotificationChannel, NotificationSender] | None = None,
        retry: RetryExecutor | None = None,
        audit: AuditLog | None = None,
        clock: Callable[[], datetime] | None = None,
        delivery_policy: RetryPolicy = DELIVERY_RETRY_POLICY,
    ) -> None:
        self._settings = settings
        self.outbox = OutboxSender()
        self._senders: dict[NotificationChannel, NotificationSender] = {
            NotificationChannel.EMAIL: self.outbox,
            NotificationChannel.SMS: self.outbox,
            NotificationChannel.SLACK: self.outbox,
            NotificationChannel.CALL: self.outbox,
        }
        self._senders.update(senders or {})
        self._retry = retry or RetryExecutor()
        self._audit = audit
        self._clock = clock or _utcnow
        self._delivery_policy = delivery_policy
        self._limiter = RateLimiter()
        self._deferred: list[_Deferred] = []
        self._lock = threading.Lock()

    # --- recipients and templates ---

    def template(self, template_id: str | None) -> NotificationTemplate | None:
        if not template_id:
            return None
        return next((t for t in self._settings().templates if t.id == template_id), None)

    def resolve_recipients(
        self,
        targets: Iterable[str] | None,
        channel: NotificationChannel,
        role: str | None = None,
        notification_type: str | None = None,
    ) -> list[Recipient]:
        """Turn ids, addresses and roles into delivery targets.

        Explicit targets may be recipient ids, configured addresses or raw
        addresses. Role and type selection draw from configured recipients.
        Disabled recipients are skipped.
        """
        configured = self._settings().recipients
        resolved: dict[str, Recipient] = {}

        for target in targets or []:
            match = next(
                (
                    r
                    for r in configured
                    if target in (r.id, r.email, r.phone, r.slack_user_id, r.webhook_url)
                ),
                None,
            )
            if match is None:
                resolved.setdefault(target, Recipient(address=target))
                continue
            if not match.enabled:
                logger.info(f"Skipping disabled recipient {match.id}")
                continue
            recipient = Recipient.from_config(match, channel)
            if recipient is None:
                recipient = Recipient(address=target, recipient_id=match.id, name=match.name)
            resolved.setdefault(recipient.key, recipient)

        if role or (not targets and notification_type):
            for config in configured:
                if not config.enabled:
                    continue
                if role and config.role != role:
                    continue
                if (
                    notification_type
                    and config.notification_types
                    and notification_type not in config.notification_types
                ):
                    continue
                recipient = Recipient.from_config(config, channel)
                if recipient is not None:
                    resolved.setdefault(recipient.key, recipient)

        return list(resolved.values())

    # --- delivery ---

    def send(
        self,
        recipient: Recipient | str,
        template: NotificationTemplate,
        variables: Mapping[str, Any],
        channel: NotificationChannel | str | None = None,
        notification_type: str | None = None,
    ) -> DeliveryResult:
        """Render ``template`` and deliver it to one recipient.

        Raises:
            TemplateError: If the template references a missing variable.
        """
        channel = NotificationChannel(channel) if channel else template.type
        if isinstance(recipient, str):
            recipient = Recipient(address=recipient)
        notification = Notification(
            id=str(uuid.uuid4()),
            channel=channel,
            recipient=recipient,
            notification_type=notification_type or template.id,
            subject=render(template.subject, variables),
            body=render(template.body, variables),
            created_at=self._clock(),
        )
        return self._deliver(notification)

    def notify(
        self,
        targets: Iterable[str] | None,
        notification_type: str,
        variables: Mapping[str, Any],
        channel: NotificationChannel | str | None = None,
        template_id: str | None = None,
        subject: str | None = None,
        body: str | None = None,
        role: str | None = None,
    ) -> list[DeliveryResult]:
        """Send one notification type to every resolved recipient."""
        template = self.template(template_id)
        if template is None:
            title = notification_type.replace("_", " ").title()
            template = NotificationTemplate(
                id=notification_type,
                name=title,
                type=NotificationChannel(channel) if channel else NotificationChannel.EMAIL,
                subject=subject or title,
                body=body or f"{title} for {{{{subject_id}}}}",
            )
            if "subject_id" not in variables and not body:
                template = template.model_copy(update={"body": title})
        resolved_channel = NotificationChannel(channel) if channel else template.type

        recipients = self.resolve_recipients(targets, resolved_channel, role, notification_type)
        if not recipients:
            logger.info(f"No recipients resolved for {notification_type}")
        return [
            self.send(recipient, template, variables, resolved_channel, notification_type)
            for recipient in recipients
        ]

    def _result(
        self, notification: Notification, status: DeliveryStatus, **extra: Any
    ) -> DeliveryResult:
        result = DeliveryResult(
            status=status,
            notification_id=notification.id,
            recipient=notification.recipient.key,
            channel=notification.channel.value,
            notification_type=notification.notification_type,
            **extra,
        )
        if self._audit is not None and status is not DeliveryStatus.DISABLED:
            event = {
                DeliveryStatus.SENT: AuditEvent.NOTIFICATION_SENT,
                DeliveryStatus.QUEUED: AuditEvent.NOTIFICATION_QUEUED,
                DeliveryStatus.SUPPRESSED: AuditEvent.NOTIFICATION_SUPPRESSED,
                DeliveryStatus.FAILED: AuditEvent.NOTIFICATION_FAILED,
            }[status]
            self._audit.record(
                event,
                level=AuditLogLevel.ERROR if status is DeliveryStatus.FAILED else AuditLogLevel.INFO,
                resource_type="notification",
                resource_id=notification.id,
                details={
                    "channel": result.channel,
                    "recipient": result.recipient,
                    "notification_type": result.notification_type,
                    "reason": result.reason,
                },
                status="error" if status is DeliveryStatus.FAILED else "success",
                error_message=result.reason if status is DeliveryStatus.FAILED else None,
            )
        return result

    def _deliver(self, notification: Notification, deferred: bool = False) -> DeliveryResult:
        settings = self._settings()
        if not settings.channel_enabled(notification.channel):
            return self._result(
                notification, DeliveryStatus.DISABLED, reason=f"{notification.channel.value} disabled"
            )

        limits = settings.rate_limiting
        now = self._clock()
        key = notification.recipient.key
        slot: Reservation | None = None
        if limits.enabled:
            slot = self._limiter.acquire(
                key,
                notification.notification_type,
                now,
                limits.max_notifications_per_hour,
                limits.max_notifications_per_day,
                cooldown_minutes=0 if deferred else limits.cooldown_period,
            )
            eligible_at = slot.eligible_at
            if not slot.granted and eligible_at is None:
                logger.info(f"Suppressed duplicate {notification.notification_type} to {key}")
                return self._result(notification, DeliveryStatus.SUPPRESSED, reason="cooldown")
            if not slot.granted:
                with self._lock:
                    self._deferred.append(_Deferred(notification, eligible_at))
                logger.warning(
                    f"Rate limit reached for {key}; {notification.notification_type} "
                    f"queued until {eligible_at.isoformat()}"
                )
                return self._result(
                    notification,
                    DeliveryStatus.QUEUED,
                    reason="rate_limited",
                    eligible_at=eligible_at,
                )

        sender = self._senders.get(notification.channel)
        if sender is None:
            sender = WebhookSender()
            self._senders[notification.channel] = sender

        outcome = self._retry.run(
            lambda: sender.send(notification),
            self._delivery_policy,
            label=f"{notification.channel.value} notification {notification.id}",
        )
        if outcome.success:
            return self._result(notification, DeliveryStatus.SENT, attempts=outcome.attempts)

        if slot is not None:
            self._limiter.release(slot)
        return self._result(
            notification,
            DeliveryStatus.FAILED,
            reason=outcome.error_message,
            attempts=outcome.attempts,
            error_kind=outcome.error_kind.value if outcome.error_kind else None,
        )

    def flush_deferred(self, now: datetime | None = None) -> list[DeliveryResult]:
        """Deliver queued notifications whose window has opened."""
        now = now or self._clock()
        with self._lock:
            due = [item for item in self._deferred if item.eligible_at <= now]
            self._deferred = [item for item in self._deferred if item.eligible_at > now]
        return [self._deliver(item.notification, deferred=True) for item in due]

    def deferred(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {**item.notification.to_dict(), "eligibleAt": item.eligible_at.isoformat()}
                for item in self._deferred
            ]


def raise_for_failures(results: list[DeliveryResult]) -> None:
    """Raise when every delivery failed, so the action's retry policy applies."""
    failures = [r for r in results if r.status is DeliveryStatus.FAILED]
    if results and len(failures) == len(results):
        last = failures[-1]
        kind = ErrorKind(last.error_kind) if last.error_kind else ErrorKind.UNKNOWN
        error: ExecutionError
        if kind in (ErrorKind.BAD_PARAMETERS, ErrorKind.TEMPLATE_ERROR, ErrorKind.UNSUPPORTED_ACTION):
            error = PermanentExecutionError(f"All deliveries failed: {last.reason}", kind)
        else:
            error = TransientExecutionError(f"All deliveries failed: {last.reason}", kind)
        raise error
