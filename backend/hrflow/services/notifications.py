"""
Best-effort notification delivery.

Transitions queue ``NotificationEvent``s while their transaction is open and
hand them to the dispatcher only after commit. Delivery failures are logged
and counted; they never reach the caller.
"""
from __future__ import annotations
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import requests

from hrflow.core.config import NOTIFY_ASYNC, NOTIFY_TIMEOUT_SEC
from hrflow.metrics import notifications_failed_total
from hrflow.utils.runtime_config import get_notify_webhook

log = logging.getLogger("hrflow.notify")

# event types
SUBMITTED = "request_submitted"
ASSIGNED = "approval_assigned"
APPROVED = "request_approved"
REJECTED = "request_rejected"
WITHDRAWN = "request_withdrawn"
DELEGATED = "approval_delegated"
ESCALATED = "request_escalated"
REMINDER = "approval_reminder"
SLA_WARNING = "sla_warning"
STAGE_NOTICE = "stage_notice"
CONDITION_NOTICE = "condition_notice"


@dataclass
class NotificationEvent:
    request_id: int
    event_type: str
    recipients: List[int] = field(default_factory=list)
    payload: Dict[str, Any] = field(default_factory=dict)


class NotificationError(RuntimeError):
    pass


class NotificationGateway:
    def notify(self, request_id: int, event_type: str,
               recipients: Optional[List[int]] = None, payload: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError


class LogNotificationGateway(NotificationGateway):
    """Writes events to the log only; handy for local runs."""

    def notify(self, request_id, event_type, recipients=None, payload=None):
        log.info("[notify] request=%s event=%s recipients=%s", request_id, event_type, recipients or [])


class WebhookNotificationGateway(NotificationGateway):
    """Slack-style JSON webhook. The URL is resolved on every call so runtime overrides apply."""

    def __init__(self, timeout: float = NOTIFY_TIMEOUT_SEC):
        self.timeout = timeout

    def notify(self, request_id, event_type, recipients=None, payload=None):
        url = get_notify_webhook()
        if not url:
            log.debug("[notify] webhook not set; skipping %s for request %s", event_type, request_id)
            return
        body = {
            "text": f"[hrflow] {event_type} for request {request_id}",
            "event": event_type,
            "request_id": request_id,
            "recipients": list(recipients or []),
            "payload": payload or {},
        }
        try:
            r = requests.post(url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise NotificationError(f"webhook send error: {e}") from e
        if r.status_code >= 300:
            raise NotificationError(f"webhook status={r.status_code}: {r.text[:300]}")
        log.debug("[notify] POST status=%s event=%s", r.status_code, event_type)


class NotificationDispatcher:
    def __init__(self, gateway: NotificationGateway, run_async: bool = NOTIFY_ASYNC, max_workers: int = 4):
        self.gateway = gateway
        self.run_async = run_async
        self._max_workers = max_workers
        self._pool: Optional[ThreadPoolExecutor] = None

    def _deliver(self, event: NotificationEvent) -> None:
        try:
            self.gateway.notify(event.request_id, event.event_type, event.recipients, event.payload)
        except Exception as e:
            notifications_failed_total.labels(event=event.event_type).inc()
            log.warning("[notify] %s for request %s failed: %s", event.event_type, event.request_id, e)

    def dispatch(self, events: Iterable[NotificationEvent]) -> None:
        for event in events:
            if self.run_async:
                if self._pool is None:
                    self._pool = ThreadPoolExecutor(max_workers=self._max_workers,
                                                    thread_name_prefix="hrflow-notify")
                self._pool.submit(self._deliver, event)
            else:
                self._deliver(event)

    def shutdown(self, wait: bool = True) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None


_dispatcher = NotificationDispatcher(WebhookNotificationGateway())


def get_dispatcher() -> NotificationDispatcher:
    return _dispatcher


def set_dispatcher(dispatcher: NotificationDispatcher) -> NotificationDispatcher:
    """Swap the process-wide dispatcher; returns the previous one."""
    global _dispatcher
    previous, _dispatcher = _dispatcher, dispatcher
    return previous
