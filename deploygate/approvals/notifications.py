from __future__ import annotations

import logging
import uuid
from datetime import datetime
from threading import Lock
from typing import Callable, List

from deploygate.approvals.types import ApprovalRequest, NotificationEvent
from deploygate.utils.timeutil import to_iso


logger = logging.getLogger(__name__)

Subscriber = Callable[[NotificationEvent], None]


def build_notification_event(request: ApprovalRequest, now: datetime) -> NotificationEvent:
    return NotificationEvent(
        event_id=uuid.uuid4().hex,
        request_id=request.request_id,
        environment=request.environment,
        created_at=now,
        payload={
            "tenant_id": request.tenant_id,
            "request_id": request.request_id,
            "environment": request.environment,
            "commit_sha": request.commit_sha,
            "execution_ref": request.execution_ref,
            "requested_by": request.requested_by,
            "required_approvals": request.required_approvals,
            "required_roles": [role.value for role in request.required_roles],
            "expires_at": to_iso(request.expires_at),
        },
    )


class NotificationDispatcher:
    """
    Hands committed notification events to in-process subscribers.
    The outbox table remains the record of what was emitted.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = Lock()

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def publish(self, event: NotificationEvent) -> int:
        with self._lock:
            subscribers = list(self._subscribers)
        delivered = 0
        for callback in subscribers:
            try:
                callback(event)
                delivered += 1
            except Exception:
                # The event is already committed to the outbox; pollers still see it.
                logger.exception("notification subscriber failed request_id=%s", event.request_id)
        return delivered



default_dispatcher = NotificationDispatcher()
