"""
auth/notifications.py -- Out-of-band notification outbox.

Delivery channel: the in-app notification store (notifications table), plus
one log line per enqueue on medportal.notify. Mail and push are interfaces
only; nothing here talks to an external service.

Contract: enqueue() never raises. A failure is logged and returned as a
warning string, which the mediator attaches to the per-target result. The
primary operation's success never depends on the notification.

Layer rule: no imports from api/ or clinic/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from auth.models import Notification
from auth.store import AuthStore

logger = logging.getLogger("medportal.notify")

NOTIFICATION_TYPES = ("info", "warning", "alert", "reminder")


class NotificationOutbox:
    def __init__(self, store: AuthStore, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)) -> None:
        self._store = store
        self._clock = clock

    def enqueue(self, principal_id: str, title: str, message: str, type: str = "info") -> Optional[str]:
        """Store a notification for principal_id. Returns None on success or a warning message."""
        notification = Notification(
            principal_id=principal_id,
            title=title,
            message=message,
            type=type if type in NOTIFICATION_TYPES else "info",
            created_at=self._clock(),
        )
        try:
            notification.id = self._store.create_notification(notification)
        except Exception:
            logger.exception("Notification enqueue failed for %s", principal_id)
            return "notification_not_delivered"
        logger.info("Notification %s queued for %s (%s)", notification.id, principal_id, notification.type)
        return None

    def inbox(self, principal_id: str, limit: int = 50) -> list[Notification]:
        return self._store.list_notifications(principal_id, limit=limit)
