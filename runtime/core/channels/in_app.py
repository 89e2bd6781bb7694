"""In-app message channel: notifications land in the account's inbox table."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from collaborators.interfaces import MessageChannel, Notification
from storage.interfaces import NotificationStore, StoredNotification
from utils import new_id, utcnow

logger = logging.getLogger(__name__)

CHANNEL_IN_APP = "in_app"


class InAppMessageChannel(MessageChannel):
    def __init__(self, notifications: NotificationStore, *, clock: Callable[[], datetime] = utcnow):
        self._notifications = notifications
        self._clock = clock

    def send(self, account_id: str, notification: Notification) -> None:
        stored = StoredNotification(
            notification_id=new_id(),
            account_id=account_id,
            job_id=notification.job_id,
            channel=CHANNEL_IN_APP,
            title=notification.title,
            body=notification.body,
            ctas=list(notification.ctas),
            priority=notification.priority,
            created_at=self._clock(),
            cost=float(notification.cost),
        )
        self._notifications.append(stored)
        logger.info(
            "in_app_notification_stored",
            extra={"event": "in_app_notification_stored", "account_id": account_id, "job_id": notification.job_id},
        )
