"""User notifications emitted by the payment core.

Only the interface matters to the orchestrator and reconciler; delivery
and formatting live elsewhere. ``SupabaseNotifier`` writes rows to the
notifications table for the app to display, ``InMemoryNotifier`` keeps
them in a list for local development and tests.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol

from supabase import Client

logger = logging.getLogger("fixer.notifier")

NOTIFICATIONS_TABLE = "notifications"


class NotificationType(str, Enum):
    application_accepted = "application_accepted"
    job_completed = "job_completed"
    tasks_completed = "tasks_completed"
    job_cancelled = "job_cancelled"
    payment_received = "payment_received"
    payment_sent = "payment_sent"
    payment_failed = "payment_failed"
    payment_issue = "payment_issue"
    refund_processed = "refund_processed"
    setup_payment_account = "setup_payment_account"
    account_active = "account_active"
    account_action_required = "account_action_required"


@dataclass
class Notification:
    user_id: str
    type: NotificationType
    title: str
    message: str
    job_id: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Notifier(Protocol):
    """Receives user-facing notifications."""

    async def notify(self, notification: Notification) -> None:
        ...


class InMemoryNotifier:
    """Collects notifications in memory."""

    def __init__(self):
        self.sent: list[Notification] = []

    async def notify(self, notification: Notification) -> None:
        self.sent.append(notification)
        logger.info(
            "Notification | user=%s | type=%s | title=%s",
            notification.user_id,
            notification.type.value,
            notification.title,
        )

    def for_user(self, user_id: str) -> list[Notification]:
        return [n for n in self.sent if n.user_id == user_id]

    def types_for(self, user_id: str) -> list[NotificationType]:
        return [n.type for n in self.for_user(user_id)]


class SupabaseNotifier:
    """Stores notifications in the ``notifications`` table."""

    def __init__(self, db: Client):
        self._db = db

    async def notify(self, notification: Notification) -> None:
        data = {
            "user_id": notification.user_id,
            "type": notification.type.value,
            "title": notification.title,
            "message": notification.message,
            "job_id": notification.job_id,
            "metadata": notification.metadata,
            "is_read": False,
        }

        def _insert():
            return self._db.table(NOTIFICATIONS_TABLE).insert(data).execute()

        await asyncio.to_thread(_insert)
        logger.debug("Stored notification %s for user %s", notification.type.value, notification.user_id)
