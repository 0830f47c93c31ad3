"""Notification records, fan-out, inbox and scheduled checks."""

from .fanout import FanoutEngine, Outcome, RecipientQuery, challenge_participants, users_with_role
from .inbox import NotificationInbox
from .models import (
    CORRELATION_KEYS,
    PREFERENCE_FIELDS,
    NotificationRecord,
    NotificationType,
    PreferenceSet,
    idempotency_id,
)
from .scheduler import NotificationScheduler

__all__ = [
    "CORRELATION_KEYS",
    "PREFERENCE_FIELDS",
    "FanoutEngine",
    "NotificationInbox",
    "NotificationRecord",
    "NotificationScheduler",
    "NotificationType",
    "Outcome",
    "PreferenceSet",
    "RecipientQuery",
    "challenge_participants",
    "idempotency_id",
    "users_with_role",
]
