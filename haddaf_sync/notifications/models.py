"""
Notification records, types and per-user preferences.

Records live in ``notifications/{id}``. Type-specific correlation fields
(``challengeId``, ``teamName``, ...) are stored as top-level document
fields next to the fixed ones.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import MalformedDocument
from ..store import SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore

NOTIFICATIONS_COLLECTION = "notifications"
# One document per event-bound notification ever sent, keyed by its idempotency id.
# Clearing the inbox deletes records but never these.
NOTIFICATION_KEYS_COLLECTION = "notificationKeys"


class NotificationType(str, Enum):
    ADMIN_MONTHLY_REMINDER = "admin_monthly_reminder"
    PLAYER_CHALLENGE_SUBMITTED = "player_challenge_submitted"
    CHALLENGE_ENDED = "challenge_ended"
    NEW_CHALLENGE_AVAILABLE = "new_challenge_available"
    UPCOMING_MATCH = "upcoming_match"
    TEAM_INVITATION = "team_invitation"
    INVITATION_ACCEPTED = "invitation_accepted"
    INVITATION_DECLINED = "invitation_declined"
    REMOVED_FROM_TEAM = "removed_from_team"


# Types a user can switch off, and the profile field holding the switch.
PREFERENCE_FIELDS: dict[NotificationType, str] = {
    NotificationType.NEW_CHALLENGE_AVAILABLE: "notif_newChallenge",
    NotificationType.CHALLENGE_ENDED: "notif_challengeEnded",
    NotificationType.UPCOMING_MATCH: "notif_upcomingMatch",
}

# Event-bound types: at most one record per (type, recipient, correlation value).
CORRELATION_KEYS: dict[NotificationType, str] = {
    NotificationType.CHALLENGE_ENDED: "challengeId",
    NotificationType.NEW_CHALLENGE_AVAILABLE: "challengeId",
    NotificationType.PLAYER_CHALLENGE_SUBMITTED: "challengeId",
    NotificationType.TEAM_INVITATION: "invitationId",
    NotificationType.INVITATION_ACCEPTED: "invitationId",
    NotificationType.INVITATION_DECLINED: "invitationId",
    NotificationType.ADMIN_MONTHLY_REMINDER: "yearMonth",
}

TEMPLATES: dict[NotificationType, tuple[str, str]] = {
    NotificationType.ADMIN_MONTHLY_REMINDER: (
        "📅 Monthly Challenge Reminder",
        "It's time to add a new challenge for {monthName}!",
    ),
    NotificationType.PLAYER_CHALLENGE_SUBMITTED: (
        "✅ Challenge Submitted",
        "You have submitted your video for the {monthName} challenge: {challengeTitle}",
    ),
    NotificationType.CHALLENGE_ENDED: (
        "🏆 Challenge Ended",
        "The {monthName} challenge has ended and winners have been announced! "
        "Check out the results now.",
    ),
    NotificationType.NEW_CHALLENGE_AVAILABLE: (
        "🎯 New Challenge Available!",
        "A new challenge for {monthName} has been added: {challengeTitle}. Check it out now!",
    ),
    NotificationType.UPCOMING_MATCH: (
        "⚽ Upcoming Match",
        "{teamName} has a match coming up. Get ready!",
    ),
    NotificationType.TEAM_INVITATION: (
        "📩 Team Invitation",
        "You have been invited to join {teamName}.",
    ),
    NotificationType.INVITATION_ACCEPTED: (
        "🎉 Invitation Accepted",
        "Your invitation to join {teamName} was accepted.",
    ),
    NotificationType.INVITATION_DECLINED: (
        "Invitation Declined",
        "Your invitation to join {teamName} was declined.",
    ),
    NotificationType.REMOVED_FROM_TEAM: (
        "Removed from Team",
        "You are no longer a member of {teamName}.",
    ),
}

_FIXED_FIELDS = {"userId", "type", "title", "message", "createdAt", "isRead"}

_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "haddaf:notifications")


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render(type_: NotificationType, fields: dict[str, str]) -> tuple[str, str]:
    title, message = TEMPLATES[type_]
    values = _Blank(fields)
    return title.format_map(values), " ".join(message.format_map(values).split())


def idempotency_id(type_: NotificationType, recipient_id: str, correlation_id: str) -> str:
    """Deterministic record id for an event-bound notification."""
    return str(uuid.uuid5(_ID_NAMESPACE, f"{type_.value}|{recipient_id}|{correlation_id}"))


class NotificationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    recipient_id: str
    type: NotificationType
    title: str
    message: str
    created_at: Optional[datetime] = None
    is_read: bool = False
    correlation_fields: Dict[str, str] = Field(default_factory=dict)

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = dict(self.correlation_fields)
        doc.update(
            {
                "userId": self.recipient_id,
                "type": self.type.value,
                "title": self.title,
                "message": self.message,
                "createdAt": self.created_at or SERVER_TIMESTAMP,
                "isRead": self.is_read,
            }
        )
        return doc

    @classmethod
    def from_document(cls, doc: DocumentSnapshot) -> "NotificationRecord":
        data = doc.data
        for name in ("userId", "title", "message"):
            if not isinstance(data.get(name), str):
                raise MalformedDocument(doc.path, name)
        try:
            type_ = NotificationType(data.get("type"))
        except ValueError:
            raise MalformedDocument(doc.path, "type", "unknown") from None
        created_at = data.get("createdAt")
        if not isinstance(created_at, datetime):
            raise MalformedDocument(doc.path, "createdAt")

        return cls(
            id=doc.id,
            recipient_id=data["userId"],
            type=type_,
            title=data["title"],
            message=data["message"],
            created_at=created_at,
            is_read=data.get("isRead") is True,
            correlation_fields={
                k: v for k, v in data.items() if k not in _FIXED_FIELDS and isinstance(v, str)
            },
        )


class PreferenceSet(BaseModel):
    """Which gated notification types a user wants. Absent entries mean enabled."""

    user_id: str
    enabled: Dict[NotificationType, bool] = Field(default_factory=dict)

    def allows(self, type_: NotificationType) -> bool:
        if type_ not in PREFERENCE_FIELDS:
            return True
        return self.enabled.get(type_, True)

    @classmethod
    def from_profile(cls, user_id: str, data: Optional[dict[str, Any]]) -> "PreferenceSet":
        enabled: dict[NotificationType, bool] = {}
        for type_, field_name in PREFERENCE_FIELDS.items():
            value = (data or {}).get(field_name)
            if isinstance(value, bool):
                enabled[type_] = value
        return cls(user_id=user_id, enabled=enabled)

    @classmethod
    async def load(cls, store: DocumentStore, user_id: str) -> "PreferenceSet":
        doc = await store.get(f"users/{user_id}")
        return cls.from_profile(user_id, doc.data if doc else None)
