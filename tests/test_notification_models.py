"""Tests for notification records, templates and ids."""

from datetime import datetime, timezone

import pytest

from haddaf_sync.errors import MalformedDocument
from haddaf_sync.notifications.models import (
    CORRELATION_KEYS,
    PREFERENCE_FIELDS,
    NotificationRecord,
    NotificationType,
    idempotency_id,
    render,
)
from haddaf_sync.store import SERVER_TIMESTAMP

from helpers import doc


def test_every_type_has_a_template():
    for type_ in NotificationType:
        title, message = render(type_, {})
        assert title
        assert message


def test_render_fills_fields_and_tolerates_missing_ones():
    _, message = render(
        NotificationType.NEW_CHALLENGE_AVAILABLE,
        {"monthName": "April", "challengeTitle": "Volleys"},
    )
    assert message == "A new challenge for April has been added: Volleys. Check it out now!"

    _, message = render(NotificationType.TEAM_INVITATION, {})
    assert message == "You have been invited to join ."


def test_idempotency_id_is_deterministic():
    a = idempotency_id(NotificationType.CHALLENGE_ENDED, "u1", "c1")
    assert a == idempotency_id(NotificationType.CHALLENGE_ENDED, "u1", "c1")
    assert a != idempotency_id(NotificationType.CHALLENGE_ENDED, "u2", "c1")
    assert a != idempotency_id(NotificationType.NEW_CHALLENGE_AVAILABLE, "u1", "c1")


def test_gated_types():
    assert set(PREFERENCE_FIELDS) == {
        NotificationType.NEW_CHALLENGE_AVAILABLE,
        NotificationType.CHALLENGE_ENDED,
        NotificationType.UPCOMING_MATCH,
    }
    assert NotificationType.UPCOMING_MATCH not in CORRELATION_KEYS
    assert NotificationType.REMOVED_FROM_TEAM not in CORRELATION_KEYS


def test_record_document_layout():
    record = NotificationRecord(
        id="n1",
        recipient_id="u1",
        type=NotificationType.CHALLENGE_ENDED,
        title="Challenge Ended",
        message="...",
        correlation_fields={"challengeId": "c1"},
    )
    data = record.to_document()
    assert data["userId"] == "u1"
    assert data["type"] == "challenge_ended"
    assert data["challengeId"] == "c1"
    assert data["isRead"] is False
    assert data["createdAt"] is SERVER_TIMESTAMP


def test_record_from_document():
    created = datetime(2025, 3, 1, tzinfo=timezone.utc)
    record = NotificationRecord.from_document(
        doc(
            "notifications/n1",
            userId="u1",
            type="team_invitation",
            title="Team Invitation",
            message="...",
            createdAt=created,
            isRead="yes",
            invitationId="inv1",
            teamName="Falcons",
        )
    )
    assert record.created_at == created
    assert record.is_read is False
    assert record.correlation_fields == {"invitationId": "inv1", "teamName": "Falcons"}


@pytest.mark.parametrize(
    "data",
    [
        {"type": "team_invitation", "title": "t", "message": "m"},
        {"userId": "u1", "type": "mystery", "title": "t", "message": "m"},
        {"userId": "u1", "type": "team_invitation", "title": "t", "message": "m"},
    ],
)
def test_malformed_records(data):
    with pytest.raises(MalformedDocument):
        NotificationRecord.from_document(doc("notifications/n1", **data))
