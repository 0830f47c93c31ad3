"""Tests for the notification inbox."""

from datetime import datetime, timedelta, timezone

import pytest

from haddaf_sync.notifications.inbox import NotificationInbox

from helpers import wait_for

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


async def add(store, record_id, user_id="u1", minutes=0, is_read=False, **extra):
    data = {
        "userId": user_id,
        "type": "team_invitation",
        "title": "Team Invitation",
        "message": "You have been invited to join Falcons.",
        "createdAt": T0 + timedelta(minutes=minutes),
        "isRead": is_read,
        "invitationId": record_id,
    }
    data.update(extra)
    await store.set(f"notifications/{record_id}", data)


@pytest.fixture
async def inbox(subscriptions, store, metrics):
    box = NotificationInbox(subscriptions, store, metrics)
    yield box
    box.stop()


async def test_newest_first_with_unread_count(inbox, store, metrics):
    await add(store, "n1", minutes=0)
    await add(store, "n2", minutes=5, is_read=True)
    await add(store, "n3", minutes=10)
    await add(store, "other", user_id="u2")

    inbox.start("u1")
    assert await wait_for(lambda: inbox.loaded)
    assert [r.id for r in inbox.records] == ["n3", "n2", "n1"]
    assert inbox.unread_count == 2
    assert metrics.get("unread_notifications") == 2


async def test_mark_read_updates_badge(inbox, store):
    await add(store, "n1")
    badges = []
    inbox.watch(lambda records, unread: badges.append(unread))
    inbox.start("u1")
    assert await wait_for(lambda: inbox.unread_count == 1)

    assert await inbox.mark_read("n1") is True
    assert await wait_for(lambda: inbox.unread_count == 0)
    assert badges[-1] == 0

    assert await inbox.mark_read("missing") is False


async def test_mark_all_read_clears_the_inbox(inbox, store):
    for i in range(3):
        await add(store, f"n{i}", minutes=i)
    await add(store, "keep", user_id="u2")
    inbox.start("u1")
    assert await wait_for(lambda: len(inbox.records) == 3)

    assert await inbox.mark_all_read("u1") == 3
    assert await wait_for(lambda: inbox.records == ())
    assert inbox.unread_count == 0
    assert await store.get("notifications/keep") is not None
    assert await inbox.mark_all_read("u1") == 0


async def test_delete_single_record(inbox, store):
    await add(store, "n1")
    await add(store, "n2", minutes=1)
    inbox.start("u1")
    assert await wait_for(lambda: len(inbox.records) == 2)

    assert await inbox.delete("n1") is True
    assert await wait_for(lambda: [r.id for r in inbox.records] == ["n2"])


async def test_malformed_records_are_skipped(inbox, store, metrics):
    await add(store, "good")
    await add(store, "bad-type", minutes=1, type="confetti")
    await store.set("notifications/no-title", {"userId": "u1", "createdAt": T0})

    inbox.start("u1")
    assert await wait_for(lambda: inbox.loaded)
    assert [r.id for r in inbox.records] == ["good"]
    assert metrics.get("malformed_documents_total") == 2


async def test_stop_empties_the_inbox(inbox, store):
    await add(store, "n1")
    inbox.start("u1")
    assert await wait_for(lambda: inbox.unread_count == 1)

    inbox.stop()
    assert inbox.records == ()
    assert not inbox.loaded
