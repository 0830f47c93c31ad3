"""Tests for the own-posts feed projector."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from haddaf_sync.bus import (
    ITEM_COUNTERS_CHANGED,
    ITEM_CREATED,
    ITEM_DELETED,
    ItemCountersChanged,
    ItemCreated,
    ItemDeleted,
)
from haddaf_sync.errors import MalformedDocument
from haddaf_sync.projectors.feed import FeedItem, FeedProjector, parse_stats

from helpers import doc, settle, wait_for

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def post(post_id: str, hours: int = 0, author: str = "u1", **fields):
    return doc(
        f"videoPosts/{post_id}",
        authorId=author,
        uploadDateTime=T0 + timedelta(hours=hours),
        **fields,
    )


def ids(projector: FeedProjector) -> list[str]:
    return [item.id for item in projector.items]


@pytest.fixture
async def projector(manual_subscriptions, manual_store, bus, metrics):
    p = FeedProjector(manual_subscriptions, manual_store, bus, metrics=metrics, enrichers=[])
    p.start("u1")
    yield p
    p.stop()


def test_item_from_document():
    item = FeedItem.from_document(
        post(
            "p1",
            caption="Free kick",
            likeCount=3,
            likedBy=["u2", 7],
            visibility=False,
            performanceFeedback={"speed": 7, "accuracy": 9.5, "note": "n/a"},
        )
    )
    assert item.id == "p1"
    assert item.author_id == "u1"
    assert item.caption == "Free kick"
    assert item.like_count == 3
    assert item.liked_by == ["u2"]
    assert item.is_private
    assert [(s.label, s.value) for s in item.stats] == [("ACCURACY", 9.5), ("SPEED", 7.0)]


def test_item_requires_timestamp_and_author():
    with pytest.raises(MalformedDocument):
        FeedItem.from_document(doc("videoPosts/p1", authorId="u1"))
    with pytest.raises(MalformedDocument):
        FeedItem.from_document(doc("videoPosts/p1", uploadDateTime=T0))


def test_parse_stats_list_form():
    stats = parse_stats([{"label": "Dribbling", "value": 4, "maxValue": 5}, {"label": "x"}, "junk"])
    assert len(stats) == 1
    assert stats[0].max_value == 5.0


async def test_live_feed_is_newest_first_and_enriched(store, subscriptions, bus, metrics):
    await store.set("users/u1", {"firstName": "Sara", "lastName": "Ali", "profilePic": "pic.jpg"})
    for post_id, hours, author in [("p1", 0, "u1"), ("p2", 2, "u1"), ("p3", 1, "u2")]:
        await store.set(
            f"videoPosts/{post_id}",
            {"authorId": author, "uploadDateTime": T0 + timedelta(hours=hours)},
        )

    projector = FeedProjector(subscriptions, store, bus, metrics=metrics)
    projector.start("u1")
    assert await wait_for(lambda: ids(projector) == ["p2", "p1"])
    assert projector.items[0].author_name == "Sara Ali"
    assert projector.items[0].author_image == "pic.jpg"

    await store.set("videoPosts/p4", {"authorId": "u1", "uploadDateTime": T0 + timedelta(hours=5)})
    assert await wait_for(lambda: ids(projector) == ["p4", "p2", "p1"])
    assert metrics.get("feed_items") == 3
    projector.stop()


async def test_optimistic_create_then_snapshot_replaces(projector, manual_store, bus):
    manual_store.push([post("p1")])
    assert await wait_for(lambda: ids(projector) == ["p1"])

    local = FeedItem.from_document(post("local", hours=3))
    bus.publish(ITEM_CREATED, ItemCreated(local))
    assert ids(projector) == ["local", "p1"]

    # Items by other authors are not ours to show.
    bus.publish(ITEM_CREATED, ItemCreated(FeedItem.from_document(post("x", author="u9"))))
    assert ids(projector) == ["local", "p1"]

    manual_store.push([post("p2", hours=4), post("p1")])
    assert await wait_for(lambda: ids(projector) == ["p2", "p1"])


async def test_deleted_item_stays_hidden_until_remote_drops_it(projector, manual_store, bus):
    manual_store.push([post("p2", hours=1), post("p1")])
    assert await wait_for(lambda: ids(projector) == ["p2", "p1"])

    bus.publish(ITEM_DELETED, ItemDeleted("p1"))
    assert ids(projector) == ["p2"]

    # Snapshot taken before the delete reached the store.
    manual_store.push([post("p2", hours=1), post("p1")])
    await settle()
    await projector.wait_settled()
    assert ids(projector) == ["p2"]

    manual_store.push([post("p2", hours=1)])
    await settle()
    await projector.wait_settled()
    assert ids(projector) == ["p2"]

    # Once the remote side dropped the id, a later re-appearance is real.
    manual_store.push([post("p2", hours=1), post("p1")])
    assert await wait_for(lambda: ids(projector) == ["p2", "p1"])


async def test_malformed_documents_are_dropped_and_counted(projector, manual_store, metrics):
    manual_store.push([post("p1"), doc("videoPosts/broken", authorId="u1")])
    assert await wait_for(lambda: ids(projector) == ["p1"])
    assert metrics.get("malformed_documents_total") == 1


async def test_subscription_error_keeps_last_items(projector, manual_store, metrics):
    manual_store.push([post("p1")])
    assert await wait_for(lambda: ids(projector) == ["p1"])

    manual_store.registrations[-1].fail(RuntimeError("permission denied"))
    assert await wait_for(lambda: projector.error is not None)
    assert ids(projector) == ["p1"]
    assert metrics.get("feed_errors_total") == 1


async def test_enrichment_gates_publication(manual_subscriptions, manual_store, bus, metrics):
    release = asyncio.Event()

    async def slow_enricher(item, store):
        await release.wait()
        return {"author_name": "Sara"}

    projector = FeedProjector(
        manual_subscriptions, manual_store, bus, metrics=metrics, enrichers=[slow_enricher]
    )
    projector.start("u1")

    manual_store.push([post("p1")])
    await settle()
    manual_store.push([post("p2", hours=1), post("p1")])
    await settle()
    assert projector.items == ()

    release.set()
    assert await wait_for(lambda: ids(projector) == ["p2", "p1"])
    assert all(item.author_name == "Sara" for item in projector.items)
    assert metrics.get("feed_enrichment_superseded_total") == 1
    projector.stop()


async def test_create_survives_snapshot_delivered_before_it(manual_subscriptions, manual_store, bus, metrics):
    release = asyncio.Event()

    async def gated(item, store):
        await release.wait()
        return {}

    projector = FeedProjector(manual_subscriptions, manual_store, bus, metrics=metrics, enrichers=[gated])
    projector.start("u1")

    manual_store.push([post("p1")])
    await settle()
    bus.publish(ITEM_CREATED, ItemCreated(FeedItem.from_document(post("local", hours=3))))
    assert ids(projector) == ["local"]

    # The pass for the older snapshot finishes after the create.
    release.set()
    await projector.wait_settled()
    assert ids(projector) == ["local", "p1"]

    # A snapshot delivered after the create is authoritative.
    manual_store.push([post("p1")])
    assert await wait_for(lambda: ids(projector) == ["p1"])
    projector.stop()


async def test_failing_enricher_keeps_item(manual_subscriptions, manual_store, bus, metrics):
    async def broken(item, store):
        raise RuntimeError("profile unavailable")

    projector = FeedProjector(manual_subscriptions, manual_store, bus, metrics=metrics, enrichers=[broken])
    projector.start("u1")
    manual_store.push([post("p1")])

    assert await wait_for(lambda: ids(projector) == ["p1"])
    assert projector.items[0].author_name == ""
    assert metrics.get("feed_enrichment_failures_total") == 1
    projector.stop()


async def test_counter_changes_patch_items(projector, manual_store, bus):
    manual_store.push([post("p1", likeCount=1)])
    assert await wait_for(lambda: ids(projector) == ["p1"])

    bus.publish(ITEM_COUNTERS_CHANGED, ItemCountersChanged("p1", like_count=2, liked_by=("u1", "u2")))
    assert projector.items[0].like_count == 2
    assert projector.items[0].is_liked_by("u2")
    assert projector.items[0].comment_count == 0


async def test_stop_clears_state(projector, manual_store, manual_subscriptions):
    seen = []
    projector.watch(seen.append)
    manual_store.push([post("p1")])
    assert await wait_for(lambda: ids(projector) == ["p1"])

    projector.stop()
    assert projector.items == ()
    assert seen[-1] == ()
    assert manual_subscriptions.active_keys() == []
