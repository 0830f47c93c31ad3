"""End-to-end tests for the sync core wiring."""

from datetime import datetime, timezone

import pytest
from aiohttp import test_utils

from haddaf_sync.config import SyncConfig
from haddaf_sync.core import SyncCore
from haddaf_sync.health import HealthServer
from haddaf_sync.metrics import MetricsCollector
from haddaf_sync.notifications.fanout import Outcome
from haddaf_sync.notifications.models import NotificationType

from helpers import wait_for

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
async def core(store):
    c = SyncCore(SyncConfig(metrics={"enabled": False}), store=store)
    await c.start()
    yield c
    await c.stop()


async def test_sign_in_starts_user_subscriptions(core, store):
    await store.set("users/coach1", {"role": "coach", "coachStatus": "approved", "firstName": "Lina"})
    await store.set("videoPosts/p1", {"authorId": "coach1", "uploadDateTime": T0})

    session = core.sign_in("coach1")
    assert session.user_id == "coach1"
    assert core.subscriptions.active_keys() == ["feed:coach1", "notifications", "role"]

    assert await wait_for(lambda: core.session.is_verified_coach)
    assert await wait_for(lambda: [i.id for i in core.feed.items] == ["p1"])
    assert core.feed.items[0].author_name == "Lina"

    outcome = await core.notify(NotificationType.UPCOMING_MATCH, ["coach1"], {"teamName": "Falcons"})
    assert outcome == {"coach1": Outcome.SENT}
    assert await wait_for(lambda: core.unread_count == 1)

    status = core.status()
    assert status["session"]["is_verified_coach"] is True
    assert status["unread_notifications"] == 1
    assert status["feed_items"] == 1


async def test_sign_out_stops_everything(core, store):
    core.sign_in("player1")
    assert core.subscriptions.active_keys()

    session = core.sign_out()
    assert session.is_guest
    assert core.subscriptions.active_keys() == []
    assert core.unread_count == 0
    assert core.feed.items == ()


async def test_guest_gets_no_user_subscriptions(core):
    core.sign_in("anon", anonymous=True)
    assert core.session.is_guest
    assert core.subscriptions.active_keys() == []


async def test_invitation_round_trip(core, store):
    await store.set("users/player1", {"role": "player"})
    await store.set(
        "invitations/inv1",
        {"coachID": "coach1", "playerID": "player1", "teamID": "t1", "teamName": "Falcons", "status": "pending"},
    )

    core.sign_in("player1")
    result = await core.respond("inv1", accept=True)
    assert result.notification == Outcome.SENT
    assert (await store.get("users/player1")).get("teamId") == "t1"

    # The coach sees the acceptance once they sign in.
    core.sign_in("coach1")
    assert await wait_for(lambda: core.unread_count == 1)
    assert core.inbox.records[0].type == NotificationType.INVITATION_ACCEPTED


async def test_core_owns_its_store(tmp_path):
    config = SyncConfig(store={"db_path": str(tmp_path / "owned" / "store.db")}, metrics={"enabled": False})
    core = SyncCore(config)
    await core.start()
    assert await core.store.ping()
    await core.stop()
    assert not await core.store.ping()
    assert (tmp_path / "owned" / "store.db").exists()


async def test_health_endpoints():
    metrics = MetricsCollector()
    metrics.inc("notifications_sent_total", 2)
    metrics.inc("malformed_documents_total")
    server = HealthServer(metrics=metrics)
    server.update_status({"subscriptions": ["role"]}, store_reachable=True)

    async with test_utils.TestClient(test_utils.TestServer(server.create_app())) as client:
        resp = await client.get("/health")
        assert resp.status == 200
        body = await resp.json()
        assert body["status"] == "healthy"
        assert body["subscriptions"] == ["role"]
        assert body["absorbed_errors"] == {"documents": 1}
        assert body["uptime_seconds"] >= 0

        resp = await client.get("/metrics")
        assert "sync_notifications_sent_total 2" in await resp.text()


def test_degraded_when_store_unreachable():
    server = HealthServer()
    server.update_status({}, store_reachable=False)
    assert server.status_body()["status"] == "degraded"
