"""
Shared fixtures for sync core tests.
"""

import pytest

from haddaf_sync.bus import EventBus
from haddaf_sync.metrics import MetricsCollector
from haddaf_sync.session import SessionContext
from haddaf_sync.store import SqliteDocumentStore
from haddaf_sync.subscriptions import SubscriptionManager

from helpers import ManualListenStore


@pytest.fixture
async def store(tmp_path):
    s = SqliteDocumentStore(str(tmp_path / "store.db"))
    await s.open()
    yield s
    await s.close()


@pytest.fixture
async def manual_store(tmp_path):
    s = ManualListenStore(str(tmp_path / "manual.db"))
    await s.open()
    yield s
    await s.close()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def session_context(bus):
    return SessionContext(bus)


@pytest.fixture
async def subscriptions(store, metrics):
    manager = SubscriptionManager(store, metrics)
    yield manager
    await manager.close()


@pytest.fixture
async def manual_subscriptions(manual_store, metrics):
    manager = SubscriptionManager(manual_store, metrics)
    yield manager
    await manager.close()
