"""
In-process publish/subscribe channel.

Connects optimistic local actions (an item was just created or deleted
on this device) to the projectors that must show them before the next
remote snapshot arrives.

Topics are dotted names. A subscription to ``feed.*`` receives every
topic starting with ``feed.``; ``*`` alone receives everything.
Delivery is synchronous, in subscription order, on the publishing
(event loop) thread.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

log = structlog.get_logger()

ITEM_CREATED = "feed.item_created"
ITEM_DELETED = "feed.item_deleted"
ITEM_COUNTERS_CHANGED = "feed.item_counters_changed"
SESSION_CHANGED = "session.changed"

Handler = Callable[[Any], None]


@dataclass(frozen=True)
class ItemCreated:
    item: Any  # FeedItem


@dataclass(frozen=True)
class ItemDeleted:
    item_id: str


@dataclass(frozen=True)
class ItemCountersChanged:
    item_id: str
    like_count: int | None = None
    comment_count: int | None = None
    liked_by: tuple[str, ...] | None = None


@dataclass(eq=False)
class BusSubscription:
    topic: str
    handler: Handler
    _bus: "EventBus | None" = field(default=None, repr=False)

    def cancel(self) -> None:
        if self._bus is not None:
            self._bus._remove(self)
            self._bus = None

    @property
    def active(self) -> bool:
        return self._bus is not None


def _topic_matches(pattern: str, topic: str) -> bool:
    if pattern == "*":
        return True
    if pattern.endswith(".*"):
        return topic.startswith(pattern[:-1])
    return pattern == topic


class EventBus:
    """Synchronous topic-based event bus."""

    def __init__(self) -> None:
        self._subscriptions: list[BusSubscription] = []

    def subscribe(self, topic: str, handler: Handler) -> BusSubscription:
        sub = BusSubscription(topic=topic, handler=handler, _bus=self)
        self._subscriptions.append(sub)
        return sub

    def publish(self, topic: str, payload: Any = None) -> int:
        """Deliver ``payload`` to every matching handler. Returns the delivery count."""
        delivered = 0
        for sub in list(self._subscriptions):
            if not sub.active or not _topic_matches(sub.topic, topic):
                continue
            try:
                sub.handler(payload)
                delivered += 1
            except Exception:
                log.exception("bus.handler_error", topic=topic, pattern=sub.topic)
        return delivered

    def _remove(self, sub: BusSubscription) -> None:
        try:
            self._subscriptions.remove(sub)
        except ValueError:
            pass

    def __len__(self) -> int:
        return len(self._subscriptions)
