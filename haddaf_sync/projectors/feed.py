"""
Feed projector: the ordered list of a user's own posts.

Handles:
- Live subscription on the owner's posts, newest first
- Per-item secondary lookups (author profile) run concurrently, published
  only once every lookup of a snapshot has settled
- Optimistic create/delete/counter events from the event bus, applied at once
- Reconciliation: each authoritative snapshot replaces local state, except
  that ids deleted locally stay hidden until a snapshot without them arrives
  and local creates outlive snapshots delivered before them
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from ..bus import (
    ITEM_COUNTERS_CHANGED,
    ITEM_CREATED,
    ITEM_DELETED,
    BusSubscription,
    EventBus,
    ItemCountersChanged,
    ItemCreated,
    ItemDeleted,
)
from ..config import FeedConfig
from ..errors import MalformedDocument, SubscriptionError
from ..metrics import MetricsCollector
from ..store import DocumentSnapshot, DocumentStore, Query
from ..subscriptions import Snapshot, SubscriptionHandle, SubscriptionManager

log = structlog.get_logger()

DEFAULT_STAT_MAX = 10.0


class PostStat(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    value: float
    max_value: float = DEFAULT_STAT_MAX


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def parse_stats(raw: Any) -> list[PostStat]:
    """Performance feedback comes either as ``{label: value}`` or as a list of dicts."""
    stats: list[PostStat] = []
    if isinstance(raw, dict):
        for label, value in raw.items():
            number = _as_float(value)
            if number is not None:
                stats.append(PostStat(label=str(label).upper(), value=number))
        stats.sort(key=lambda s: s.label)
    elif isinstance(raw, list):
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            label = entry.get("label")
            number = _as_float(entry.get("value"))
            if not isinstance(label, str) or number is None:
                continue
            max_value = _as_float(entry.get("maxValue"))
            stats.append(
                PostStat(
                    label=label,
                    value=number,
                    max_value=max_value if max_value is not None else DEFAULT_STAT_MAX,
                )
            )
    return stats


class FeedItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    author_id: str
    uploaded_at: datetime
    caption: str = ""
    video_url: str = ""
    thumbnail_url: str = ""
    is_private: bool = False
    like_count: int = 0
    comment_count: int = 0
    liked_by: List[str] = Field(default_factory=list)
    stats: List[PostStat] = Field(default_factory=list)
    match_date: Optional[datetime] = None
    author_name: str = ""
    author_image: str = ""

    def is_liked_by(self, uid: str) -> bool:
        return uid in self.liked_by

    @classmethod
    def from_document(cls, doc: DocumentSnapshot, owner_field: str = "authorId",
                      order_field: str = "uploadDateTime") -> "FeedItem":
        data = doc.data
        uploaded_at = data.get(order_field)
        if not isinstance(uploaded_at, datetime):
            raise MalformedDocument(doc.path, order_field,
                                    "missing" if uploaded_at is None else "not a timestamp")
        author_id = data.get(owner_field)
        if not isinstance(author_id, str) or not author_id:
            raise MalformedDocument(doc.path, owner_field)

        liked_by = data.get("likedBy")
        match_date = data.get("matchDate")
        return cls(
            id=doc.id,
            author_id=author_id,
            uploaded_at=uploaded_at,
            caption=data.get("caption") or "",
            video_url=data.get("url") or "",
            thumbnail_url=data.get("thumbnailURL") or "",
            is_private=not bool(data.get("visibility", True)),
            like_count=_as_int(data.get("likeCount")),
            comment_count=_as_int(data.get("commentCount")),
            liked_by=[u for u in liked_by if isinstance(u, str)] if isinstance(liked_by, list) else [],
            stats=parse_stats(data.get("performanceFeedback")),
            match_date=match_date if isinstance(match_date, datetime) else None,
            author_name=data.get("authorUsername") or "",
            author_image=data.get("profilePic") or "",
        )


Enricher = Callable[[FeedItem, DocumentStore], Awaitable[dict[str, Any]]]


async def author_profile_enricher(item: FeedItem, store: DocumentStore) -> dict[str, Any]:
    """Fill in the author's display name and picture from their profile."""
    doc = await store.get(f"users/{item.author_id}")
    if doc is None:
        return {}
    updates: dict[str, Any] = {}
    name = f"{doc.get('firstName') or ''} {doc.get('lastName') or ''}".strip()
    if name:
        updates["author_name"] = name
    picture = doc.get("profilePic")
    if isinstance(picture, str) and picture:
        updates["author_image"] = picture
    return updates


FeedWatcher = Callable[[tuple[FeedItem, ...]], None]


class FeedProjector:
    """
    Projects one owner's posts into an ordered, enriched, optimistic list.
    """

    def __init__(
        self,
        subscriptions: SubscriptionManager,
        store: DocumentStore,
        bus: EventBus,
        config: FeedConfig | None = None,
        metrics: MetricsCollector | None = None,
        enrichers: list[Enricher] | None = None,
    ) -> None:
        self._subscriptions = subscriptions
        self._store = store
        self._bus = bus
        self._config = config or FeedConfig()
        self._metrics = metrics or MetricsCollector()
        self._enrichers = [author_profile_enricher] if enrichers is None else list(enrichers)
        self._semaphore = asyncio.Semaphore(self._config.enrichment_concurrency)

        self._owner_id: str | None = None
        self._handle: SubscriptionHandle | None = None
        self._items: tuple[FeedItem, ...] = ()
        self._tombstones: set[str] = set()
        self._applied_sequence = 0
        self._delivered_sequence = 0
        # Optimistic creates keyed by id, with the last sequence delivered when they were made.
        self._pending_creates: dict[str, tuple[FeedItem, int]] = {}
        self._enrich_task: asyncio.Task | None = None
        self._bus_subs: list[BusSubscription] = []
        self._watchers: list[FeedWatcher] = []
        self._error: SubscriptionError | None = None

    @property
    def owner_id(self) -> str | None:
        return self._owner_id

    @property
    def items(self) -> tuple[FeedItem, ...]:
        return self._items

    @property
    def error(self) -> SubscriptionError | None:
        return self._error

    def watch(self, watcher: FeedWatcher) -> Callable[[], None]:
        self._watchers.append(watcher)

        def unwatch() -> None:
            if watcher in self._watchers:
                self._watchers.remove(watcher)

        return unwatch

    # --- Lifecycle ---

    def start(self, owner_id: str) -> None:
        self.stop()
        self._owner_id = owner_id
        self._bus_subs = [
            self._bus.subscribe(ITEM_CREATED, self._on_item_created),
            self._bus.subscribe(ITEM_DELETED, self._on_item_deleted),
            self._bus.subscribe(ITEM_COUNTERS_CHANGED, self._on_counters_changed),
        ]
        query = (
            Query(self._config.collection)
            .where(self._config.owner_field, "==", owner_id)
            .order(self._config.order_field, descending=True)
        )
        self._handle = self._subscriptions.start(
            f"feed:{owner_id}", query, self._on_snapshot, self._on_error
        )

    def stop(self) -> None:
        if self._handle is not None:
            self._subscriptions.cancel(self._handle)
            self._handle = None
        if self._enrich_task is not None:
            self._enrich_task.cancel()
            self._enrich_task = None
        for sub in self._bus_subs:
            sub.cancel()
        self._bus_subs = []
        self._owner_id = None
        self._tombstones = set()
        self._applied_sequence = 0
        self._delivered_sequence = 0
        self._pending_creates = {}
        self._error = None
        self._publish(())

    async def wait_settled(self) -> None:
        """Wait for the in-flight enrichment pass, if any."""
        task = self._enrich_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    # --- Remote snapshots ---

    def _on_snapshot(self, snapshot: Snapshot) -> None:
        self._delivered_sequence = max(self._delivered_sequence, snapshot.sequence)
        if self._enrich_task is not None and not self._enrich_task.done():
            self._enrich_task.cancel()
            self._metrics.inc("feed_enrichment_superseded_total")
        self._enrich_task = asyncio.get_running_loop().create_task(
            self._project(self._handle, snapshot)
        )

    async def _project(self, handle: SubscriptionHandle | None, snapshot: Snapshot) -> None:
        items: list[FeedItem] = []
        for doc in snapshot.documents:
            try:
                items.append(
                    FeedItem.from_document(doc, self._config.owner_field, self._config.order_field)
                )
            except MalformedDocument as exc:
                self._metrics.inc("malformed_documents_total")
                log.warning("feed.malformed_document", path=exc.path, field=exc.field)

        enriched = await asyncio.gather(*(self._enrich(item) for item in items))

        if handle is None or not self._subscriptions.is_current(handle):
            self._metrics.inc("stale_deliveries_total")
            return
        if snapshot.sequence <= self._applied_sequence:
            self._metrics.inc("stale_deliveries_total")
            return
        self._applied_sequence = snapshot.sequence
        self._error = None
        self._reconcile(list(enriched), snapshot.sequence)

    async def _enrich(self, item: FeedItem) -> FeedItem:
        async with self._semaphore:
            for enricher in self._enrichers:
                try:
                    updates = await enricher(item, self._store)
                except Exception as exc:
                    self._metrics.inc("feed_enrichment_failures_total")
                    log.warning("feed.enrichment_failed", item=item.id, error=str(exc))
                    continue
                if updates:
                    item = item.model_copy(update=updates)
        return item

    def _reconcile(self, authoritative: list[FeedItem], sequence: int) -> None:
        present = {item.id for item in authoritative}
        # A tombstone is done once the remote side stops returning the id.
        self._tombstones &= present

        items = [i for i in authoritative if i.id not in self._tombstones]
        for item_id, (item, created_after) in list(self._pending_creates.items()):
            if item_id in present or sequence > created_after:
                del self._pending_creates[item_id]
            elif item_id not in self._tombstones:
                # The snapshot was delivered before the create happened.
                items.append(item)
        items.sort(key=lambda i: i.uploaded_at, reverse=True)

        self._publish(tuple(items))
        log.debug(
            "feed.reconciled",
            owner=self._owner_id,
            sequence=sequence,
            items=len(self._items),
            hidden=len(self._tombstones),
            pending=len(self._pending_creates),
        )

    def _on_error(self, error: SubscriptionError) -> None:
        self._error = error
        self._metrics.inc("feed_errors_total")
        log.warning(
            "feed.subscription_failed",
            owner=self._owner_id,
            error=str(error),
            kept_items=len(self._items),
        )

    # --- Optimistic events ---

    def _on_item_created(self, event: ItemCreated) -> None:
        item: FeedItem = event.item
        if item.author_id != self._owner_id:
            return
        if any(existing.id == item.id for existing in self._items):
            return
        self._tombstones.discard(item.id)
        self._pending_creates[item.id] = (item, self._delivered_sequence)
        self._publish((item,) + self._items)

    def _on_item_deleted(self, event: ItemDeleted) -> None:
        self._tombstones.add(event.item_id)
        self._pending_creates.pop(event.item_id, None)
        if any(existing.id == event.item_id for existing in self._items):
            self._publish(tuple(i for i in self._items if i.id != event.item_id))

    def _on_counters_changed(self, event: ItemCountersChanged) -> None:
        updates: dict[str, Any] = {}
        if event.like_count is not None:
            updates["like_count"] = event.like_count
        if event.comment_count is not None:
            updates["comment_count"] = event.comment_count
        if event.liked_by is not None:
            updates["liked_by"] = list(event.liked_by)
        if not updates:
            return
        changed = False
        patched = []
        for item in self._items:
            if item.id == event.item_id:
                item = item.model_copy(update=updates)
                changed = True
            patched.append(item)
        if changed:
            self._publish(tuple(patched))

    def _publish(self, items: tuple[FeedItem, ...]) -> None:
        if items == self._items:
            return
        self._items = items
        self._metrics.set_gauge("feed_items", len(items))
        for watcher in list(self._watchers):
            try:
                watcher(items)
            except Exception:
                log.exception("feed.watcher_error")
