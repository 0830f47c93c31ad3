"""
Notification inbox: the signed-in user's notifications and unread badge count.
"""

from __future__ import annotations

from typing import Callable

import structlog

from ..errors import MalformedDocument, StoreError, SubscriptionError
from ..metrics import MetricsCollector
from ..store import DocumentStore, Query
from ..subscriptions import Snapshot, SubscriptionHandle, SubscriptionManager
from .models import NOTIFICATIONS_COLLECTION, NotificationRecord

log = structlog.get_logger()

INBOX_SUBSCRIPTION_KEY = "notifications"

InboxWatcher = Callable[[tuple[NotificationRecord, ...], int], None]


class NotificationInbox:
    """Live, newest-first list of one user's notification records."""

    def __init__(
        self,
        subscriptions: SubscriptionManager,
        store: DocumentStore,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._subscriptions = subscriptions
        self._store = store
        self._metrics = metrics or MetricsCollector()
        self._user_id: str | None = None
        self._handle: SubscriptionHandle | None = None
        self._records: tuple[NotificationRecord, ...] = ()
        self._watchers: list[InboxWatcher] = []
        self._loaded = False

    @property
    def records(self) -> tuple[NotificationRecord, ...]:
        return self._records

    @property
    def unread_count(self) -> int:
        return sum(1 for r in self._records if not r.is_read)

    @property
    def loaded(self) -> bool:
        return self._loaded

    def watch(self, watcher: InboxWatcher) -> Callable[[], None]:
        self._watchers.append(watcher)

        def unwatch() -> None:
            if watcher in self._watchers:
                self._watchers.remove(watcher)

        return unwatch

    def start(self, user_id: str) -> None:
        self._user_id = user_id
        self._loaded = False
        query = (
            Query(NOTIFICATIONS_COLLECTION)
            .where("userId", "==", user_id)
            .order("createdAt", descending=True)
        )
        self._handle = self._subscriptions.start(
            INBOX_SUBSCRIPTION_KEY, query, self._on_snapshot, self._on_error
        )

    def stop(self) -> None:
        if self._handle is not None:
            self._subscriptions.cancel(self._handle)
            self._handle = None
        self._user_id = None
        self._loaded = False
        self._publish(())

    def _on_snapshot(self, snapshot: Snapshot) -> None:
        records = []
        for doc in snapshot.documents:
            try:
                records.append(NotificationRecord.from_document(doc))
            except MalformedDocument as exc:
                self._metrics.inc("malformed_documents_total")
                log.warning("inbox.malformed_document", path=exc.path, field=exc.field)
        self._loaded = True
        self._publish(tuple(records))
        log.debug("inbox.loaded", user=self._user_id, total=len(records), unread=self.unread_count)

    def _on_error(self, error: SubscriptionError) -> None:
        self._loaded = True
        self._metrics.inc("inbox_errors_total")
        log.warning("inbox.subscription_failed", user=self._user_id, error=str(error))

    def _publish(self, records: tuple[NotificationRecord, ...]) -> None:
        self._records = records
        unread = self.unread_count
        self._metrics.set_gauge("unread_notifications", unread)
        for watcher in list(self._watchers):
            try:
                watcher(records, unread)
            except Exception:
                log.exception("inbox.watcher_error")

    # --- Mutations ---

    async def mark_read(self, notification_id: str) -> bool:
        try:
            await self._store.update(f"{NOTIFICATIONS_COLLECTION}/{notification_id}", {"isRead": True})
        except StoreError as exc:
            log.warning("inbox.mark_read_failed", notification=notification_id, error=str(exc))
            return False
        return True

    async def mark_all_read(self, user_id: str) -> int:
        """Clear the user's inbox: every one of their records is deleted.

        The record set comes from the store, not from the local list, so
        records that have not reached this client yet are removed too.
        Returns the number of records deleted.
        """
        try:
            docs = await self._store.query(
                Query(NOTIFICATIONS_COLLECTION).where("userId", "==", user_id)
            )
            if not docs:
                return 0
            batch = self._store.batch()
            for doc in docs:
                batch.delete(doc.path)
            await batch.commit()
        except StoreError as exc:
            log.warning("inbox.mark_all_read_failed", user=user_id, error=str(exc))
            return 0
        log.info("inbox.cleared", user=user_id, deleted=len(docs))
        return len(docs)

    async def delete(self, notification_id: str) -> bool:
        try:
            await self._store.delete(f"{NOTIFICATIONS_COLLECTION}/{notification_id}")
        except StoreError as exc:
            log.warning("inbox.delete_failed", notification=notification_id, error=str(exc))
            return False
        return True
