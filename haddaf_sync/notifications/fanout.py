"""
Notification fan-out: one domain event, many recipients, at most one record each.

For every recipient:
1. Preference-gated types are skipped when the recipient switched them off.
2. Event-bound types are skipped when the same (type, recipient,
   correlation id) was sent before. The id derived from that triple names
   both the record and a key document in `notificationKeys`. The key is
   created if absent in the same batch as the record, so two concurrent
   senders cannot both write, and it outlives the record when the
   recipient clears their inbox.
3. Otherwise the record is written with a server-assigned timestamp.

One recipient failing never stops the others; it is logged, counted and
reported as ``failed``.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping, Optional

import structlog

from ..errors import StoreError
from ..metrics import MetricsCollector
from ..session import Role
from ..store import SERVER_TIMESTAMP, DocumentExists, DocumentStore, Query
from .models import (
    CORRELATION_KEYS,
    NOTIFICATION_KEYS_COLLECTION,
    NOTIFICATIONS_COLLECTION,
    PREFERENCE_FIELDS,
    NotificationRecord,
    NotificationType,
    PreferenceSet,
    idempotency_id,
    render,
)

log = structlog.get_logger()


class Outcome(str, Enum):
    SENT = "sent"
    SKIPPED_PREFERENCE = "skipped_preference"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    FAILED = "failed"


@dataclass(frozen=True)
class RecipientQuery:
    """Discovers recipients: the ``field`` of every matching document, or its id."""

    query: Query
    field: Optional[str] = None

    async def resolve(self, store: DocumentStore) -> set[str]:
        recipients: set[str] = set()
        for doc in await store.query(self.query):
            value = doc.id if self.field is None else doc.get(self.field)
            if isinstance(value, str) and value:
                recipients.add(value)
        return recipients


def challenge_participants(challenge_id: str) -> RecipientQuery:
    """Every distinct user who submitted to the challenge."""
    return RecipientQuery(Query(f"challenges/{challenge_id}/submissions"), field="uid")


def users_with_role(role: Role) -> RecipientQuery:
    return RecipientQuery(Query("users").where("role", "==", role.value))


class FanoutEngine:
    """Writes notification records for a computed set of recipients."""

    def __init__(
        self,
        store: DocumentStore,
        metrics: MetricsCollector | None = None,
        concurrency: int = 16,
    ) -> None:
        self._store = store
        self._metrics = metrics or MetricsCollector()
        self._concurrency = concurrency

    async def notify(
        self,
        type_: NotificationType | str,
        recipients: Iterable[str],
        correlation_fields: Mapping[str, str] | None = None,
        *,
        title: str | None = None,
        message: str | None = None,
    ) -> dict[str, Outcome]:
        """Notify each recipient once. Returns the outcome per recipient."""
        type_ = NotificationType(type_)
        fields = {k: str(v) for k, v in (correlation_fields or {}).items() if v is not None}
        key = CORRELATION_KEYS.get(type_)
        if key is not None and not fields.get(key):
            raise ValueError(f"{type_.value} notifications need a '{key}' correlation field")

        rendered_title, rendered_message = render(type_, fields)
        title = title or rendered_title
        message = message or rendered_message

        ordered = sorted({r for r in recipients if r})
        semaphore = asyncio.Semaphore(self._concurrency)

        async def one(recipient: str) -> Outcome:
            async with semaphore:
                try:
                    return await self._notify_one(type_, recipient, fields, title, message)
                except Exception as exc:
                    self._metrics.inc("notifications_failed_total")
                    log.warning(
                        "fanout.recipient_failed",
                        type=type_.value,
                        recipient=recipient,
                        error=str(exc),
                    )
                    return Outcome.FAILED

        outcomes = await asyncio.gather(*(one(r) for r in ordered))
        result = dict(zip(ordered, outcomes))
        log.info(
            "fanout.completed",
            type=type_.value,
            recipients=len(ordered),
            sent=sum(1 for o in outcomes if o == Outcome.SENT),
        )
        return result

    async def notify_discovered(
        self,
        type_: NotificationType | str,
        discovery: RecipientQuery,
        correlation_fields: Mapping[str, str] | None = None,
        **kwargs: str,
    ) -> dict[str, Outcome]:
        """Fan out to recipients found by ``discovery``."""
        try:
            recipients = await discovery.resolve(self._store)
        except StoreError as exc:
            self._metrics.inc("recipient_discovery_failures_total")
            log.warning(
                "fanout.discovery_failed",
                type=NotificationType(type_).value,
                collection=discovery.query.watched_collection,
                error=str(exc),
            )
            return {}
        return await self.notify(type_, recipients, correlation_fields, **kwargs)

    async def _notify_one(
        self,
        type_: NotificationType,
        recipient: str,
        fields: dict[str, str],
        title: str,
        message: str,
    ) -> Outcome:
        if type_ in PREFERENCE_FIELDS and not await self._allows(recipient, type_):
            self._metrics.inc("notifications_skipped_preference_total")
            log.info("fanout.skipped_preference", type=type_.value, recipient=recipient)
            return Outcome.SKIPPED_PREFERENCE

        key = CORRELATION_KEYS.get(type_)
        if key is None:
            record_id = str(uuid.uuid4())
        else:
            correlation_id = fields[key]
            if await self._already_sent(type_, recipient, key, correlation_id):
                return self._duplicate(type_, recipient, correlation_id)
            record_id = idempotency_id(type_, recipient, correlation_id)

        record = NotificationRecord(
            id=record_id,
            recipient_id=recipient,
            type=type_,
            title=title,
            message=message,
            correlation_fields=fields,
        )
        path = f"{NOTIFICATIONS_COLLECTION}/{record_id}"
        if key is None:
            await self._store.set(path, record.to_document())
        else:
            batch = self._store.batch()
            batch.create(
                f"{NOTIFICATION_KEYS_COLLECTION}/{record_id}",
                {
                    "userId": recipient,
                    "type": type_.value,
                    key: fields[key],
                    "createdAt": SERVER_TIMESTAMP,
                },
            )
            batch.set(path, record.to_document())
            try:
                await batch.commit()
            except DocumentExists:
                return self._duplicate(type_, recipient, fields[key])

        self._metrics.inc("notifications_sent_total")
        log.info("fanout.sent", type=type_.value, recipient=recipient, record=record_id)
        return Outcome.SENT

    async def _allows(self, recipient: str, type_: NotificationType) -> bool:
        try:
            preferences = await PreferenceSet.load(self._store, recipient)
        except StoreError as exc:
            log.warning(
                "fanout.preferences_unavailable",
                recipient=recipient,
                type=type_.value,
                error=str(exc),
            )
            return True
        return preferences.allows(type_)

    async def _already_sent(
        self, type_: NotificationType, recipient: str, key: str, correlation_id: str
    ) -> bool:
        record_id = idempotency_id(type_, recipient, correlation_id)
        if await self._store.get(f"{NOTIFICATION_KEYS_COLLECTION}/{record_id}") is not None:
            return True
        # Records written before key documents existed only show up by query.
        query = (
            Query(NOTIFICATIONS_COLLECTION)
            .where("type", "==", type_.value)
            .where("userId", "==", recipient)
            .where(key, "==", correlation_id)
            .take(1)
        )
        return bool(await self._store.query(query))

    def _duplicate(self, type_: NotificationType, recipient: str, correlation_id: str) -> Outcome:
        self._metrics.inc("notifications_skipped_duplicate_total")
        log.info(
            "fanout.skipped_duplicate",
            type=type_.value,
            recipient=recipient,
            correlation=correlation_id,
        )
        return Outcome.SKIPPED_DUPLICATE
