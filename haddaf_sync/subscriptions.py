"""
Live document subscriptions keyed by logical name.

Wraps store listeners so that consumers get:
- one active subscription per key; starting a key again cancels the old one first
- full-result snapshots, delivered strictly in arrival order per key
- no delivery at all from a cancelled or superseded subscription
- exactly one terminal error signal when the store listener fails

Store callbacks may fire on any thread; they are marshalled onto the
event loop, which is the only place consumer callbacks run.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

import structlog

from .errors import SubscriptionError
from .metrics import MetricsCollector
from .store import DocumentSnapshot, DocumentStore, ListenerRegistration, Query

log = structlog.get_logger()

_STOP = "stop"
_SNAPSHOT = "snapshot"
_ERROR = "error"


@dataclass(frozen=True)
class Snapshot:
    """Complete result of a subscription's query at one point in time."""

    key: str
    sequence: int
    documents: tuple[DocumentSnapshot, ...]

    @property
    def ids(self) -> list[str]:
        return [d.id for d in self.documents]

    def __len__(self) -> int:
        return len(self.documents)


SnapshotConsumer = Callable[[Snapshot], Union[Awaitable[None], None]]
ErrorConsumer = Callable[[SubscriptionError], Union[Awaitable[None], None]]


@dataclass(eq=False)
class SubscriptionHandle:
    key: str
    generation: int
    query: Query
    cancelled: bool = False
    _registration: ListenerRegistration | None = field(default=None, repr=False)
    _task: asyncio.Task | None = field(default=None, repr=False)
    _enqueue: Callable[[tuple[str, Any]], None] | None = field(default=None, repr=False)


async def _invoke(fn: Callable[[Any], Any], arg: Any) -> None:
    result = fn(arg)
    if inspect.isawaitable(result):
        await result


class SubscriptionManager:
    """Owns every live subscription of the process."""

    def __init__(self, store: DocumentStore, metrics: MetricsCollector | None = None) -> None:
        self._store = store
        self._metrics = metrics or MetricsCollector()
        self._active: dict[str, SubscriptionHandle] = {}
        self._generations: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()

    def start(
        self,
        key: str,
        query: Query,
        on_snapshot: SnapshotConsumer,
        on_error: ErrorConsumer | None = None,
    ) -> SubscriptionHandle:
        """Start (or restart) the subscription for ``key``."""
        previous = self._active.get(key)
        if previous is not None:
            self.cancel(previous)

        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation
        handle = SubscriptionHandle(key=key, generation=generation, query=query)

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()

        def enqueue(item: tuple[str, Any]) -> None:
            if loop.is_closed():
                return
            loop.call_soon_threadsafe(queue.put_nowait, item)

        handle._enqueue = enqueue
        handle._task = loop.create_task(self._pump(handle, queue, on_snapshot, on_error))
        self._tasks.add(handle._task)
        handle._task.add_done_callback(self._tasks.discard)
        self._active[key] = handle

        handle._registration = self._store.listen(
            query,
            lambda docs: enqueue((_SNAPSHOT, docs)),
            lambda exc: enqueue((_ERROR, exc)),
        )
        self._metrics.set_gauge("subscriptions_active", len(self._active))
        log.info("subscription.started", key=key, generation=generation)
        return handle

    def cancel(self, handle: SubscriptionHandle) -> None:
        """Cancel a subscription. Safe to call repeatedly."""
        if handle.cancelled:
            return
        handle.cancelled = True
        if self._active.get(handle.key) is handle:
            del self._active[handle.key]
        if handle._registration is not None:
            handle._registration.remove()
        if handle._enqueue is not None:
            handle._enqueue((_STOP, None))
        self._metrics.set_gauge("subscriptions_active", len(self._active))
        log.info("subscription.cancelled", key=handle.key, generation=handle.generation)

    def cancel_key(self, key: str) -> None:
        handle = self._active.get(key)
        if handle is not None:
            self.cancel(handle)

    def cancel_all(self) -> None:
        for handle in list(self._active.values()):
            self.cancel(handle)

    async def close(self) -> None:
        """Cancel every subscription and wait for the delivery tasks to finish."""
        self.cancel_all()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def is_current(self, handle: SubscriptionHandle) -> bool:
        """True while ``handle`` is the live subscription for its key.

        Consumers that await inside a snapshot callback check this again
        before merging their result.
        """
        return not handle.cancelled and self._active.get(handle.key) is handle

    def get(self, key: str) -> SubscriptionHandle | None:
        return self._active.get(key)

    def active_keys(self) -> list[str]:
        return sorted(self._active)

    async def _pump(
        self,
        handle: SubscriptionHandle,
        queue: asyncio.Queue[tuple[str, Any]],
        on_snapshot: SnapshotConsumer,
        on_error: ErrorConsumer | None,
    ) -> None:
        sequence = 0
        while True:
            kind, payload = await queue.get()
            if kind == _STOP:
                return

            if not self.is_current(handle):
                self._metrics.inc("stale_deliveries_total")
                log.debug(
                    "subscription.stale_delivery_dropped",
                    key=handle.key,
                    generation=handle.generation,
                )
                continue

            if kind == _ERROR:
                self._finish(handle)
                error = payload if isinstance(payload, SubscriptionError) else SubscriptionError(handle.key, payload)
                self._metrics.inc("subscription_errors_total")
                log.warning("subscription.failed", key=handle.key, error=str(payload))
                if on_error is not None:
                    try:
                        await _invoke(on_error, error)
                    except Exception:
                        log.exception("subscription.error_handler_failed", key=handle.key)
                return

            sequence += 1
            snapshot = Snapshot(key=handle.key, sequence=sequence, documents=tuple(payload))
            self._metrics.inc("snapshots_delivered_total")
            try:
                await _invoke(on_snapshot, snapshot)
            except Exception:
                log.exception(
                    "subscription.consumer_error",
                    key=handle.key,
                    sequence=sequence,
                )

    def _finish(self, handle: SubscriptionHandle) -> None:
        handle.cancelled = True
        if self._active.get(handle.key) is handle:
            del self._active[handle.key]
        if handle._registration is not None:
            handle._registration.remove()
        self._metrics.set_gauge("subscriptions_active", len(self._active))
