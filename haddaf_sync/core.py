"""
Sync core orchestrator.

Builds every component once, wires them together and owns their
lifecycle: startup, sign-in/sign-out, the periodic notification checks,
and graceful shutdown. Nothing in the package is a process-wide
singleton; everything hangs off a SyncCore instance.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Any, Iterable, Mapping

import structlog

from .bus import EventBus
from .config import SyncConfig
from .health import HealthServer
from .identity import AuthUser, IdentityResolver
from .metrics import MetricsCollector
from .notifications.fanout import FanoutEngine, Outcome
from .notifications.inbox import NotificationInbox
from .notifications.models import NotificationType
from .notifications.scheduler import NotificationScheduler
from .projectors.feed import FeedProjector
from .projectors.role import RoleProjector
from .session import Session, SessionContext
from .store import DocumentStore, SqliteDocumentStore
from .subscriptions import SubscriptionManager
from .workflows import InvitationWorkflow, WorkflowResult

log = structlog.get_logger()

SHUTDOWN_TIMEOUT = 15.0


class SyncCore:
    """
    Owns the store connection, the subscriptions and every projector,
    and exposes the operations the surrounding app calls.
    """

    def __init__(self, config: SyncConfig, store: DocumentStore | None = None):
        self._config = config
        self._owns_store = store is None
        self.metrics = MetricsCollector()
        self.store: DocumentStore = store or SqliteDocumentStore(config.store.db_path)
        self.bus = EventBus()
        self.session_context = SessionContext(self.bus)
        self.subscriptions = SubscriptionManager(self.store, self.metrics)

        self.role_projector = RoleProjector(self.subscriptions, self.session_context, self.metrics)
        self.identity = IdentityResolver(self.session_context, self.role_projector)
        self.feed = FeedProjector(
            self.subscriptions, self.store, self.bus, config.feed, self.metrics
        )
        self.inbox = NotificationInbox(self.subscriptions, self.store, self.metrics)
        self.fanout = FanoutEngine(
            self.store, self.metrics, concurrency=config.notifications.fanout_concurrency
        )
        self.workflows = InvitationWorkflow(
            self.store, self.fanout, self.session_context, self.metrics
        )
        self.scheduler = NotificationScheduler(self.store, self.fanout, config.notifications)
        self._health = HealthServer(
            host=config.metrics.host,
            port=config.metrics.port,
            metrics=self.metrics,
        )

        self.identity.add_user_hooks(self.inbox.start, self.inbox.stop)
        self.identity.add_user_hooks(self.feed.start, self.feed.stop)

        self._running = False
        self._health_started = False
        self._shutdown_event = asyncio.Event()

    # --- Exposed state and operations ---

    @property
    def session(self) -> Session:
        return self.session_context.current

    @property
    def unread_count(self) -> int:
        return self.inbox.unread_count

    def sign_in(self, uid: str, anonymous: bool = False) -> Session:
        return self.identity.handle_auth_change(AuthUser(uid=uid, is_anonymous=anonymous))

    def sign_out(self) -> Session:
        return self.identity.handle_auth_change(None)

    async def respond(self, invitation_id: str, accept: bool) -> WorkflowResult:
        return await self.workflows.respond(invitation_id, accept)

    async def notify(
        self,
        type_: NotificationType | str,
        recipients: Iterable[str],
        correlation_fields: Mapping[str, str] | None = None,
    ) -> dict[str, Outcome]:
        return await self.fanout.notify(type_, recipients, correlation_fields)

    # --- Lifecycle ---

    async def start(self) -> None:
        log.info("core.starting", db_path=self._config.store.db_path)
        if self._owns_store and isinstance(self.store, SqliteDocumentStore):
            await self.store.open()

        if self._config.metrics.enabled:
            try:
                await self._health.start()
                self._health_started = True
                log.info(
                    "core.health_started",
                    host=self._config.metrics.host,
                    port=self._config.metrics.port,
                )
            except Exception as exc:
                log.warning("core.health_start_failed", error=str(exc))

        self._running = True
        log.info("core.started")

    async def stop(self) -> None:
        """Graceful shutdown: end the user session, cancel subscriptions, close the store."""
        if not self._running:
            return
        self._running = False
        log.info("core.stopping")

        self.sign_out()
        await self.subscriptions.close()
        log.info("core.subscriptions_closed")

        if self._health_started:
            await self._health.stop()
            self._health_started = False
        if self._owns_store and isinstance(self.store, SqliteDocumentStore):
            await self.store.close()

        log.info("core.stopped")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def run_forever(self, user_id: str | None = None, admin_id: str | None = None) -> None:
        """Run until a shutdown signal, running the notification checks periodically."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)

        await self.start()
        if user_id:
            self.sign_in(user_id)

        interval = self._config.notifications.scheduler_interval_seconds
        try:
            while not self._shutdown_event.is_set():
                if self._config.notifications.scheduler_enabled:
                    await self.scheduler.run_once(admin_id=admin_id)
                await self._update_health()
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await asyncio.wait_for(self.stop(), timeout=SHUTDOWN_TIMEOUT)

    def status(self) -> dict[str, Any]:
        session = self.session
        return {
            "session": {
                "user_id": session.user_id,
                "is_guest": session.is_guest,
                "role": session.role.value if session.role else None,
                "verification": session.verification.value,
                "is_verified_coach": session.is_verified_coach,
            },
            "subscriptions": self.subscriptions.active_keys(),
            "unread_notifications": self.unread_count,
            "feed_items": len(self.feed.items),
        }

    async def _update_health(self) -> None:
        reachable = False
        if isinstance(self.store, SqliteDocumentStore):
            reachable = await self.store.ping()
        self._health.update_status(self.status(), reachable)
