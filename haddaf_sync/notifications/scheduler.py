"""
Periodic client-side notification checks.

Run from the core's main loop. Each check is safe to repeat: the fan-out
engine's idempotency keys make a second pass over the same challenge or
month a no-op.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from ..config import NotificationConfig
from ..errors import StoreError
from ..session import Role
from ..store import DocumentSnapshot, DocumentStore, Query
from .fanout import FanoutEngine, Outcome, challenge_participants, users_with_role
from .models import NotificationType

log = structlog.get_logger()

CHALLENGES_COLLECTION = "challenges"
LOOKBACK = timedelta(days=1)


def _month_name(value: Any, fallback: datetime) -> str:
    when = value if isinstance(value, datetime) else fallback
    return when.strftime("%B")


def _next_month(now: datetime) -> datetime:
    return (now.replace(day=1) + timedelta(days=32)).replace(day=1)


def _sent(outcomes: dict[str, Outcome]) -> int:
    return sum(1 for o in outcomes.values() if o == Outcome.SENT)


class NotificationScheduler:
    def __init__(
        self,
        store: DocumentStore,
        fanout: FanoutEngine,
        config: NotificationConfig | None = None,
    ) -> None:
        self._store = store
        self._fanout = fanout
        self._config = config or NotificationConfig()

    async def check_ended_challenges(self, now: datetime | None = None) -> int:
        """Tell every participant of a challenge that ended in the last day."""
        now = now or datetime.now(timezone.utc)
        try:
            challenges = await self._store.query(
                Query(CHALLENGES_COLLECTION)
                .where("endAt", "<", now)
                .where("endAt", ">", now - LOOKBACK)
            )
        except StoreError as exc:
            log.warning("scheduler.ended_challenges_failed", error=str(exc))
            return 0

        sent = 0
        for challenge in challenges:
            outcomes = await self._fanout.notify_discovered(
                NotificationType.CHALLENGE_ENDED,
                challenge_participants(challenge.id),
                self._challenge_fields(challenge, now),
            )
            sent += _sent(outcomes)
            log.info("scheduler.challenge_ended", challenge=challenge.id, notified=_sent(outcomes))
        return sent

    async def check_new_challenges(self, now: datetime | None = None) -> int:
        """Tell every player about a challenge that started in the last day."""
        now = now or datetime.now(timezone.utc)
        try:
            challenges = await self._store.query(
                Query(CHALLENGES_COLLECTION)
                .where("startAt", "<=", now)
                .where("startAt", ">", now - LOOKBACK)
            )
        except StoreError as exc:
            log.warning("scheduler.new_challenges_failed", error=str(exc))
            return 0

        sent = 0
        for challenge in challenges:
            outcomes = await self._fanout.notify_discovered(
                NotificationType.NEW_CHALLENGE_AVAILABLE,
                users_with_role(Role.PLAYER),
                self._challenge_fields(challenge, now),
            )
            sent += _sent(outcomes)
            log.info("scheduler.challenge_started", challenge=challenge.id, notified=_sent(outcomes))
        return sent

    async def check_admin_reminder(self, admin_id: str, now: datetime | None = None) -> bool:
        """Remind an admin to add next month's challenge, on the configured day only."""
        now = now or datetime.now(timezone.utc)
        if now.day != self._config.admin_reminder_day:
            return False

        next_month = _next_month(now)
        year_month = next_month.strftime("%Y-%m")
        try:
            profile = await self._store.get(f"users/{admin_id}")
            if profile is None or profile.get("role") != Role.ADMIN.value:
                return False
            existing = await self._store.query(
                Query(CHALLENGES_COLLECTION).where("yearMonth", "==", year_month).take(1)
            )
        except StoreError as exc:
            log.warning("scheduler.admin_reminder_failed", admin=admin_id, error=str(exc))
            return False
        if existing:
            log.debug("scheduler.next_month_covered", year_month=year_month)
            return False

        outcomes = await self._fanout.notify(
            NotificationType.ADMIN_MONTHLY_REMINDER,
            [admin_id],
            {"yearMonth": year_month, "monthName": next_month.strftime("%B")},
        )
        return outcomes.get(admin_id) == Outcome.SENT

    async def run_once(self, now: datetime | None = None, admin_id: str | None = None) -> dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        summary: dict[str, Any] = {
            "challenge_ended": await self.check_ended_challenges(now),
            "new_challenge_available": await self.check_new_challenges(now),
            "admin_monthly_reminder": False,
        }
        if admin_id is not None:
            summary["admin_monthly_reminder"] = await self.check_admin_reminder(admin_id, now)
        log.info("scheduler.pass_completed", **summary)
        return summary

    @staticmethod
    def _challenge_fields(challenge: DocumentSnapshot, now: datetime) -> dict[str, str]:
        return {
            "challengeId": challenge.id,
            "challengeTitle": challenge.get("title") or "Challenge",
            "monthName": _month_name(challenge.get("startAt"), now),
        }
