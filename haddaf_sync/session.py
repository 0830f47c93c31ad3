"""
Session state: who is signed in and what they are allowed to do.

The Session value is immutable. SessionContext holds the one published
value for the process; only the identity resolver and the role projector
replace it.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, ConfigDict, model_validator

from .bus import SESSION_CHANGED, EventBus

log = structlog.get_logger()


class Role(str, Enum):
    PLAYER = "player"
    COACH = "coach"
    ADMIN = "admin"


class VerificationState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Session(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    is_guest: bool = False
    role: Optional[Role] = None
    verification: VerificationState = VerificationState.PENDING
    rejection_reason: Optional[str] = None
    rejection_category: Optional[str] = None

    @model_validator(mode="after")
    def _approval_requires_coach(self) -> "Session":
        if self.verification == VerificationState.APPROVED and self.role != Role.COACH:
            raise ValueError("only coaches can be approved")
        return self

    @classmethod
    def signed_out(cls) -> "Session":
        return cls(is_guest=True)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None and not self.is_guest

    @property
    def is_verified_coach(self) -> bool:
        return self.role == Role.COACH and self.verification == VerificationState.APPROVED


SessionWatcher = Callable[[Session], None]


class SessionContext:
    """Single-writer holder of the published Session.

    Watchers run after the value is swapped, so every watcher observes
    the same new session.
    """

    def __init__(self, bus: EventBus | None = None) -> None:
        self._current = Session.signed_out()
        self._watchers: list[SessionWatcher] = []
        self._bus = bus

    @property
    def current(self) -> Session:
        return self._current

    def replace(self, session: Session) -> bool:
        """Publish ``session``. Returns False when nothing changed."""
        if session == self._current:
            return False
        self._current = session
        log.info(
            "session.changed",
            user=session.user_id,
            guest=session.is_guest,
            role=session.role.value if session.role else None,
            verification=session.verification.value,
        )
        for watcher in list(self._watchers):
            try:
                watcher(session)
            except Exception:
                log.exception("session.watcher_error")
        if self._bus is not None:
            self._bus.publish(SESSION_CHANGED, session)
        return True

    def update(self, **changes: Any) -> Session:
        """Publish the current session with ``changes`` applied (validated)."""
        session = Session.model_validate({**self._current.model_dump(), **changes})
        self.replace(session)
        return session

    def watch(self, watcher: SessionWatcher) -> Callable[[], None]:
        self._watchers.append(watcher)

        def unwatch() -> None:
            if watcher in self._watchers:
                self._watchers.remove(watcher)

        return unwatch
