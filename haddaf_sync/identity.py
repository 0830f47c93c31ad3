"""
Identity resolver: authentication events in, Session values out.

Sign-in publishes the new user's session before anything else runs, so
role-gated consumers never see a previous user's authorization. Role
derivation and the per-user subscriptions (inbox, own feed) start after
that; sign-out stops them and resets the session.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from .projectors.role import RoleProjector
from .session import Session, SessionContext

log = structlog.get_logger()

SignInHook = Callable[[str], None]
SignOutHook = Callable[[], None]


@dataclass(frozen=True)
class AuthUser:
    uid: str
    is_anonymous: bool = False


class IdentityResolver:
    """Single long-lived consumer of authentication state changes."""

    def __init__(self, session: SessionContext, role_projector: RoleProjector) -> None:
        self._session = session
        self._role_projector = role_projector
        self._sign_in_hooks: list[tuple[SignInHook, SignOutHook]] = []
        self._user: Optional[AuthUser] = None

    @property
    def user(self) -> Optional[AuthUser]:
        return self._user

    def add_user_hooks(self, on_sign_in: SignInHook, on_sign_out: SignOutHook) -> None:
        """Run ``on_sign_in(uid)`` for every non-guest sign-in and ``on_sign_out()`` when it ends."""
        self._sign_in_hooks.append((on_sign_in, on_sign_out))

    def handle_auth_change(self, user: Optional[AuthUser]) -> Session:
        """Auth state callback. ``None`` means signed out."""
        if user == self._user:
            return self._session.current

        if self._user is not None:
            self._end_user()

        self._user = user
        if user is None:
            self._session.replace(Session.signed_out())
            log.info("identity.signed_out")
            return self._session.current

        self._session.replace(Session(user_id=user.uid, is_guest=user.is_anonymous))
        log.info("identity.signed_in", user=user.uid, guest=user.is_anonymous)
        if not user.is_anonymous:
            self._role_projector.start(user.uid)
            for on_sign_in, _ in self._sign_in_hooks:
                try:
                    on_sign_in(user.uid)
                except Exception:
                    log.exception("identity.sign_in_hook_failed", user=user.uid)
        return self._session.current

    def _end_user(self) -> None:
        previous = self._user
        self._role_projector.stop()
        if previous is not None and not previous.is_anonymous:
            for _, on_sign_out in self._sign_in_hooks:
                try:
                    on_sign_out()
                except Exception:
                    log.exception("identity.sign_out_hook_failed", user=previous.uid)
        self._session.replace(Session.signed_out())
