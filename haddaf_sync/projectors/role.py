"""
Role projector: derives authorization state from ``users/{uid}``.

The profile document carries ``role``, ``coachStatus`` and, after a
rejected coach application, ``rejectionReason`` / ``rejectionCategory``.
Projection is pure and total: garbage or missing fields fall back to
defaults and never raise.

A field that was already observed for the current user and is missing
from a later snapshot keeps its last observed value. This stops a
partially written profile from flipping a verified coach to unverified
and back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import structlog

from ..errors import SubscriptionError
from ..metrics import MetricsCollector
from ..session import Role, SessionContext, VerificationState
from ..store import Query
from ..subscriptions import Snapshot, SubscriptionHandle, SubscriptionManager

log = structlog.get_logger()

ROLE_SUBSCRIPTION_KEY = "role"

_TRACKED_FIELDS = ("role", "coachStatus", "rejectionReason", "rejectionCategory")


@dataclass(frozen=True)
class RoleProjection:
    role: Role = Role.PLAYER
    verification: VerificationState = VerificationState.PENDING
    rejection_reason: Optional[str] = None
    rejection_category: Optional[str] = None
    observed: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_verified_coach(self) -> bool:
        return self.role == Role.COACH and self.verification == VerificationState.APPROVED


def _parse_role(raw: Optional[str]) -> Role:
    if raw is None:
        return Role.PLAYER
    try:
        return Role(raw.strip().lower())
    except ValueError:
        return Role.PLAYER


def _parse_status(raw: Optional[str]) -> VerificationState:
    if raw is None:
        return VerificationState.PENDING
    try:
        return VerificationState(raw.strip().lower())
    except ValueError:
        return VerificationState.PENDING


def project_role(
    data: Optional[Mapping[str, Any]],
    previous: Optional[RoleProjection] = None,
) -> RoleProjection:
    """Project a profile document onto role state.

    ``data`` is None when the profile document does not exist, which
    means a plain, unverified player.
    """
    if data is None:
        return RoleProjection()

    observed = dict(previous.observed) if previous else {}
    status = data.get("coachStatus")
    if isinstance(status, str) and _parse_status(status) != _parse_status(observed.get("coachStatus")):
        # Rejection details belong to the status they came with.
        observed.pop("rejectionReason", None)
        observed.pop("rejectionCategory", None)
    for name in _TRACKED_FIELDS:
        value = data.get(name)
        if isinstance(value, str):
            observed[name] = value

    role = _parse_role(observed.get("role"))
    verification = _parse_status(observed.get("coachStatus"))
    if role != Role.COACH and verification == VerificationState.APPROVED:
        verification = VerificationState.PENDING

    rejected = verification == VerificationState.REJECTED
    return RoleProjection(
        role=role,
        verification=verification,
        rejection_reason=observed.get("rejectionReason") if rejected else None,
        rejection_category=observed.get("rejectionCategory") if rejected else None,
        observed=observed,
    )


class RoleProjector:
    """Keeps the session's role fields in step with the user's profile document."""

    def __init__(
        self,
        subscriptions: SubscriptionManager,
        session: SessionContext,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._subscriptions = subscriptions
        self._session = session
        self._metrics = metrics or MetricsCollector()
        self._uid: str | None = None
        self._handle: SubscriptionHandle | None = None
        self._projection: RoleProjection | None = None

    @property
    def projection(self) -> RoleProjection | None:
        return self._projection

    def start(self, uid: str) -> None:
        self._uid = uid
        self._projection = None
        self._handle = self._subscriptions.start(
            ROLE_SUBSCRIPTION_KEY,
            Query.document(f"users/{uid}"),
            self._on_snapshot,
            self._on_error,
        )

    def stop(self) -> None:
        if self._handle is not None:
            self._subscriptions.cancel(self._handle)
        self._handle = None
        self._uid = None
        self._projection = None

    def _on_snapshot(self, snapshot: Snapshot) -> None:
        if self._uid is None or self._session.current.user_id != self._uid:
            log.debug("role_projector.session_mismatch", uid=self._uid)
            return

        data = snapshot.documents[0].data if snapshot.documents else None
        projection = project_role(data, self._projection)
        self._projection = projection
        self._session.update(
            role=projection.role,
            verification=projection.verification,
            rejection_reason=projection.rejection_reason,
            rejection_category=projection.rejection_category,
        )

    def _on_error(self, error: SubscriptionError) -> None:
        self._metrics.inc("role_projection_errors_total")
        log.warning("role_projector.subscription_failed", uid=self._uid, error=str(error))
