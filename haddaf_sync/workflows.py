"""
Team invitation workflows.

Each workflow is one atomic store transaction followed, only after a
successful commit, by notification fan-out. A commit that fails sends
nothing; a crash between commit and fan-out loses the notification but
never the data change.

Handles:
- respond: accept or decline a pending invitation (status, membership,
  the player's denormalised team reference)
- send_invitation: verified coaches invite a player, one pending invite per team/player
- remove_player: drop a player from a team and clear their team reference
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict

from .errors import (
    InvitationAlreadyResolved,
    InvitationNotFound,
    MalformedDocument,
    NotAuthorized,
    PreconditionFailed,
    StoreError,
    TransactionAborted,
)
from .metrics import MetricsCollector
from .notifications.fanout import FanoutEngine, Outcome
from .notifications.models import NotificationType
from .session import SessionContext
from .store import DELETE_FIELD, SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore, Query, Transaction

log = structlog.get_logger()

INVITATIONS_COLLECTION = "invitations"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class Invitation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    sender_id: str
    recipient_id: str
    team_id: str
    team_name: str = ""
    status: InvitationStatus = InvitationStatus.PENDING
    created_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: DocumentSnapshot) -> "Invitation":
        data = doc.data
        for name in ("coachID", "playerID", "teamID"):
            if not isinstance(data.get(name), str) or not data[name]:
                raise MalformedDocument(doc.path, name)
        try:
            status = InvitationStatus(data.get("status", "pending"))
        except ValueError:
            raise MalformedDocument(doc.path, "status", "unknown") from None
        created_at = data.get("createdAt")
        return cls(
            id=doc.id,
            sender_id=data["coachID"],
            recipient_id=data["playerID"],
            team_id=data["teamID"],
            team_name=data.get("teamName") or "",
            status=status,
            created_at=created_at if isinstance(created_at, datetime) else None,
        )


@dataclass(frozen=True)
class WorkflowResult:
    invitation_id: str
    status: InvitationStatus
    notification: Outcome


class InvitationWorkflow:
    """Executes invitation workflows on behalf of the signed-in user."""

    def __init__(
        self,
        store: DocumentStore,
        fanout: FanoutEngine,
        session: SessionContext,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._store = store
        self._fanout = fanout
        self._session = session
        self._metrics = metrics or MetricsCollector()

    async def respond(
        self,
        invitation_id: str,
        accept: bool,
        recipient_id: str | None = None,
    ) -> WorkflowResult:
        """Accept or decline a pending invitation.

        Raises:
            NotAuthorized: no signed-in user, or the invitation is not theirs
            InvitationNotFound / InvitationAlreadyResolved: nothing was changed
            TransactionAborted: the commit failed; safe to retry
        """
        uid = self._require_user(recipient_id)
        new_status = InvitationStatus.ACCEPTED if accept else InvitationStatus.DECLINED
        path = f"{INVITATIONS_COLLECTION}/{invitation_id}"

        async def apply(txn: Transaction) -> Invitation:
            doc = await txn.get(path)
            if doc is None:
                raise InvitationNotFound(invitation_id)
            invitation = self._decode(doc)
            if invitation.recipient_id != uid:
                raise NotAuthorized(f"Invitation {invitation_id} is not addressed to {uid}")
            if invitation.status != InvitationStatus.PENDING:
                raise InvitationAlreadyResolved(invitation_id, invitation.status.value)

            txn.update(path, {"status": new_status.value, "respondedAt": SERVER_TIMESTAMP})
            if accept:
                if await txn.get(f"users/{uid}") is None:
                    raise PreconditionFailed(f"User not found: {uid}", code="USER_NOT_FOUND", user_id=uid)
                txn.set(f"teams/{invitation.team_id}/players/{uid}", {"joinedAt": SERVER_TIMESTAMP})
                txn.update(f"users/{uid}", {"teamId": invitation.team_id, "teamName": invitation.team_name})
            return invitation

        invitation = await self._commit("respond", apply, invitation_id=invitation_id)
        log.info(
            "workflow.invitation_resolved",
            invitation=invitation_id,
            status=new_status.value,
            team=invitation.team_id,
        )

        notify_type = (
            NotificationType.INVITATION_ACCEPTED if accept else NotificationType.INVITATION_DECLINED
        )
        outcome = await self._notify(
            notify_type,
            invitation.sender_id,
            {
                "invitationId": invitation.id,
                "teamId": invitation.team_id,
                "teamName": invitation.team_name,
                "playerId": uid,
            },
        )
        return WorkflowResult(invitation_id=invitation_id, status=new_status, notification=outcome)

    async def send_invitation(self, team_id: str, team_name: str, player_id: str) -> Invitation:
        """Invite a player to a team. Returns the existing pending invitation if there is one."""
        coach_id = self._require_verified_coach()

        async def apply(txn: Transaction) -> tuple[Invitation, bool]:
            existing = await txn.query(
                Query(INVITATIONS_COLLECTION)
                .where("teamID", "==", team_id)
                .where("playerID", "==", player_id)
                .where("status", "==", InvitationStatus.PENDING.value)
                .take(1)
            )
            if existing:
                return self._decode(existing[0]), False

            invitation = Invitation(
                id=str(uuid.uuid4()),
                sender_id=coach_id,
                recipient_id=player_id,
                team_id=team_id,
                team_name=team_name,
            )
            txn.create(
                f"{INVITATIONS_COLLECTION}/{invitation.id}",
                {
                    "coachID": coach_id,
                    "playerID": player_id,
                    "teamID": team_id,
                    "teamName": team_name,
                    "status": InvitationStatus.PENDING.value,
                    "createdAt": SERVER_TIMESTAMP,
                },
            )
            return invitation, True

        invitation, created = await self._commit("send_invitation", apply, team_id=team_id)
        if not created:
            log.info("workflow.invitation_exists", invitation=invitation.id, player=player_id)
            return invitation

        await self._notify(
            NotificationType.TEAM_INVITATION,
            player_id,
            {
                "invitationId": invitation.id,
                "teamId": team_id,
                "teamName": team_name,
                "coachId": coach_id,
            },
        )
        return invitation

    async def remove_player(self, team_id: str, team_name: str, player_id: str) -> None:
        self._require_verified_coach()
        membership = f"teams/{team_id}/players/{player_id}"

        async def apply(txn: Transaction) -> None:
            if await txn.get(membership) is None:
                raise PreconditionFailed(
                    f"{player_id} is not a member of {team_id}",
                    code="NOT_A_MEMBER",
                    team_id=team_id,
                    player_id=player_id,
                )
            txn.delete(membership)
            if await txn.get(f"users/{player_id}") is not None:
                txn.update(f"users/{player_id}", {"teamId": DELETE_FIELD, "teamName": DELETE_FIELD})

        await self._commit("remove_player", apply, team_id=team_id)
        await self._notify(
            NotificationType.REMOVED_FROM_TEAM,
            player_id,
            {"teamId": team_id, "teamName": team_name},
        )

    # --- Helpers ---

    def _require_user(self, recipient_id: str | None) -> str:
        session = self._session.current
        uid = session.user_id
        if uid is None or not session.is_authenticated:
            raise NotAuthorized("Sign in to respond to invitations")
        if recipient_id is not None and recipient_id != uid:
            raise NotAuthorized("Cannot respond on behalf of another user")
        return uid

    def _require_verified_coach(self) -> str:
        session = self._session.current
        uid = session.user_id
        if uid is None or not session.is_authenticated or not session.is_verified_coach:
            raise NotAuthorized("Only verified coaches can manage team members")
        return uid

    @staticmethod
    def _decode(doc: DocumentSnapshot) -> Invitation:
        try:
            return Invitation.from_document(doc)
        except MalformedDocument as exc:
            raise PreconditionFailed(
                str(exc), code="INVITATION_MALFORMED", invitation_id=doc.id
            ) from exc

    async def _commit(self, workflow: str, apply, **context):
        try:
            result = await self._store.run_transaction(apply)
        except PreconditionFailed as exc:
            self._metrics.inc("workflow_rejections_total")
            log.info("workflow.rejected", workflow=workflow, code=exc.code, **context)
            raise
        except StoreError as exc:
            self._metrics.inc("workflow_failures_total")
            log.warning("workflow.commit_failed", workflow=workflow, error=str(exc), **context)
            if isinstance(exc, TransactionAborted):
                raise
            raise TransactionAborted(str(exc), path=exc.path) from exc
        self._metrics.inc("workflow_commits_total")
        return result

    async def _notify(self, type_: NotificationType, recipient: str, fields: dict[str, str]) -> Outcome:
        try:
            outcomes = await self._fanout.notify(type_, [recipient], fields)
        except Exception:
            log.exception("workflow.notify_failed", type=type_.value, recipient=recipient)
            return Outcome.FAILED
        return outcomes.get(recipient, Outcome.FAILED)
