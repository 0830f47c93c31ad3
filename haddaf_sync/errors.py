"""
Error types for the sync core.

- SyncError: base for everything raised by this package
- StoreError / TransactionAborted: transport, query or commit failure (retriable)
- SubscriptionError: terminal signal handed to a subscription consumer
- MalformedDocument: remote document failed to decode (dropped, counted)
- PreconditionFailed: typed rejection surfaced to a workflow caller

Invariants:
    - Only PreconditionFailed and the StoreError family reach workflow callers
    - Subscriptions, fan-out and projectors log and absorb the rest
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base exception for all sync core errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SYNC_ERROR"
        self.details = details or {}


class StoreError(SyncError):
    """The remote store failed to execute a read, write or query.

    Retriable: the caller may repeat the operation once the store is
    reachable again.
    """

    retriable = True

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="STORE_ERROR", details={"path": path})
        self.path = path


class TransactionAborted(StoreError):
    """A multi-document transaction could not be committed."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, path=path)
        self.code = "TRANSACTION_ABORTED"


class SubscriptionError(SyncError):
    """Terminal failure of a live subscription.

    Delivered to the consumer's error callback; the subscription is over
    and must be restarted to receive further snapshots.
    """

    def __init__(self, key: str, cause: BaseException) -> None:
        super().__init__(
            f"Subscription '{key}' failed: {cause}",
            code="SUBSCRIPTION_ERROR",
            details={"key": key},
        )
        self.key = key
        self.cause = cause


class MalformedDocument(SyncError):
    """A remote document is missing a required field or has a bad value."""

    def __init__(self, path: str, field: str, reason: str = "missing") -> None:
        super().__init__(
            f"Malformed document {path}: field '{field}' {reason}",
            code="MALFORMED_DOCUMENT",
            details={"path": path, "field": field},
        )
        self.path = path
        self.field = field


class PreconditionFailed(SyncError):
    """A workflow precondition does not hold.

    Not retriable without the caller re-validating state.
    """

    retriable = False

    def __init__(self, message: str, code: str = "PRECONDITION_FAILED", **details: Any) -> None:
        super().__init__(message, code=code, details=details)


class InvitationNotFound(PreconditionFailed):
    def __init__(self, invitation_id: str) -> None:
        super().__init__(
            f"Invitation not found: {invitation_id}",
            code="INVITATION_NOT_FOUND",
            invitation_id=invitation_id,
        )
        self.invitation_id = invitation_id


class InvitationAlreadyResolved(PreconditionFailed):
    def __init__(self, invitation_id: str, status: str) -> None:
        super().__init__(
            f"Invitation {invitation_id} is already {status}",
            code="INVITATION_ALREADY_RESOLVED",
            invitation_id=invitation_id,
            status=status,
        )
        self.invitation_id = invitation_id
        self.status = status


class NotAuthorized(PreconditionFailed):
    def __init__(self, reason: str) -> None:
        super().__init__(reason, code="NOT_AUTHORIZED")
