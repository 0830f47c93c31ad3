"""
Shared test helpers: polling waits and a store with hand-driven listeners.
"""

import asyncio
from typing import Callable

from haddaf_sync.session import Session, SessionContext
from haddaf_sync.store import DocumentSnapshot, ListenerRegistration, SqliteDocumentStore


async def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


async def settle(rounds: int = 20) -> None:
    """Let queued callbacks and pump tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def doc(path: str, **data) -> DocumentSnapshot:
    return DocumentSnapshot(path=path, data=data)


def signed_in(context: SessionContext, uid: str, **fields) -> Session:
    session = Session(user_id=uid, **fields)
    context.replace(session)
    return session


class ManualListenStore(SqliteDocumentStore):
    """SQLite store whose listeners only fire when a test pushes a snapshot."""

    def __init__(self, db_path: str):
        super().__init__(db_path)
        self.registrations: list[ListenerRegistration] = []

    def listen(self, query, on_snapshot, on_error=None):
        registration = ListenerRegistration(self, query, on_snapshot, on_error)
        self.registrations.append(registration)
        return registration

    def _unregister(self, registration):
        pass

    def push(self, docs, index: int = -1) -> None:
        self.registrations[index].on_snapshot(list(docs))
