"""Ingestion session state machine and its store.

Status only moves along ``TRANSITIONS``. Every mutation goes through the
store, which serializes writers under one lock and hands readers deep copies,
so progress counters are never observed half-written.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Protocol

from .errors import InvalidTransition, SessionNotFound
from .models import ACTIVE_STATUSES, IngestionSession, SessionStatus

logger = logging.getLogger(__name__)

TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset({SessionStatus.PARSING}),
    SessionStatus.PARSING: frozenset({SessionStatus.PARSED, SessionStatus.FAILED}),
    SessionStatus.PARSED: frozenset({SessionStatus.UPLOADING}),
    SessionStatus.UPLOADING: frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
}


def check_transition(current: SessionStatus, new: SessionStatus) -> None:
    if new not in TRANSITIONS[current]:
        raise InvalidTransition(f"cannot move session from {current.value} to {new.value}")


class SessionStore(Protocol):
    def create(self, session: IngestionSession) -> IngestionSession: ...

    def get(self, session_id: str) -> IngestionSession: ...

    def compare_and_set_status(
        self, session_id: str, expected: SessionStatus, new: SessionStatus, **changes: Any
    ) -> bool: ...

    def update(self, session_id: str, **changes: Any) -> IngestionSession: ...

    def increment_processed(self, session_id: str, count: int) -> IngestionSession: ...

    def request_cancel(self, session_id: str) -> bool: ...

    def cancel_requested(self, session_id: str) -> bool: ...

    def list_recent(self, limit: int) -> list[IngestionSession]: ...

    def delete(self, session_id: str) -> None: ...


class MemorySessionStore:
    """Process-local session store."""

    def __init__(self):
        self._sessions: dict[str, IngestionSession] = {}
        self._cancel: set[str] = set()
        self._lock = threading.Lock()

    def _require(self, session_id: str) -> IngestionSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFound(f"session {session_id} not found") from None

    def create(self, session: IngestionSession) -> IngestionSession:
        with self._lock:
            if session.id in self._sessions:
                raise ValueError(f"session {session.id} already exists")
            self._sessions[session.id] = session.model_copy(deep=True)
            return session.model_copy(deep=True)

    def get(self, session_id: str) -> IngestionSession:
        with self._lock:
            return self._require(session_id).model_copy(deep=True)

    def compare_and_set_status(
        self, session_id: str, expected: SessionStatus, new: SessionStatus, **changes: Any
    ) -> bool:
        """Move to ``new`` only if the status is still ``expected``.

        Returns False, changing nothing, when another caller got there first.
        """
        check_transition(expected, new)
        with self._lock:
            current = self._require(session_id)
            if current.status is not expected:
                return False
            self._sessions[session_id] = current.model_copy(update={**changes, "status": new}, deep=True)
            if new in ACTIVE_STATUSES:
                self._cancel.discard(session_id)
        logger.info("session %s: %s -> %s", session_id, expected.value, new.value)
        return True

    def update(self, session_id: str, **changes: Any) -> IngestionSession:
        if "status" in changes:
            raise ValueError("status changes go through compare_and_set_status")
        with self._lock:
            updated = self._require(session_id).model_copy(update=changes, deep=True)
            self._sessions[session_id] = updated
            return updated.model_copy(deep=True)

    def increment_processed(self, session_id: str, count: int) -> IngestionSession:
        with self._lock:
            current = self._require(session_id)
            current.processed_features += count
            return current.model_copy(deep=True)

    def request_cancel(self, session_id: str) -> bool:
        """Flag an active session for cancellation; False if it is not active."""
        with self._lock:
            if self._require(session_id).status not in ACTIVE_STATUSES:
                return False
            self._cancel.add(session_id)
            return True

    def cancel_requested(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._cancel

    def list_recent(self, limit: int) -> list[IngestionSession]:
        with self._lock:
            sessions = sorted(self._sessions.values(), key=lambda s: s.created_at, reverse=True)
            return [s.model_copy(deep=True) for s in sessions[:limit]]

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._require(session_id)
            del self._sessions[session_id]
            self._cancel.discard(session_id)
