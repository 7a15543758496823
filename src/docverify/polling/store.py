"""
Polling session store for document verification.

This module owns the authoritative mapping of document ids to polling
sessions, mirrors it to a key-value backend on every mutation and exposes
change notification streams and derived statistics.
"""

import json
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from ..config import PollingConfig
from ..exceptions import StorageError
from ..state import InMemoryKeyValueStore, KeyValueStore
from .events import StateStream
from .models import (
    PollingError,
    PollingSession,
    PollingStateUpdate,
    PollingStatistics,
    PollingStatus,
    PollingStatusSnapshot,
)

logger = structlog.get_logger(__name__)

POLLING_STATE_KEY = "pollingState"

_UPDATABLE_FIELDS = frozenset(
    {
        "total_requests",
        "successful_requests",
        "failed_requests",
        "current_retry_count",
        "last_request_time",
        "last_response_time",
        "last_error",
    }
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PollingStateStore:
    """
    Authoritative store of polling sessions keyed by document id.

    All methods are synchronous and expected to run on the event loop
    thread. Mutations are persisted to the injected backend and announced
    on two streams: ``polling_state`` carries a full snapshot of the session
    map, ``polling_updates`` carries the most recent single-session change.
    """

    def __init__(
        self,
        backend: KeyValueStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the store and restore persisted sessions.

        Args:
            backend: Durable key-value store (in-memory when omitted)
            clock: Source of the current time (UTC)
        """
        self.backend = backend if backend is not None else InMemoryKeyValueStore()
        self._clock = clock or _utcnow
        self._sessions: dict[str, PollingSession] = {}

        self.polling_state: StateStream[dict[str, PollingSession]] = StateStream(
            "polling_state", {}
        )
        self.polling_updates: StateStream[PollingStateUpdate | None] = StateStream(
            "polling_updates", None
        )

        self._restore_polling_state()

    def now(self) -> datetime:
        return self._clock()

    # Session lifecycle

    def start_polling_session(
        self, document_id: str, document_type: str, config: PollingConfig
    ) -> str:
        """
        Start a polling session for a document.

        Starting on a document that already has an active session is
        idempotent and returns the existing session id.

        Args:
            document_id: Document under verification
            document_type: Expected document type (e.g., 'passport')
            config: Polling parameters for this session

        Returns:
            Session id of the active session
        """
        existing = self._sessions.get(document_id)
        if existing is not None and existing.is_active:
            logger.info(
                "Polling already active for document",
                document_id=document_id,
                session_id=existing.session_id,
            )
            return existing.session_id

        now = self.now()
        session = PollingSession(
            document_id=document_id,
            document_type=document_type,
            session_id=self._generate_session_id(now),
            start_time=now,
            last_request_time=now,
            max_retries=config.max_retries,
        )

        # Re-insert so a restarted document moves to the end of the ordering
        self._sessions.pop(document_id, None)
        self._sessions[document_id] = session
        self._persist_polling_state()
        self._notify_state_change()
        self._emit_polling_update(session)

        logger.info(
            "Started polling session",
            document_id=document_id,
            document_type=document_type,
            session_id=session.session_id,
            max_retries=config.max_retries,
            timeout_ms=config.timeout_ms,
        )
        return session.session_id

    def stop_polling_session(
        self,
        document_id: str,
        terminal_status: PollingStatus,
        error: PollingError | dict[str, Any] | None = None,
    ) -> None:
        """
        Move an active session to a terminal status.

        Args:
            document_id: Document whose session is stopped
            terminal_status: Final status (must be terminal)
            error: Optional error to attach (``code``/``message``/``status``)
        """
        terminal_status = PollingStatus(terminal_status)
        if not terminal_status.is_terminal:
            raise ValueError(f"Not a terminal polling status: {terminal_status}")

        session = self._sessions.get(document_id)
        if session is None:
            logger.warning(
                "Cannot stop polling - no session found", document_id=document_id
            )
            return

        if not session.is_active:
            logger.warning(
                "Polling session already terminal",
                document_id=document_id,
                session_id=session.session_id,
                status=session.status.value,
                requested_status=terminal_status.value,
            )
            return

        self._cancel_timer(session)
        now = self.now()
        session.status = terminal_status
        session.end_time = now
        if error is not None:
            session.last_error = self._coerce_error(error, now)

        self._persist_polling_state()
        self._notify_state_change()
        self._emit_polling_update(session)

        logger.info(
            "Stopped polling session",
            document_id=document_id,
            session_id=session.session_id,
            status=terminal_status.value,
            duration_ms=session.duration_ms,
            total_requests=session.total_requests,
            successful_requests=session.successful_requests,
            failed_requests=session.failed_requests,
            error=session.last_error.message if error is not None else None,
        )

    def update_polling_session(self, document_id: str, **fields: Any) -> None:
        """
        Merge counter and timestamp fields into an active session.

        Unknown documents, terminal sessions and unknown field names are
        logged and ignored; this method never raises for them.

        Args:
            document_id: Document whose session is updated
            **fields: Fields to merge (counters, retry count, timestamps)
        """
        session = self._sessions.get(document_id)
        if session is None:
            logger.warning(
                "Cannot update polling session - no session found",
                document_id=document_id,
            )
            return

        if not session.is_active:
            logger.warning(
                "Cannot update terminal polling session",
                document_id=document_id,
                session_id=session.session_id,
                status=session.status.value,
            )
            return

        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            logger.warning(
                "Ignoring unknown polling session fields",
                document_id=document_id,
                fields=sorted(unknown),
            )

        for name, value in fields.items():
            if name in _UPDATABLE_FIELDS:
                setattr(session, name, value)

        self._persist_polling_state()
        self._notify_state_change()

        logger.debug(
            "Updated polling session",
            document_id=document_id,
            session_id=session.session_id,
            updates=sorted(set(fields) & _UPDATABLE_FIELDS),
        )

    # Queries

    def get_polling_session(self, document_id: str) -> PollingSession | None:
        session = self._sessions.get(document_id)
        return session.snapshot() if session is not None else None

    def is_polling_active(self, document_id: str) -> bool:
        session = self._sessions.get(document_id)
        return session is not None and session.is_active

    def get_active_polling_documents(self) -> list[str]:
        return [
            document_id
            for document_id, session in self._sessions.items()
            if session.is_active
        ]

    def get_all_polling_sessions(self) -> list[PollingSession]:
        return [session.snapshot() for session in self._sessions.values()]

    def query_polling_status(self, document_id: str) -> PollingStatusSnapshot:
        """
        Get a derived, read-only view of a document's polling state.

        Args:
            document_id: Document to query

        Returns:
            Snapshot with activity flag, session copy, request count and
            duration in milliseconds
        """
        session = self._sessions.get(document_id)
        if session is None:
            return PollingStatusSnapshot(is_active=False)

        end = session.end_time or self.now()
        return PollingStatusSnapshot(
            is_active=session.is_active,
            session=session.snapshot(),
            request_count=session.total_requests,
            duration_ms=(end - session.start_time).total_seconds() * 1000,
        )

    # Timers

    def set_polling_timer(self, document_id: str, timer: Any) -> None:
        """
        Attach the pending check handle to an active session.

        Any previously attached handle is cancelled first. A handle offered
        for a missing or terminal session is cancelled immediately.

        Args:
            document_id: Document the check belongs to
            timer: Cancellable handle (anything with ``cancel()``)
        """
        session = self._sessions.get(document_id)
        if session is None or not session.is_active:
            logger.warning(
                "Discarding timer for inactive polling session",
                document_id=document_id,
            )
            timer.cancel()
            return

        self._cancel_timer(session)
        session.timer_id = timer
        logger.debug("Set polling timer", document_id=document_id)

    def clear_polling_timer(self, document_id: str) -> None:
        session = self._sessions.get(document_id)
        if session is not None and session.timer_id is not None:
            self._cancel_timer(session)
            logger.debug("Cleared polling timer", document_id=document_id)

    def release_polling_timer(self, document_id: str, timer: Any) -> None:
        """Detach a handle that has already fired, without cancelling it."""
        session = self._sessions.get(document_id)
        if session is not None and session.timer_id is timer:
            session.timer_id = None

    # Cancellation and cleanup

    def cancel_polling(self, document_id: str) -> None:
        """Cancel polling for a specific document."""
        self.stop_polling_session(document_id, PollingStatus.CANCELLED)

    def cancel_all_polling(self) -> None:
        """Cancel every active polling session."""
        active_documents = self.get_active_polling_documents()
        logger.info(
            "Cancelling active polling sessions", count=len(active_documents)
        )
        for document_id in active_documents:
            self.cancel_polling(document_id)

    def cleanup_polling_resources(self, document_id: str) -> None:
        """
        Clear the timer of one document and force its session to cancelled.

        Args:
            document_id: Document to clean up
        """
        session = self._sessions.get(document_id)
        if session is None:
            return

        self._cancel_timer(session)
        previous_status = session.status
        if previous_status is not PollingStatus.CANCELLED:
            session.status = PollingStatus.CANCELLED
            if session.end_time is None:
                session.end_time = self.now()

            self._persist_polling_state()
            self._notify_state_change()
            self._emit_polling_update(session)

        logger.info(
            "Cleaned up polling resources",
            document_id=document_id,
            session_id=session.session_id,
            previous_status=previous_status.value,
        )

    def cleanup_all_polling_resources(self) -> None:
        """Clear every timer and empty the store."""
        count = len(self._sessions)
        for session in self._sessions.values():
            self._cancel_timer(session)

        self._sessions.clear()
        self._persist_polling_state()
        self._notify_state_change()

        logger.info("All polling resources cleaned up", sessions_removed=count)

    # Statistics

    def get_polling_statistics(self) -> PollingStatistics:
        """
        Compute aggregate statistics over every session in the store.

        Returns:
            Session counts per status, request totals, success rate in
            percent and the average duration of finished sessions
        """
        sessions = list(self._sessions.values())
        finished = [s for s in sessions if s.end_time is not None]

        average_duration = (
            sum(s.duration_ms or 0.0 for s in finished) / len(finished)
            if finished
            else 0.0
        )
        total_requests = sum(s.total_requests for s in sessions)
        successful_requests = sum(s.successful_requests for s in sessions)
        success_rate = (
            successful_requests / total_requests * 100 if total_requests > 0 else 0.0
        )

        def count(status: PollingStatus) -> int:
            return sum(1 for s in sessions if s.status is status)

        return PollingStatistics(
            total_sessions=len(sessions),
            active_sessions=count(PollingStatus.ACTIVE),
            completed_sessions=count(PollingStatus.COMPLETED),
            failed_sessions=count(PollingStatus.FAILED),
            timed_out_sessions=count(PollingStatus.TIMED_OUT),
            cancelled_sessions=count(PollingStatus.CANCELLED),
            total_requests=total_requests,
            success_rate=round(success_rate, 2),
            average_session_duration_ms=round(average_duration),
        )

    # Internals

    def _cancel_timer(self, session: PollingSession) -> None:
        timer = session.timer_id
        session.timer_id = None
        if timer is not None:
            timer.cancel()

    def _coerce_error(
        self, error: PollingError | dict[str, Any], now: datetime
    ) -> PollingError:
        if isinstance(error, PollingError):
            return error
        return PollingError(
            code=error.get("code", "UNKNOWN_ERROR"),
            message=error.get("message", ""),
            status=error.get("status"),
            timestamp=now,
        )

    def _generate_session_id(self, now: datetime) -> str:
        return f"polling_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"

    def _persist_polling_state(self) -> None:
        """Write the ordered session snapshot to the backend."""
        state_data = [
            {"documentId": document_id, "session": session.to_dict()}
            for document_id, session in self._sessions.items()
        ]
        try:
            self.backend.save(POLLING_STATE_KEY, json.dumps(state_data))
        except (StorageError, OSError, TypeError, ValueError) as e:
            logger.warning("Failed to persist polling state", error=str(e))

    def _restore_polling_state(self) -> None:
        """Load persisted sessions; active ones are marked cancelled."""
        try:
            blob = self.backend.load(POLLING_STATE_KEY)
        except (StorageError, OSError) as e:
            logger.warning("Failed to load polling state", error=str(e))
            return

        if not blob:
            return

        try:
            state_data = json.loads(blob)
        except ValueError as e:
            logger.warning("Discarding malformed polling state", error=str(e))
            return

        if not isinstance(state_data, list):
            logger.warning(
                "Discarding malformed polling state",
                error=f"expected list, got {type(state_data).__name__}",
            )
            return

        now = self.now()
        cancelled = 0
        for entry in state_data:
            try:
                document_id = entry["documentId"]
                session = PollingSession.from_dict(entry["session"])
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed polling session", error=str(e))
                continue

            if session.is_active:
                # The pending timer did not survive the reload
                session.status = PollingStatus.CANCELLED
                session.end_time = now
                cancelled += 1

            self._sessions[document_id] = session

        if cancelled:
            self._persist_polling_state()
        self._notify_state_change()

        logger.info(
            "Restored polling sessions from storage",
            restored=len(self._sessions),
            cancelled=cancelled,
        )

    def _notify_state_change(self) -> None:
        self.polling_state.emit(
            {
                document_id: session.snapshot()
                for document_id, session in self._sessions.items()
            }
        )

    def _emit_polling_update(self, session: PollingSession) -> None:
        self.polling_updates.emit(
            PollingStateUpdate(
                session_id=session.session_id,
                document_id=session.document_id,
                status=session.status,
                timestamp=self.now(),
                request_count=session.total_requests,
                error_message=(
                    session.last_error.message
                    if session.last_error and not session.is_active
                    else None
                ),
            )
        )
