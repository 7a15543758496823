"""
Retry/backoff scheduler for document verification polling.

This module decides when the next status check for an active session fires
and applies each check's outcome to the session record in the store.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable

import structlog

from ..config import PollingConfig
from ..exceptions import PollingTimeoutError, StatusCheckError
from ..schemas import VerificationResult
from .models import PollingError, PollingSession, PollingStateUpdate, PollingStatus
from .store import PollingStateStore

logger = structlog.get_logger(__name__)

StatusChecker = Callable[[str], Awaitable[VerificationResult]]


def compute_backoff_delay(
    attempt: int,
    config: PollingConfig,
    elapsed_ms: float,
    rng: random.Random | None = None,
) -> float:
    """
    Calculate the delay before retry ``attempt`` with exponential backoff.

    The base interval comes from ``retry_intervals_ms`` (the last entry
    repeats), is multiplied by ``backoff_multiplier ** (attempt - 1)``, capped
    at the time left before ``timeout_ms`` and finally receives uniform jitter
    in ``[0, jitter_max_ms]``.

    Args:
        attempt: Retry number, starting at 1
        config: Polling parameters
        elapsed_ms: Time already spent polling
        rng: Random source for the jitter

    Returns:
        Delay in milliseconds
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")

    intervals = config.retry_intervals_ms
    base_interval = intervals[min(attempt - 1, len(intervals) - 1)]
    delay = base_interval * config.backoff_multiplier ** (attempt - 1)
    delay = min(delay, max(0.0, config.timeout_ms - elapsed_ms))

    if config.jitter_max_ms > 0:
        delay += (rng or random).uniform(0, config.jitter_max_ms)
    return delay


class ScheduledCheck:
    """
    Cancellable handle for one pending status check.

    Carries the session id it was scheduled for; a check whose token no
    longer matches the store's current session is stale.
    """

    def __init__(self, document_id: str, session_id: str, delay_ms: float) -> None:
        self.document_id = document_id
        self.session_id = session_id
        self.delay_ms = delay_ms
        self._handle: asyncio.TimerHandle | None = None
        self._cancelled = False

    def arm(
        self,
        loop: asyncio.AbstractEventLoop,
        callback: Callable[["ScheduledCheck"], None],
    ) -> None:
        self._handle = loop.call_later(self.delay_ms / 1000, callback, self)

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()

    def cancelled(self) -> bool:
        return self._cancelled

    def __repr__(self) -> str:
        return (
            f"ScheduledCheck(document_id={self.document_id!r}, "
            f"session_id={self.session_id!r}, delay_ms={self.delay_ms:.0f}, "
            f"cancelled={self._cancelled})"
        )


class PollingScheduler:
    """
    Drives status checks for active polling sessions.

    Each active session owns at most one pending ``ScheduledCheck``. When it
    fires the scheduler calls the status checker, updates the session's
    counters and either stops the session or schedules the next check.
    """

    def __init__(
        self,
        store: PollingStateStore,
        status_checker: StatusChecker,
        config: PollingConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            store: Session store shared with the rest of the flow
            status_checker: Coroutine performing one status query
            config: Default polling parameters
            rng: Random source for jitter
        """
        self.store = store
        self.status_checker = status_checker
        self.config = config or PollingConfig()
        self._rng = rng or random.Random()

        self._configs: dict[str, PollingConfig] = {}  # session_id -> config
        self._results: dict[str, VerificationResult] = {}  # document_id -> result
        self._in_flight: set[asyncio.Task[None]] = set()
        self._waiters: dict[str, list[asyncio.Future[PollingSession | None]]] = {}

        self._unsubscribers = [
            store.polling_state.subscribe(self._on_state_change, replay=False),
            store.polling_updates.subscribe(self._on_polling_update, replay=False),
        ]

    def start(
        self,
        document_id: str,
        document_type: str,
        config: PollingConfig | None = None,
    ) -> str:
        """
        Start polling a document; idempotent while a session is active.

        Must be called from a running event loop.

        Args:
            document_id: Document to poll
            document_type: Expected document type
            config: Polling parameters overriding the scheduler default

        Returns:
            Session id of the active session

        Raises:
            RuntimeError: If no event loop is running
        """
        # Fails before any session exists when no event loop is running
        asyncio.get_running_loop()
        config = config or self.config
        if self.store.is_polling_active(document_id):
            return self.store.start_polling_session(document_id, document_type, config)

        session_id = self.store.start_polling_session(
            document_id, document_type, config
        )
        self._configs[session_id] = config
        self._results.pop(document_id, None)
        self._schedule(document_id, session_id, config.initial_delay_ms)
        return session_id

    def cancel(self, document_id: str) -> None:
        self.store.cancel_polling(document_id)

    def cancel_all(self) -> None:
        self.store.cancel_all_polling()

    def get_latest_result(self, document_id: str) -> VerificationResult | None:
        """Get the most recent verification result received for a document."""
        return self._results.get(document_id)

    async def wait_until_settled(
        self, document_id: str, timeout_s: float | None = None
    ) -> PollingSession | None:
        """
        Wait for the document's current session to reach a terminal status.

        Args:
            document_id: Document to wait for
            timeout_s: Maximum wait in seconds (None waits indefinitely)

        Returns:
            Final session snapshot, or None if the session was removed

        Raises:
            TimeoutError: If the session is still active after ``timeout_s``
        """
        session = self.store.get_polling_session(document_id)
        if session is None or not session.is_active:
            return session

        future: asyncio.Future[PollingSession | None] = (
            asyncio.get_running_loop().create_future()
        )
        waiters = self._waiters.setdefault(session.session_id, [])
        waiters.append(future)
        try:
            return await asyncio.wait_for(future, timeout_s)
        finally:
            if future in waiters:
                waiters.remove(future)
            if not waiters:
                self._waiters.pop(session.session_id, None)

    async def aclose(self) -> None:
        """Cancel active sessions and in-flight checks, then detach."""
        self.store.cancel_all_polling()

        tasks = list(self._in_flight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        logger.info("Polling scheduler closed", cancelled_checks=len(tasks))

    # Scheduling

    def _schedule(self, document_id: str, session_id: str, delay_ms: float) -> None:
        check = ScheduledCheck(document_id, session_id, delay_ms)
        check.arm(asyncio.get_running_loop(), self._fire)
        self.store.set_polling_timer(document_id, check)

        logger.debug(
            "Scheduled status check",
            document_id=document_id,
            session_id=session_id,
            delay_ms=round(delay_ms),
        )

    def _fire(self, check: ScheduledCheck) -> None:
        self.store.release_polling_timer(check.document_id, check)
        if check.cancelled():
            return

        task = asyncio.get_running_loop().create_task(self._run_check(check))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    def _is_stale(self, check: ScheduledCheck) -> bool:
        session = self.store.get_polling_session(check.document_id)
        return (
            session is None
            or session.session_id != check.session_id
            or not session.is_active
        )

    def _elapsed_ms(self, session: PollingSession) -> float:
        return (self.store.now() - session.start_time).total_seconds() * 1000

    # Check cycle

    async def _run_check(self, check: ScheduledCheck) -> None:
        document_id = check.document_id
        if self._is_stale(check):
            logger.debug(
                "Discarding stale status check",
                document_id=document_id,
                session_id=check.session_id,
            )
            return

        config = self._configs.get(check.session_id, self.config)
        session = self.store.get_polling_session(document_id)
        if self._elapsed_ms(session) >= config.timeout_ms:
            self._stop_timed_out(session, config)
            return

        self.store.update_polling_session(
            document_id, last_request_time=self.store.now()
        )
        logger.debug(
            "Attempting status request",
            document_id=document_id,
            session_id=check.session_id,
            attempt=session.total_requests + 1,
        )

        result: VerificationResult | None = None
        error: StatusCheckError | None = None
        try:
            result = await self.status_checker(document_id)
        except StatusCheckError as e:
            error = e
        except Exception as e:
            logger.error(
                "Unexpected status check failure",
                document_id=document_id,
                error=str(e),
                exc_info=True,
            )
            error = StatusCheckError(
                f"Unexpected status check failure: {e}", code="UNKNOWN_ERROR"
            )

        if self._is_stale(check):
            logger.info(
                "Discarding result of superseded status check",
                document_id=document_id,
                session_id=check.session_id,
            )
            return

        session = self.store.get_polling_session(document_id)
        if error is None:
            self._handle_result(session, result, config)
        else:
            self._handle_error(session, error, config)

    def _handle_result(
        self,
        session: PollingSession,
        result: VerificationResult,
        config: PollingConfig,
    ) -> None:
        document_id = session.document_id
        total_requests = session.total_requests + 1
        self.store.update_polling_session(
            document_id,
            total_requests=total_requests,
            successful_requests=session.successful_requests + 1,
            last_response_time=self.store.now(),
        )
        self._results[document_id] = result

        if result.is_settled:
            logger.info(
                "Verification settled",
                document_id=document_id,
                session_id=session.session_id,
                verification_status=result.verification_status,
                confidence_score=result.confidence_score,
            )
            self.store.stop_polling_session(document_id, PollingStatus.COMPLETED)
            return

        elapsed_ms = self._elapsed_ms(session)
        if elapsed_ms >= config.timeout_ms:
            self._stop_timed_out(session, config)
            return

        delay_ms = compute_backoff_delay(total_requests, config, elapsed_ms, self._rng)
        logger.debug(
            "Verification still pending",
            document_id=document_id,
            verification_status=result.verification_status,
            next_check_ms=round(delay_ms),
        )
        self._schedule(document_id, session.session_id, delay_ms)

    def _handle_error(
        self,
        session: PollingSession,
        error: StatusCheckError,
        config: PollingConfig,
    ) -> None:
        document_id = session.document_id
        now = self.store.now()
        polling_error = PollingError(
            code=error.code,
            message=error.message,
            status=error.status_code,
            timestamp=now,
        )
        retry_count = session.current_retry_count + (1 if error.retryable else 0)
        self.store.update_polling_session(
            document_id,
            total_requests=session.total_requests + 1,
            failed_requests=session.failed_requests + 1,
            current_retry_count=retry_count,
            last_response_time=now,
            last_error=polling_error,
        )

        logger.warning(
            "Status request failed",
            document_id=document_id,
            session_id=session.session_id,
            error_code=error.code,
            status_code=error.status_code,
            retry_count=retry_count,
            max_retries=config.max_retries,
            retryable=error.retryable,
        )

        if not error.retryable:
            self.store.stop_polling_session(
                document_id, PollingStatus.FAILED, polling_error
            )
            return

        if retry_count > config.max_retries:
            logger.info(
                "Max retries exceeded",
                document_id=document_id,
                retry_count=retry_count,
            )
            self.store.stop_polling_session(
                document_id, PollingStatus.FAILED, polling_error
            )
            return

        elapsed_ms = self._elapsed_ms(session)
        if elapsed_ms >= config.timeout_ms:
            self._stop_timed_out(session, config, polling_error)
            return

        delay_ms = compute_backoff_delay(retry_count, config, elapsed_ms, self._rng)
        logger.info(
            "Scheduling retry",
            document_id=document_id,
            retry_count=retry_count,
            delay_ms=round(delay_ms),
            elapsed_ms=round(elapsed_ms),
        )
        self._schedule(document_id, session.session_id, delay_ms)

    def _stop_timed_out(
        self,
        session: PollingSession,
        config: PollingConfig,
        last_error: PollingError | None = None,
    ) -> None:
        message = f"Polling timeout of {config.timeout_ms:.0f}ms reached"
        if last_error is not None:
            message = f"{message} (last error: {last_error.code})"
        timeout_error = PollingTimeoutError(
            message, context={"elapsed_ms": round(self._elapsed_ms(session))}
        )

        logger.info(
            "Polling timeout reached",
            document_id=session.document_id,
            session_id=session.session_id,
            timeout_ms=config.timeout_ms,
            **timeout_error.context,
        )
        self.store.stop_polling_session(
            session.document_id,
            PollingStatus.TIMED_OUT,
            PollingError(
                code=timeout_error.code,
                message=timeout_error.message,
                status=last_error.status if last_error else None,
                timestamp=self.store.now(),
            ),
        )

    # Stream listeners

    def _on_state_change(self, sessions: dict[str, PollingSession]) -> None:
        current = {session.session_id: session for session in sessions.values()}

        # Sessions removed from the store never emit a terminal update
        for session_id in [s for s in self._configs if s not in current]:
            del self._configs[session_id]
        for document_id in [d for d in self._results if d not in sessions]:
            del self._results[document_id]

        for session_id in list(self._waiters):
            session = current.get(session_id)
            if session is not None and session.is_active:
                continue
            for future in self._waiters.pop(session_id):
                if not future.done():
                    future.set_result(session)

    def _on_polling_update(self, update: PollingStateUpdate | None) -> None:
        if update is not None and update.status.is_terminal:
            self._configs.pop(update.session_id, None)
