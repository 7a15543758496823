"""
Tests for the polling scheduler and its backoff policy.
"""

import asyncio
import random
from unittest.mock import AsyncMock, Mock

import pytest

from docverify.config import PollingConfig
from docverify.exceptions import (
    NetworkError,
    NotFoundError,
    ResponseValidationError,
    ServerError,
)
from docverify.polling.models import PollingStatus
from docverify.polling.scheduler import (
    PollingScheduler,
    ScheduledCheck,
    compute_backoff_delay,
)


class TestComputeBackoffDelay:
    """Test the exponential backoff calculation."""

    def setup_method(self):
        self.config = PollingConfig(jitter_max_ms=0)

    def test_first_retry_uses_first_interval(self):
        """Test first retry uses first interval."""
        assert compute_backoff_delay(1, self.config, elapsed_ms=0) == 2000

    def test_multiplier_applies_per_attempt(self):
        """Test multiplier applies per attempt."""
        assert compute_backoff_delay(2, self.config, elapsed_ms=0) == 7500
        assert compute_backoff_delay(3, self.config, elapsed_ms=0) == 22500

    def test_last_interval_repeats(self):
        """Test last interval repeats."""
        delay = compute_backoff_delay(6, self.config, elapsed_ms=0)

        assert delay == pytest.approx(30000 * 1.5**5)

    def test_capped_by_remaining_time(self):
        """Test capped by remaining time."""
        delay = compute_backoff_delay(5, self.config, elapsed_ms=200000)

        assert delay == 100000

    def test_never_negative_past_timeout(self):
        """Test never negative past timeout."""
        assert compute_backoff_delay(3, self.config, elapsed_ms=400000) == 0

    def test_jitter_added_from_rng(self):
        """Test jitter added from rng."""
        config = PollingConfig(jitter_max_ms=1000)
        rng = Mock()
        rng.uniform.return_value = 250.0

        delay = compute_backoff_delay(1, config, elapsed_ms=0, rng=rng)

        assert delay == 2250
        rng.uniform.assert_called_once_with(0, 1000)

    def test_jitter_within_bounds(self):
        """Test jitter within bounds."""
        config = PollingConfig(jitter_max_ms=1000)
        rng = random.Random(7)

        for attempt in range(1, 8):
            base = compute_backoff_delay(attempt, self.config, elapsed_ms=0)
            delay = compute_backoff_delay(attempt, config, elapsed_ms=0, rng=rng)
            assert base <= delay <= base + 1000

    def test_rejects_attempt_zero(self):
        """Test rejects attempt zero."""
        with pytest.raises(ValueError):
            compute_backoff_delay(0, self.config, elapsed_ms=0)


class TestScheduledCheck:
    """Test the cancellable check handle."""

    def test_cancel_before_arming(self):
        """Test cancel before arming."""
        check = ScheduledCheck("doc-1", "polling_1_abc", 10)

        check.cancel()

        assert check.cancelled()

    @pytest.mark.asyncio
    async def test_cancel_prevents_callback(self):
        """Test cancel prevents callback."""
        callback = Mock()
        check = ScheduledCheck("doc-1", "polling_1_abc", 1)
        check.arm(asyncio.get_running_loop(), callback)

        check.cancel()
        await asyncio.sleep(0.02)

        callback.assert_not_called()


class TestPollingScheduler:
    """Test the status check cycle end to end on the event loop."""

    @pytest.fixture(autouse=True)
    def _setup(self, live_store, polling_config):
        self.store = live_store
        self.config = polling_config
        self.checker = AsyncMock()
        self.scheduler = PollingScheduler(self.store, self.checker, self.config)

    async def settle(self, document_id="doc-1"):
        return await self.scheduler.wait_until_settled(document_id, timeout_s=2)

    @pytest.mark.asyncio
    async def test_settled_result_completes_session(self, result_factory):
        """Test settled result completes session."""
        result = result_factory("verified")
        self.checker.return_value = result

        self.scheduler.start("doc-1", "passport")
        session = await self.settle()

        assert session.status is PollingStatus.COMPLETED
        assert session.total_requests == 1
        assert session.successful_requests == 1
        assert session.end_time is not None
        assert self.scheduler.get_latest_result("doc-1") is result
        self.checker.assert_awaited_once_with("doc-1")

    @pytest.mark.asyncio
    async def test_six_consecutive_failures_exhaust_retries(self):
        """Test six consecutive failures exhaust retries."""
        self.checker.side_effect = ServerError("Service unavailable", status_code=503)

        self.scheduler.start("doc-1", "passport")
        session = await self.settle()

        assert session.status is PollingStatus.FAILED
        assert session.total_requests == 6
        assert session.failed_requests == 6
        assert session.current_retry_count == 6
        assert session.last_error.code == "SERVER_ERROR"
        assert session.last_error.status == 503
        assert self.checker.await_count == 6

    @pytest.mark.asyncio
    async def test_transient_errors_then_success(self, result_factory):
        """Test transient errors then success."""
        self.checker.side_effect = [
            NetworkError("connection refused"),
            ServerError("bad gateway", status_code=502),
            result_factory("verified"),
        ]

        self.scheduler.start("doc-1", "passport")
        session = await self.settle()

        assert session.status is PollingStatus.COMPLETED
        assert session.total_requests == 3
        assert session.successful_requests == 1
        assert session.failed_requests == 2
        assert session.current_retry_count == 2

    @pytest.mark.asyncio
    async def test_pending_results_keep_polling(self, result_factory):
        """Test pending results keep polling."""
        self.checker.side_effect = [
            result_factory("pending"),
            result_factory("processing"),
            result_factory("rejected", isCorrectType=False),
        ]

        self.scheduler.start("doc-1", "passport")
        session = await self.settle()

        assert session.status is PollingStatus.COMPLETED
        assert session.total_requests == 3
        assert session.successful_requests == 3
        assert session.current_retry_count == 0
        assert self.scheduler.get_latest_result("doc-1").verification_status == (
            "rejected"
        )

    @pytest.mark.asyncio
    async def test_not_found_is_terminal(self):
        """Test not found is terminal."""
        self.checker.side_effect = NotFoundError("Document not found")

        self.scheduler.start("doc-1", "passport")
        session = await self.settle()

        assert session.status is PollingStatus.FAILED
        assert session.total_requests == 1
        assert session.failed_requests == 1
        assert session.current_retry_count == 0
        assert session.last_error.code == "NOT_FOUND"
        assert session.last_error.status == 404

    @pytest.mark.asyncio
    async def test_validation_error_is_terminal(self):
        """Test validation error is terminal."""
        self.checker.side_effect = ResponseValidationError("Malformed response")

        self.scheduler.start("doc-1", "passport")
        session = await self.settle()

        assert session.status is PollingStatus.FAILED
        assert session.last_error.code == "VALIDATION_ERROR"
        self.checker.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_session(self):
        """Test unexpected exception fails session."""
        self.checker.side_effect = RuntimeError("unexpected")

        self.scheduler.start("doc-1", "passport")
        session = await self.settle()

        assert session.status is PollingStatus.FAILED
        assert session.last_error.code == "UNKNOWN_ERROR"

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, result_factory):
        """Test start is idempotent."""
        self.checker.return_value = result_factory("verified")

        first = self.scheduler.start("doc-1", "passport")
        second = self.scheduler.start("doc-1", "passport")
        await self.settle()

        assert first == second
        self.checker.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_independent_documents(self, result_factory):
        """Test independent documents."""
        self.checker.side_effect = lambda document_id: result_factory(
            "verified", documentId=document_id
        )

        self.scheduler.start("doc-1", "passport")
        self.scheduler.start("doc-2", "id_card")
        first = await self.settle("doc-1")
        second = await self.settle("doc-2")

        assert first.status is PollingStatus.COMPLETED
        assert second.status is PollingStatus.COMPLETED
        assert self.scheduler.get_latest_result("doc-2").document_id == "doc-2"

    @pytest.mark.asyncio
    async def test_cancel_prevents_pending_check(self):
        """Test cancel prevents pending check."""
        config = self.config.model_copy(update={"initial_delay_ms": 20})

        self.scheduler.start("doc-1", "passport", config)
        self.scheduler.cancel("doc-1")
        await asyncio.sleep(0.05)

        assert self.store.get_polling_session("doc-1").status is (
            PollingStatus.CANCELLED
        )
        self.checker.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_check_is_discarded_at_fire_time(self):
        """Test stale check is discarded at fire time."""
        config = self.config.model_copy(update={"initial_delay_ms": 10000})
        self.scheduler.start("doc-1", "passport", config)

        await self.scheduler._run_check(ScheduledCheck("doc-1", "polling_0_old", 0))

        self.checker.assert_not_awaited()
        assert self.store.get_polling_session("doc-1").total_requests == 0
        await self.scheduler.aclose()

    @pytest.mark.asyncio
    async def test_result_of_cancelled_in_flight_check_is_discarded(
        self, result_factory
    ):
        """Test result of cancelled in flight check is discarded."""
        async def cancel_mid_flight(document_id):
            self.store.cancel_polling(document_id)
            return result_factory("verified")

        self.checker.side_effect = cancel_mid_flight

        self.scheduler.start("doc-1", "passport")
        session = await self.settle()
        await asyncio.sleep(0.01)

        assert session.status is PollingStatus.CANCELLED
        stored = self.store.get_polling_session("doc-1")
        assert stored.status is PollingStatus.CANCELLED
        assert stored.total_requests == 0
        assert self.scheduler.get_latest_result("doc-1") is None

    @pytest.mark.asyncio
    async def test_wait_until_settled_times_out(self):
        """Test wait until settled times out."""
        config = self.config.model_copy(update={"initial_delay_ms": 10000})
        self.scheduler.start("doc-1", "passport", config)

        with pytest.raises(asyncio.TimeoutError):
            await self.scheduler.wait_until_settled("doc-1", timeout_s=0.01)

        await self.scheduler.aclose()

    @pytest.mark.asyncio
    async def test_wait_until_settled_unknown_document(self):
        """Test wait until settled unknown document."""
        assert await self.scheduler.wait_until_settled("missing") is None

    @pytest.mark.asyncio
    async def test_aclose_cancels_active_sessions(self):
        """Test aclose cancels active sessions."""
        config = self.config.model_copy(update={"initial_delay_ms": 10000})
        self.scheduler.start("doc-1", "passport", config)
        subscribers = self.store.polling_state.subscriber_count

        await self.scheduler.aclose()

        assert self.store.get_active_polling_documents() == []
        assert self.store.get_polling_session("doc-1").timer_id is None
        assert self.store.polling_state.subscriber_count == subscribers - 1

    def test_start_outside_event_loop_creates_no_session(self):
        """Test that start without a running loop leaves the store untouched."""
        with pytest.raises(RuntimeError):
            self.scheduler.start("doc-1", "passport")

        assert self.store.get_polling_session("doc-1") is None
        assert self.store.get_active_polling_documents() == []

    @pytest.mark.asyncio
    async def test_failed_start_does_not_block_later_start(self, result_factory):
        """Test that a start rejected off the loop does not strand the document."""
        self.checker.return_value = result_factory("verified")

        with pytest.raises(RuntimeError):
            await asyncio.to_thread(self.scheduler.start, "doc-1", "passport")
        self.scheduler.start("doc-1", "passport")
        session = await self.settle()

        assert session.status is PollingStatus.COMPLETED
        assert session.total_requests == 1
        self.checker.assert_awaited_once_with("doc-1")

    @pytest.mark.asyncio
    async def test_store_reset_drops_session_bookkeeping(self, result_factory):
        """Test that emptying the store releases configs and cached results."""
        self.checker.return_value = result_factory("verified")
        self.scheduler.start("doc-1", "passport")
        await self.settle()
        config = self.config.model_copy(update={"initial_delay_ms": 10000})
        self.scheduler.start("doc-2", "passport", config)
        assert self.scheduler._configs

        self.store.cleanup_all_polling_resources()

        assert self.scheduler._configs == {}
        assert self.scheduler.get_latest_result("doc-1") is None

    @pytest.mark.asyncio
    async def test_latest_result_kept_after_completion(self, result_factory):
        """Test that the last result survives while the session record remains."""
        self.checker.return_value = result_factory("verified")
        self.scheduler.start("doc-1", "passport")
        await self.settle()

        self.store.start_polling_session("doc-2", "passport", self.config)

        assert self.scheduler.get_latest_result("doc-1") is not None


class TestSchedulerTimeout:
    """Test the absolute timeout with a manually advanced clock."""

    @pytest.fixture(autouse=True)
    def _setup(self, store, fake_clock, polling_config):
        self.store = store
        self.clock = fake_clock
        self.config = polling_config.model_copy(update={"timeout_ms": 1000})
        self.checker = AsyncMock()
        self.scheduler = PollingScheduler(self.store, self.checker, self.config)

    @pytest.mark.asyncio
    async def test_timeout_at_fire_time_skips_request(self):
        """Test timeout at fire time skips request."""
        self.scheduler.start("doc-1", "passport")
        self.clock.advance(1000)

        session = await self.scheduler.wait_until_settled("doc-1", timeout_s=2)

        assert session.status is PollingStatus.TIMED_OUT
        assert session.total_requests == 0
        assert session.last_error.code == "TIMEOUT"
        self.checker.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pending_until_timeout(self, result_factory):
        """Test pending until timeout."""
        async def slow_pending(document_id):
            self.clock.advance(600)
            return result_factory("pending")

        self.checker.side_effect = slow_pending

        self.scheduler.start("doc-1", "passport")
        session = await self.scheduler.wait_until_settled("doc-1", timeout_s=2)

        assert session.status is PollingStatus.TIMED_OUT
        assert session.total_requests == 2
        assert session.successful_requests == 2
        assert session.duration_ms == 1200

    @pytest.mark.asyncio
    async def test_retryable_error_after_timeout_keeps_last_status(self):
        """Test retryable error after timeout keeps last status."""
        async def slow_failure(document_id):
            self.clock.advance(1500)
            raise ServerError("gateway timeout", status_code=504)

        self.checker.side_effect = slow_failure

        self.scheduler.start("doc-1", "passport")
        session = await self.scheduler.wait_until_settled("doc-1", timeout_s=2)

        assert session.status is PollingStatus.TIMED_OUT
        assert session.failed_requests == 1
        assert session.last_error.code == "TIMEOUT"
        assert session.last_error.status == 504
        assert "SERVER_ERROR" in session.last_error.message
