"""
Pytest configuration and fixtures for document verification poller tests.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from docverify.config import PollingConfig
from docverify.polling.store import PollingStateStore
from docverify.schemas import VerificationResult
from docverify.state import InMemoryKeyValueStore


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 15, 10, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, milliseconds: float) -> None:
        self.current += timedelta(milliseconds=milliseconds)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def polling_config() -> PollingConfig:
    """Fast polling parameters without jitter."""
    return PollingConfig(
        initial_delay_ms=1,
        retry_intervals_ms=[1, 2, 4],
        max_retries=5,
        backoff_multiplier=1.0,
        timeout_ms=10000,
        jitter_max_ms=0,
    )


@pytest.fixture
def backend() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def store(backend: InMemoryKeyValueStore, fake_clock: FakeClock) -> PollingStateStore:
    """Store driven by the fake clock."""
    return PollingStateStore(backend, clock=fake_clock)


@pytest.fixture
def live_store(backend: InMemoryKeyValueStore) -> PollingStateStore:
    """Store driven by the wall clock, for scheduler tests."""
    return PollingStateStore(backend)


def make_result(status: str = "verified", **overrides: Any) -> VerificationResult:
    payload: dict[str, Any] = {
        "documentId": "doc-1",
        "verificationStatus": status,
        "confidenceScore": 92.5,
        "isBlurred": False,
        "isCorrectType": True,
        "statusColor": "green",
        "message": "Document verified",
        "requiresUserConfirmation": False,
    }
    payload.update(overrides)
    return VerificationResult.model_validate(payload)


@pytest.fixture
def sample_status_payload() -> dict[str, Any]:
    """Sample status response of the document API."""
    return {
        "documentId": "doc-42",
        "verificationStatus": "verified",
        "confidenceScore": 87.0,
        "isBlurred": False,
        "isCorrectType": True,
        "statusColor": "green",
        "message": "Passport verified",
        "requiresUserConfirmation": False,
        "fileName": "passport.jpg",
        "documentType": "passport",
        "uploadedAt": "2024-01-15T10:00:00Z",
    }


@pytest.fixture
def result_factory():
    """Build VerificationResult objects from API-shaped payloads."""
    return make_result
