"""
Data model for document verification polling sessions.
"""

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class PollingStatus(str, Enum):
    """Lifecycle status of a polling session."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        """Terminal statuses have no outgoing transitions."""
        return self is not PollingStatus.ACTIVE


@dataclass(frozen=True)
class PollingError:
    """Last error observed by a polling session."""

    code: str
    message: str
    timestamp: datetime
    status: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PollingError":
        return cls(
            code=data.get("code", "UNKNOWN_ERROR"),
            message=data.get("message", ""),
            status=data.get("status"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class PollingSession:
    """Tracking record for one document's asynchronous verification job."""

    document_id: str
    document_type: str
    session_id: str
    start_time: datetime
    last_request_time: datetime
    max_retries: int
    status: PollingStatus = PollingStatus.ACTIVE
    end_time: datetime | None = None
    last_response_time: datetime | None = None
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    current_retry_count: int = 0
    last_error: PollingError | None = None
    # Pending check handle; never persisted
    timer_id: Any = field(default=None, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.status is PollingStatus.ACTIVE

    @property
    def duration_ms(self) -> float | None:
        """Elapsed time between start and end, None while still running."""
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000

    def snapshot(self) -> "PollingSession":
        """Return a detached copy safe to hand to consumers."""
        return dataclasses.replace(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "document_id": self.document_id,
            "document_type": self.document_type,
            "session_id": self.session_id,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "last_request_time": self.last_request_time.isoformat(),
            "last_response_time": (
                self.last_response_time.isoformat()
                if self.last_response_time
                else None
            ),
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "current_retry_count": self.current_retry_count,
            "max_retries": self.max_retries,
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PollingSession":
        """Create PollingSession from a stored dictionary."""
        end_time = data.get("end_time")
        last_response_time = data.get("last_response_time")
        last_error = data.get("last_error")
        start_time = datetime.fromisoformat(data["start_time"])
        return cls(
            document_id=data["document_id"],
            document_type=data.get("document_type", ""),
            session_id=data["session_id"],
            status=PollingStatus(data["status"]),
            start_time=start_time,
            end_time=datetime.fromisoformat(end_time) if end_time else None,
            last_request_time=datetime.fromisoformat(
                data.get("last_request_time") or data["start_time"]
            ),
            last_response_time=(
                datetime.fromisoformat(last_response_time)
                if last_response_time
                else None
            ),
            total_requests=int(data.get("total_requests", 0)),
            successful_requests=int(data.get("successful_requests", 0)),
            failed_requests=int(data.get("failed_requests", 0)),
            current_retry_count=int(data.get("current_retry_count", 0)),
            max_retries=int(data.get("max_retries", 0)),
            last_error=PollingError.from_dict(last_error) if last_error else None,
        )


@dataclass(frozen=True)
class PollingStateUpdate:
    """Single session change event for consumers that only need the delta."""

    session_id: str
    document_id: str
    status: PollingStatus
    timestamp: datetime
    request_count: int = 0
    error_message: str | None = None


@dataclass(frozen=True)
class PollingStatusSnapshot:
    """Read-only view of one document's polling state."""

    is_active: bool
    session: PollingSession | None = None
    request_count: int = 0
    duration_ms: float = 0.0


@dataclass(frozen=True)
class PollingStatistics:
    """Aggregate statistics over every session in the store."""

    total_sessions: int = 0
    active_sessions: int = 0
    completed_sessions: int = 0
    failed_sessions: int = 0
    timed_out_sessions: int = 0
    cancelled_sessions: int = 0
    total_requests: int = 0
    success_rate: float = 0.0
    average_session_duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)
