"""
Polling system for document verification.

This package contains the session store, the retry/backoff scheduler and the
view-scope lifecycle manager that drive status checks for uploaded documents.
"""

from .lifecycle import PollingLifecycleManager
from .models import PollingError, PollingSession, PollingStatus
from .scheduler import PollingScheduler, compute_backoff_delay
from .store import PollingStateStore

__all__ = [
    "PollingLifecycleManager",
    "PollingError",
    "PollingScheduler",
    "PollingSession",
    "PollingStateStore",
    "PollingStatus",
    "compute_backoff_delay",
]
